"""
Traffic API Service - Paginated traffic records with editor-gated writes
"""

import logging
import os
import re
import time
from datetime import date as calendar_date, datetime
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import auth as fb_auth
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from google.cloud import firestore
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from store import TrafficStore, normalize_email

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Configuration
PORT = int(os.getenv("PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").upper()
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT")
TRAFFIC_COLLECTION = os.getenv("TRAFFIC_COLLECTION", "trafficStats")
EDITORS_COLLECTION = os.getenv("EDITORS_COLLECTION", "editors")
CHECK_REVOKED = os.getenv("CHECK_REVOKED", "false").lower() in ("1", "true", "yes")
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "100"))
CORS_ALLOW_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()
]

ROLE_EDITOR = "editor"
ROLE_VIEWER = "viewer"

DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
BEARER_PATTERN = re.compile(r"Bearer (.+)")
LIMIT_PATTERN = re.compile(r"-?[0-9]+")

DATE_ERROR = "date must be YYYY-MM-DD string"
VISITS_ERROR = "visits must be a non-negative integer"

# Firestore stores signed 64-bit integers
MAX_VISITS = 2 ** 63 - 1

# Set log level
logging.getLogger().setLevel(getattr(logging, LOG_LEVEL))

app = FastAPI(
    title="Traffic API",
    description="Daily traffic records with cursor pagination and editor-gated writes",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_firebase_app = None
_store: Optional[TrafficStore] = None


class TrafficItem(BaseModel):
    """Traffic record as returned to clients"""
    id: str = Field(..., description="Document ID (same as date)")
    date: str = Field(..., description="Calendar date, YYYY-MM-DD")
    visits: Optional[int] = Field(None, description="Visit count")
    createdAt: Optional[str] = Field(None, description="Creation timestamp")
    updatedAt: Optional[str] = Field(None, description="Last update timestamp")


class TrafficPageResponse(BaseModel):
    """Paginated traffic listing"""
    items: List[TrafficItem] = Field(default_factory=list, description="Records in this page")
    nextCursor: Optional[str] = Field(None, description="Date to pass as cursor for the next page")


class MeResponse(BaseModel):
    """Identity and role of the caller"""
    uid: str = Field(..., description="Identity provider user ID")
    email: Optional[str] = Field(None, description="User email")
    role: str = Field(..., description="editor or viewer")


def get_firebase_app():
    """Initialize the default Firebase app on first use"""
    global _firebase_app
    if _firebase_app is None:
        try:
            _firebase_app = firebase_admin.get_app()
        except ValueError:
            options = {"projectId": FIREBASE_PROJECT_ID} if FIREBASE_PROJECT_ID else None
            _firebase_app = firebase_admin.initialize_app(options=options)
            logger.info("firebase_app_initialized", project_id=FIREBASE_PROJECT_ID)
    return _firebase_app


def get_store() -> TrafficStore:
    global _store
    if _store is None:
        client = firestore.AsyncClient(project=FIREBASE_PROJECT_ID)
        _store = TrafficStore(
            client,
            traffic_collection=TRAFFIC_COLLECTION,
            editors_collection=EDITORS_COLLECTION,
        )
        logger.info(
            "firestore_store_initialized",
            project_id=FIREBASE_PROJECT_ID,
            traffic_collection=TRAFFIC_COLLECTION,
            editors_collection=EDITORS_COLLECTION
        )
    return _store


def verify_id_token(token: str) -> Dict[str, Any]:
    return fb_auth.verify_id_token(token, app=get_firebase_app(), check_revoked=CHECK_REVOKED)


def is_valid_iso_date(value: Any) -> bool:
    """True for YYYY-MM-DD strings naming a real calendar day"""
    if not isinstance(value, str) or not DATE_PATTERN.fullmatch(value):
        return False
    try:
        calendar_date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_visits(value: Any) -> int:
    """Validate a visits value from a JSON body"""
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail=VISITS_ERROR)
    if isinstance(value, int) and 0 <= value <= MAX_VISITS:
        return value
    if isinstance(value, float) and value.is_integer() and 0 <= value <= MAX_VISITS:
        return int(value)
    raise HTTPException(status_code=400, detail=VISITS_ERROR)


def parse_limit(raw: Optional[str]) -> int:
    """Clamp the page size to [1, MAX_PAGE_SIZE]; junk falls back to the default"""
    if raw is None or not LIMIT_PATTERN.fullmatch(raw):
        return DEFAULT_PAGE_SIZE
    limit = int(raw)
    if limit <= 0:
        return DEFAULT_PAGE_SIZE
    return min(limit, MAX_PAGE_SIZE)


def parse_order(raw: Optional[str]) -> str:
    return "desc" if (raw or "").strip().lower() == "desc" else "asc"


async def read_json_object(request: Request) -> Dict[str, Any]:
    """Read the request body as a JSON object; an empty body counts as {}"""
    body = await request.body()
    if not body.strip():
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return payload


def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Verify the bearer ID token and return its decoded claims"""
    match = BEARER_PATTERN.fullmatch(authorization or "")
    if not match:
        raise HTTPException(status_code=401, detail="Missing Bearer token")

    try:
        decoded = verify_id_token(match.group(1))
    except Exception as e:
        logger.warning("token_verification_failed", error_type=type(e).__name__, error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return decoded


async def resolve_role(user: Dict[str, Any], store: TrafficStore) -> str:
    """Look the caller up in the editors collection; errors deny access"""
    email = normalize_email(user.get("email"))
    if not email:
        return ROLE_VIEWER

    try:
        is_editor = await store.is_editor(email)
    except Exception as e:
        logger.error("role_check_failed", uid=user.get("uid"), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to verify permissions")

    return ROLE_EDITOR if is_editor else ROLE_VIEWER


async def require_editor(
    user: Dict[str, Any] = Depends(get_current_user),
    store: TrafficStore = Depends(get_store)
) -> Dict[str, Any]:
    role = await resolve_role(user, store)
    if role != ROLE_EDITOR:
        logger.warning("write_forbidden", uid=user.get("uid"), role=role)
        raise HTTPException(status_code=403, detail="Editor role required")
    return user


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Every error leaves as {"error": message}"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Log all requests with structured logging"""
    start_time = time.time()

    # Generate request ID for tracing
    request_id = f"req_{int(start_time * 1000000)}"

    logger.info(
        "request_started",
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time

    logger.info(
        "request_completed",
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time=process_time
    )

    return response


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"ok": True, "service": "traffic-api", "timestamp": datetime.utcnow()}


@app.get("/me", response_model=MeResponse)
async def get_me(
    user: Dict[str, Any] = Depends(get_current_user),
    store: TrafficStore = Depends(get_store)
):
    """Return the caller's identity and role"""
    role = await resolve_role(user, store)
    return MeResponse(uid=user.get("uid", ""), email=user.get("email"), role=role)


@app.get("/traffic", response_model=TrafficPageResponse)
async def list_traffic(
    limit: Optional[str] = None,
    cursor: Optional[str] = None,
    order: Optional[str] = None,
    user: Dict[str, Any] = Depends(get_current_user),
    store: TrafficStore = Depends(get_store)
):
    """List traffic records ordered by date, one page at a time"""
    page_size = parse_limit(limit)
    direction = parse_order(order)
    cursor = cursor or None
    if cursor is not None and not is_valid_iso_date(cursor):
        raise HTTPException(status_code=400, detail="cursor must be YYYY-MM-DD string")

    try:
        page = await store.list_page(page_size, direction, cursor)
    except Exception as e:
        logger.error("traffic_list_failed", limit=page_size, order=direction, cursor=cursor, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")

    logger.info(
        "traffic_listed",
        uid=user.get("uid"),
        count=len(page.items),
        limit=page_size,
        order=direction,
        cursor=cursor,
        next_cursor=page.next_cursor
    )
    return TrafficPageResponse(
        items=[TrafficItem(**item) for item in page.items],
        nextCursor=page.next_cursor
    )


@app.post("/traffic", status_code=201)
async def upsert_traffic(
    request: Request,
    user: Dict[str, Any] = Depends(require_editor),
    store: TrafficStore = Depends(get_store)
):
    """Create or update the record for a date"""
    payload = await read_json_object(request)

    record_date = payload.get("date")
    if not is_valid_iso_date(record_date):
        raise HTTPException(status_code=400, detail=DATE_ERROR)
    visits = parse_visits(payload.get("visits"))

    try:
        created = await store.upsert(record_date, visits)
    except Exception as e:
        logger.error("traffic_upsert_failed", date=record_date, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")

    logger.info("traffic_upserted", uid=user.get("uid"), date=record_date, visits=visits, created=created)
    return {"id": record_date}


@app.put("/traffic/{record_id}")
async def update_traffic(
    record_id: str,
    request: Request,
    user: Dict[str, Any] = Depends(require_editor),
    store: TrafficStore = Depends(get_store)
):
    """Change the visits of an existing record; its date cannot change"""
    if not is_valid_iso_date(record_id):
        raise HTTPException(status_code=400, detail=DATE_ERROR)

    payload = await read_json_object(request)
    if "date" in payload and payload["date"] != record_id:
        raise HTTPException(status_code=400, detail="date is immutable")
    visits = parse_visits(payload.get("visits"))

    try:
        found = await store.update_visits(record_id, visits)
    except Exception as e:
        logger.error("traffic_update_failed", date=record_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")

    if not found:
        raise HTTPException(status_code=404, detail="Traffic record not found")

    logger.info("traffic_updated", uid=user.get("uid"), date=record_id, visits=visits)
    return {"ok": True}


@app.delete("/traffic/{record_id}")
async def delete_traffic(
    record_id: str,
    user: Dict[str, Any] = Depends(require_editor),
    store: TrafficStore = Depends(get_store)
):
    """Delete the record for a date"""
    if not is_valid_iso_date(record_id):
        raise HTTPException(status_code=400, detail=DATE_ERROR)

    try:
        found = await store.delete(record_id)
    except Exception as e:
        logger.error("traffic_delete_failed", date=record_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")

    if not found:
        raise HTTPException(status_code=404, detail="Traffic record not found")

    logger.info("traffic_deleted", uid=user.get("uid"), date=record_id)
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    logger.info("starting_traffic_api", port=PORT, project_id=FIREBASE_PROJECT_ID)
    uvicorn.run(app, host="0.0.0.0", port=PORT)
