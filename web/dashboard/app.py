"""
Traffic Dashboard - Server-rendered UI over the Traffic API
"""

import logging
import os
from datetime import datetime
from functools import wraps
from typing import Any, Dict
from urllib.parse import urlparse

from flask import Flask, flash, jsonify, redirect, render_template, request, session, url_for
import structlog

from api_client import ApiError, TrafficApiClient
from rollups import GRANULARITIES, aggregate, filter_by_range, parse_date, sort_items, summarize

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
TRAFFIC_API_URL = os.getenv("TRAFFIC_API_URL", "http://127.0.0.1:5001/traffic-dashboard/us-central1/api")
API_TIMEOUT_SECONDS = float(os.getenv("API_TIMEOUT_SECONDS", "10"))
FLASK_SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "dev-only-change-me")
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"
FIREBASE_WEB_CONFIG = {
    "apiKey": os.getenv("FIREBASE_WEB_API_KEY", ""),
    "authDomain": os.getenv("FIREBASE_WEB_AUTH_DOMAIN", ""),
    "projectId": os.getenv("FIREBASE_PROJECT_ID", ""),
}

PAGE_SIZES = (5, 10, 20, 50)
DEFAULT_PAGE_SIZE = 10
MAX_PAGES = 20

# Set log level
logging.getLogger().setLevel(getattr(logging, LOG_LEVEL))

app = Flask(__name__)
app.secret_key = FLASK_SECRET_KEY
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=SESSION_COOKIE_SECURE,
)


@app.before_request
def reject_cross_site_posts():
    """Writes must come from pages served by this host"""
    if request.method != "POST":
        return None
    origin = request.headers.get("Origin") or request.headers.get("Referer")
    if origin and urlparse(origin).netloc != request.host:
        logger.warning("cross_site_post_rejected", path=request.path, origin=origin)
        return jsonify({"error": "Cross-site request rejected"}), 403
    return None


def get_api_client() -> TrafficApiClient:
    return TrafficApiClient(TRAFFIC_API_URL, session.get("id_token"), timeout=API_TIMEOUT_SECONDS)


def login_required(view):
    """Send visitors without an ID token to the sign-in page"""
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get("id_token"):
            if request.path.startswith("/api/"):
                return jsonify({"error": "Not signed in"}), 401
            return redirect(url_for("login"))
        return view(*args, **kwargs)
    return wrapped


def session_expired():
    session.clear()
    flash("Your session has expired, please sign in again.", "error")
    return redirect(url_for("login"))


def dashboard_params(args) -> Dict[str, Any]:
    """Normalize dashboard query parameters"""
    order = "desc" if args.get("order") == "desc" else "asc"

    try:
        limit = int(args.get("limit", DEFAULT_PAGE_SIZE))
    except (TypeError, ValueError):
        limit = DEFAULT_PAGE_SIZE
    if limit not in PAGE_SIZES:
        limit = DEFAULT_PAGE_SIZE

    try:
        pages = int(args.get("pages", 1))
    except (TypeError, ValueError):
        pages = 1
    pages = min(max(pages, 1), MAX_PAGES)

    granularity = args.get("granularity", "day")
    if granularity not in GRANULARITIES:
        granularity = "day"

    return {
        "order": order,
        "limit": limit,
        "pages": pages,
        "granularity": granularity,
        "from": args.get("from", "") if parse_date(args.get("from")) else "",
        "to": args.get("to", "") if parse_date(args.get("to")) else "",
    }


def load_traffic(client: TrafficApiClient, params: Dict[str, Any]) -> Dict[str, Any]:
    """Fetch the requested pages and derive the table rows, chart and totals"""
    raw_items = []
    next_cursor = None
    for page in client.iter_pages(limit=params["limit"], order=params["order"], pages=params["pages"]):
        raw_items.extend(page.get("items", []))
        next_cursor = page.get("nextCursor")

    items = sort_items(filter_by_range(raw_items, params["from"], params["to"]), params["order"])
    logger.info("traffic_loaded", fetched=len(raw_items), shown=len(items), pages=params["pages"],
                has_more=next_cursor is not None)
    return {
        "items": items,
        "next_cursor": next_cursor,
        "chart": aggregate(items, params["granularity"]),
        "summary": summarize(items),
    }


def safe_next(target: str) -> str:
    """Only redirect back to local paths"""
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return url_for("dashboard")


def parse_visits_field(raw: str) -> int:
    try:
        visits = int(raw)
    except (TypeError, ValueError):
        raise ValueError("Visits must be a non-negative integer")
    if visits < 0:
        raise ValueError("Visits must be a non-negative integer")
    return visits


@app.route("/healthz")
def health_check():
    """Health check endpoint"""
    return jsonify({
        "status": "healthy",
        "service": "dashboard",
        "timestamp": datetime.utcnow().isoformat()
    })


@app.route("/login")
def login():
    """Google sign-in page"""
    if session.get("id_token"):
        return redirect(url_for("dashboard"))
    return render_template("login.html", firebase_config=FIREBASE_WEB_CONFIG)


@app.route("/session", methods=["POST"])
def create_session():
    """Store the ID token obtained by the browser's sign-in popup"""
    payload = request.get_json(silent=True) or {}
    id_token = payload.get("idToken")
    if not isinstance(id_token, str) or not id_token:
        return jsonify({"error": "idToken is required"}), 400

    session.clear()
    session["id_token"] = id_token
    logger.info("session_started")
    return jsonify({"ok": True})


@app.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return redirect(url_for("login"))


@app.route("/")
@login_required
def dashboard():
    """Main dashboard page: chart, totals and the traffic table"""
    params = dashboard_params(request.args)
    client = get_api_client()
    try:
        me = client.me()
        data = load_traffic(client, params)
    except ApiError as e:
        if e.status_code == 401:
            return session_expired()
        logger.error("dashboard_load_failed", status_code=e.status_code, error=e.message)
        return render_template("error.html", error=e.message), 502

    more_params = dict(params, pages=params["pages"] + 1)
    return render_template(
        "dashboard.html",
        me=me,
        role=me.get("role", "viewer"),
        params=params,
        page_sizes=PAGE_SIZES,
        granularities=GRANULARITIES,
        load_more_url=url_for("dashboard", **more_params) if data["next_cursor"] else None,
        current_url=request.full_path.rstrip("?"),
        **data
    )


@app.route("/api/rollup")
@login_required
def api_rollup():
    """Aggregated series for the current filters (for AJAX refreshes)"""
    params = dashboard_params(request.args)
    try:
        data = load_traffic(get_api_client(), params)
    except ApiError as e:
        if e.status_code == 401:
            session.clear()
        return jsonify({"error": e.message}), e.status_code if e.status_code >= 400 else 502

    return jsonify({
        "granularity": params["granularity"],
        "buckets": data["chart"],
        "summary": data["summary"],
        "nextCursor": data["next_cursor"],
    })


@app.route("/traffic", methods=["POST"])
@login_required
def create_traffic():
    """Add or upsert a record by date"""
    target = safe_next(request.form.get("next", ""))
    record_date = request.form.get("date", "").strip()
    if parse_date(record_date) is None:
        flash("Date must be YYYY-MM-DD", "error")
        return redirect(target)
    try:
        visits = parse_visits_field(request.form.get("visits", ""))
    except ValueError as e:
        flash(str(e), "error")
        return redirect(target)

    try:
        get_api_client().create_traffic(record_date, visits)
    except ApiError as e:
        if e.status_code == 401:
            return session_expired()
        flash(e.message, "error")
        return redirect(target)

    flash(f"Saved {record_date}", "success")
    return redirect(target)


@app.route("/traffic/<record_id>/update", methods=["POST"])
@login_required
def update_traffic(record_id):
    target = safe_next(request.form.get("next", ""))
    try:
        visits = parse_visits_field(request.form.get("visits", ""))
    except ValueError as e:
        flash(str(e), "error")
        return redirect(target)

    try:
        get_api_client().update_traffic(record_id, visits)
    except ApiError as e:
        if e.status_code == 401:
            return session_expired()
        flash(e.message, "error")
        return redirect(target)

    flash(f"Updated {record_id}", "success")
    return redirect(target)


@app.route("/traffic/<record_id>/delete", methods=["POST"])
@login_required
def delete_traffic(record_id):
    target = safe_next(request.form.get("next", ""))
    try:
        get_api_client().delete_traffic(record_id)
    except ApiError as e:
        if e.status_code == 401:
            return session_expired()
        flash(e.message, "error")
        return redirect(target)

    flash(f"Deleted {record_id}", "success")
    return redirect(target)


if __name__ == "__main__":
    logger.info("starting_dashboard", port=PORT, traffic_api_url=TRAFFIC_API_URL)
    app.run(host="0.0.0.0", port=PORT, debug=False)
