"""
Firestore access for the Traffic API.

Traffic records live in one collection keyed by their ISO date, editors in
another keyed by normalized email. Everything here is async and talks to
``google.cloud.firestore.AsyncClient``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from google.api_core.exceptions import NotFound
from google.cloud import firestore
import structlog

logger = structlog.get_logger()

ORDER_DIRECTIONS = {
    "asc": firestore.Query.ASCENDING,
    "desc": firestore.Query.DESCENDING,
}


@dataclass
class TrafficPage:
    """One page of traffic records plus the cursor for the next one"""
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def timestamp_to_iso(value: Any) -> Optional[str]:
    """Firestore hands back DatetimeWithNanoseconds; the API speaks ISO strings"""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, str):
        return value
    return None


def record_from_snapshot(snapshot) -> Dict[str, Any]:
    """Convert a document snapshot into the API's traffic item shape"""
    data = snapshot.to_dict() or {}
    visits = data.get("visits")
    if isinstance(visits, bool) or not isinstance(visits, (int, float)):
        visits = None
    elif isinstance(visits, float):
        visits = int(visits) if visits.is_integer() else None

    return {
        "id": snapshot.id,
        "date": data.get("date", snapshot.id),
        "visits": visits,
        "createdAt": timestamp_to_iso(data.get("createdAt")),
        "updatedAt": timestamp_to_iso(data.get("updatedAt")),
    }


async def apply_upsert(transaction, ref, date: str, visits: int) -> bool:
    """
    Create or update the record for ``date`` inside ``transaction``.

    Returns True when the document was created. An existing document keeps
    its createdAt.
    """
    snapshot = await ref.get(transaction=transaction)
    if snapshot.exists:
        transaction.update(ref, {
            "visits": visits,
            "updatedAt": firestore.SERVER_TIMESTAMP,
        })
        return False

    transaction.set(ref, {
        "date": date,
        "visits": visits,
        "createdAt": firestore.SERVER_TIMESTAMP,
        "updatedAt": firestore.SERVER_TIMESTAMP,
    })
    return True


class TrafficStore:
    """Traffic records and editor lookups backed by Firestore"""

    def __init__(self, client, traffic_collection: str = "trafficStats",
                 editors_collection: str = "editors"):
        self._client = client
        self._traffic_collection = traffic_collection
        self._editors_collection = editors_collection

    def _traffic(self):
        return self._client.collection(self._traffic_collection)

    async def list_page(self, limit: int, order: str = "asc",
                        cursor: Optional[str] = None) -> TrafficPage:
        """Fetch up to ``limit`` records ordered by date, starting after ``cursor``"""
        direction = ORDER_DIRECTIONS.get(order, firestore.Query.ASCENDING)
        query = self._traffic().order_by("date", direction=direction)
        if cursor:
            query = query.start_after({"date": cursor})

        # one extra record tells us whether another page exists
        snapshots = await query.limit(limit + 1).get()
        items = [record_from_snapshot(s) for s in snapshots[:limit]]
        next_cursor = items[-1]["date"] if len(snapshots) > limit and items else None

        logger.debug("traffic_page_fetched", count=len(items), order=order,
                     cursor=cursor, has_more=next_cursor is not None)
        return TrafficPage(items=items, next_cursor=next_cursor)

    async def upsert(self, date: str, visits: int) -> bool:
        ref = self._traffic().document(date)
        transaction = self._client.transaction()
        upsert_in_transaction = firestore.async_transactional(apply_upsert)
        return await upsert_in_transaction(transaction, ref, date, visits)

    async def update_visits(self, date: str, visits: int) -> bool:
        """Set visits on an existing record; False when there is none"""
        ref = self._traffic().document(date)
        try:
            await ref.update({
                "visits": visits,
                "updatedAt": firestore.SERVER_TIMESTAMP,
            })
        except NotFound:
            return False
        return True

    async def delete(self, date: str) -> bool:
        ref = self._traffic().document(date)
        try:
            await ref.delete(option=self._client.write_option(exists=True))
        except NotFound:
            return False
        return True

    async def is_editor(self, email: Optional[str]) -> bool:
        normalized = normalize_email(email)
        if not normalized:
            return False
        snapshot = await self._client.collection(self._editors_collection).document(normalized).get()
        return snapshot.exists
