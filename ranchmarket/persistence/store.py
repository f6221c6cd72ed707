from __future__ import annotations

"""
Firestore collaborator handle shared by every component.

`DocumentStore` bundles the client with the firestore module that provides
`transactional`, so components never reach for a module-level global client
and tests can substitute an in-memory double for both.
"""

import logging
from typing import Any, Callable, Mapping, Optional, TypeVar

from google.api_core import exceptions as gexc

from ranchmarket.common.logging import log_event
from ranchmarket.persistence import schema
from ranchmarket.persistence.firestore_retry import with_firestore_retry

T = TypeVar("T")
logger = logging.getLogger(__name__)


def is_missing_index_error(exc: BaseException) -> bool:
    if not isinstance(exc, gexc.FailedPrecondition):
        return False
    msg = str(getattr(exc, "message", None) or exc).lower()
    return "index" in msg


class DocumentStore:
    def __init__(
        self,
        db: Any,
        *,
        firestore_module: Any | None = None,
        retry: Callable[[Callable[[], Any]], Any] | None = None,
    ) -> None:
        if firestore_module is None:
            from google.cloud import firestore as firestore_module  # noqa: WPS433

        self._db = db
        self._firestore = firestore_module
        self._retry = retry or with_firestore_retry

    @classmethod
    def from_env(cls, *, project_id: Optional[str] = None) -> "DocumentStore":
        from ranchmarket.persistence.firebase_client import get_firestore_client

        return cls(get_firestore_client(project_id=project_id))

    @property
    def db(self) -> Any:
        return self._db

    # ---- references ----

    def collection(self, name: str):
        return self._db.collection(name)

    def order_ref(self, order_id: str):
        return self._db.collection(schema.COLLECTION_ORDERS).document(str(order_id))

    def listing_ref(self, listing_id: str):
        return self._db.collection(schema.COLLECTION_LISTINGS).document(str(listing_id))

    def new_listing_ref(self):
        # Auto-generated id; never derived from a previous listing.
        return self._db.collection(schema.COLLECTION_LISTINGS).document()

    def purchase_reservation_ref(self, listing_id: str, order_id: str):
        return self.listing_ref(listing_id).collection(schema.COLLECTION_PURCHASE_RESERVATIONS).document(str(order_id))

    def auction_result_ref(self, listing_id: str):
        return self._db.collection(schema.COLLECTION_AUCTION_RESULTS).document(str(listing_id))

    def event_ref(self, event_id: str):
        return self._db.collection(schema.COLLECTION_EVENTS).document(str(event_id))

    def dead_letter_ref(self, event_id: str):
        return self._db.collection(schema.COLLECTION_DEAD_LETTERS).document(str(event_id))

    def user_ref(self, uid: str):
        return self._db.collection(schema.COLLECTION_USERS).document(str(uid))

    def watchlist_ref(self, uid: str, listing_id: str):
        return self.user_ref(uid).collection(schema.COLLECTION_WATCHLIST).document(str(listing_id))

    def user_notification_ref(self, uid: str, event_id: str):
        return self.user_ref(uid).collection(schema.COLLECTION_USER_NOTIFICATIONS).document(str(event_id))

    def ops_health_ref(self, job_name: str):
        return self._db.collection(schema.COLLECTION_OPS_HEALTH).document(str(job_name))

    # ---- single-document operations ----

    def get(self, ref: Any) -> Optional[dict[str, Any]]:
        snap = self._retry(lambda: ref.get())
        if not getattr(snap, "exists", False):
            return None
        return snap.to_dict() or {}

    def create(self, ref: Any, data: Mapping[str, Any]) -> bool:
        """
        Create-if-absent. Returns False when the document already exists.
        """
        try:
            self._retry(lambda: ref.create(dict(data)))
            return True
        except gexc.AlreadyExists:
            return False

    def set(self, ref: Any, data: Mapping[str, Any], *, merge: bool = False) -> None:
        self._retry(lambda: ref.set(dict(data), merge=merge))

    def update(self, ref: Any, data: Mapping[str, Any]) -> None:
        self._retry(lambda: ref.update(dict(data)))

    # ---- transactions ----

    def run_transaction(self, fn: Callable[[Any], T]) -> T:
        """
        Run `fn(txn)` inside a Firestore transaction.

        `fn` must do all reads before any writes and must be safe to re-run:
        Firestore re-invokes it when optimistic validation fails.
        """
        txn_fn = self._firestore.transactional(fn)
        return self._retry(lambda: txn_fn(self._db.transaction()))

    # ---- queries ----

    def stream(self, query: Any) -> list[Any]:
        return self._retry(lambda: list(query.stream()))

    def query_with_fallback(
        self,
        *,
        label: str,
        primary: Callable[[], Any],
        fallback: Callable[[], Any],
        keep: Callable[[dict[str, Any]], bool],
        sort_key: Callable[[dict[str, Any]], Any],
        limit: int,
    ) -> list[Any]:
        """
        Run an index-backed query, degrading to a broader unordered query when the
        composite index is missing. The fallback rows are filtered and sorted in memory.
        """
        try:
            return self.stream(primary())
        except gexc.FailedPrecondition as e:
            if not is_missing_index_error(e):
                raise
            log_event(
                logger,
                "firestore.index_fallback",
                severity="WARNING",
                query=label,
                error=str(e)[:500],
            )

        rows = [s for s in self.stream(fallback()) if keep(s.to_dict() or {})]
        rows.sort(key=lambda s: sort_key(s.to_dict() or {}))
        return rows[: max(0, int(limit))]
