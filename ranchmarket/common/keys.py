from __future__ import annotations

import hashlib


def stable_doc_id(*, scope: str, key: str, length: int = 40) -> str:
    """
    Deterministic Firestore document id for an idempotent write.

    Two writers deriving the same (scope, key) race on `create()`; exactly one wins.
    """
    s = str(key or "").strip()
    if not s:
        raise ValueError("idempotency key must be non-empty")
    raw = f"{scope}|{s}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:length]


def event_dedupe_key(
    *,
    event_type: str,
    entity_type: str,
    entity_id: str,
    target_user_id: str,
    optional_hash: str | None = None,
) -> str:
    parts = [event_type, entity_type, entity_id, target_user_id, optional_hash or ""]
    return ":".join(str(p).strip() for p in parts)


def order_id_for_checkout_session(session_id: str) -> str:
    # Used only when checkout metadata carries no pre-allocated order id.
    return f"ord_{stable_doc_id(scope='checkout_session', key=session_id, length=24)}"


def refund_key_compliance(session_id: str) -> str:
    return f"refund:region_violation:{session_id}"


def refund_key_dispute_full(order_id: str) -> str:
    return f"dispute-resolve:refund:{order_id}"


def refund_key_dispute_partial(order_id: str, amount_cents: int) -> str:
    return f"dispute-resolve:partial:{order_id}:{int(amount_cents)}"
