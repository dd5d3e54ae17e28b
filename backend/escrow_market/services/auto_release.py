"""Auto-release sweep.

Finds every order whose escrow is ``held``, whose auto-release deadline has
passed and which has no dispute in progress, and releases it to the seller
with ``released_by = "system"``.

Each order is released in its own transaction through the same guarded
update buyer approval uses, so the sweep is idempotent, can overlap with
itself on several replicas, and loses cleanly to a concurrent approval or
dispute resolution.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from escrow_market.models_sqlalchemy.models import EscrowStatus, NoteAuthor, Order
from escrow_market.services import order_records
from escrow_market.services.escrow import no_dispute_in_progress, release_escrow
from escrow_market.services.order_records import SYSTEM_ACTOR
from escrow_market.utils.clock import Clock, utc_now
from escrow_market.utils.logger import logger


def find_due_order_ids(db: Session, now, limit: Optional[int] = None) -> List[str]:
    query = (
        db.query(Order.id)
        .filter(
            Order.escrow_status == EscrowStatus.held,
            Order.escrow_auto_release_at.isnot(None),
            Order.escrow_auto_release_at <= now,
            no_dispute_in_progress(),
        )
        .order_by(Order.escrow_auto_release_at.asc())
    )
    if limit:
        query = query.limit(limit)
    return [row[0] for row in query.all()]


def release_due_escrows_once(
    db: Session,
    *,
    clock: Clock = utc_now,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Run one sweep. Returns counters for the worker heartbeat."""
    now = clock()
    released = 0
    skipped = 0
    errors = 0

    due_ids = find_due_order_ids(db, now, limit)
    if not due_ids:
        logger.info("Escrow auto-release: no orders due.")
        return {"status": "ok", "released": 0, "skipped": 0, "errors": 0, "timestamp": now.isoformat()}

    logger.info("Escrow auto-release: %d order(s) due", len(due_ids))

    for order_id in due_ids:
        try:
            order = order_records.load_order(db, order_id)
            ok = release_escrow(
                db,
                order,
                released_by=SYSTEM_ACTOR,
                now=now,
                conditions=(Order.escrow_auto_release_at <= now, no_dispute_in_progress()),
            )
            if not ok:
                # Approved, resolved or disputed since the scan.
                db.rollback()
                skipped += 1
                continue
            order_records.add_note(
                db, order, NoteAuthor.system, "Escrow auto-released to seller after the hold period"
            )
            db.commit()
            released += 1
            logger.info("Escrow auto-released for order=%s", order.order_number)
        except Exception as exc:
            db.rollback()
            errors += 1
            logger.error("Escrow auto-release failed for order_id=%s: %s", order_id, exc, exc_info=True)

    return {
        "status": "ok",
        "released": released,
        "skipped": skipped,
        "errors": errors,
        "timestamp": now.isoformat(),
    }
