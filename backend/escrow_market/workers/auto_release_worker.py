"""Escrow auto-release background worker.

Periodically runs the auto-release sweep and records a heartbeat in the
``background_workers`` table (worker_name = 'escrow_auto_release') so the
admin API can show when it last ran and whether it is healthy.

Can be launched inside the API process (see ``main.py`` startup) or as a
dedicated worker:

    python -m escrow_market.workers.auto_release_worker
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from escrow_market.config import settings
from escrow_market.models_sqlalchemy import SessionLocal
from escrow_market.models_sqlalchemy.models import BackgroundWorker
from escrow_market.services.auto_release import release_due_escrows_once
from escrow_market.utils.clock import Clock, ensure_utc, utc_now
from escrow_market.utils.logger import logger


# Stable key used in background_workers.worker_name and admin APIs
WORKER_NAME = "escrow_auto_release"


def _get_or_create_worker_row(db: Session) -> BackgroundWorker:
    worker: Optional[BackgroundWorker] = (
        db.query(BackgroundWorker)
        .filter(BackgroundWorker.worker_name == WORKER_NAME)
        .one_or_none()
    )
    if worker is None:
        worker = BackgroundWorker(
            worker_name=WORKER_NAME,
            interval_seconds=settings.AUTO_RELEASE_INTERVAL_SECONDS,
            runs_ok_in_row=0,
            runs_error_in_row=0,
        )
        db.add(worker)
        db.commit()
        db.refresh(worker)
    return worker


def _iso(value) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def get_worker_status(db: Session) -> Optional[Dict[str, Any]]:
    worker = (
        db.query(BackgroundWorker)
        .filter(BackgroundWorker.worker_name == WORKER_NAME)
        .one_or_none()
    )
    if worker is None:
        return None
    return {
        "workerName": worker.worker_name,
        "intervalSeconds": worker.interval_seconds,
        "lastStartedAt": _iso(worker.last_started_at),
        "lastFinishedAt": _iso(worker.last_finished_at),
        "lastStatus": worker.last_status,
        "lastError": worker.last_error_message,
        "lastProcessed": worker.last_processed,
        "runsOkInRow": worker.runs_ok_in_row,
        "runsErrorInRow": worker.runs_error_in_row,
    }


def run_auto_release_once(
    db: Optional[Session] = None,
    *,
    clock: Clock = utc_now,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Run one sweep and update the heartbeat row.

    Used both by the long-running loop and by the admin "run now" endpoint,
    which passes its request session. Without one a session is opened and
    closed here.
    """
    owns_session = db is None
    if owns_session:
        db = SessionLocal()
    try:
        worker = _get_or_create_worker_row(db)
        worker.last_started_at = clock()
        worker.last_status = "running"
        worker.last_error_message = None
        db.commit()

        try:
            result = release_due_escrows_once(
                db, clock=clock, limit=limit or settings.AUTO_RELEASE_BATCH_SIZE
            )
        except Exception as exc:
            db.rollback()
            logger.error("Escrow auto-release sweep failed: %s", exc, exc_info=True)
            result = {"status": "error", "error": str(exc), "released": 0, "timestamp": clock().isoformat()}

        worker = _get_or_create_worker_row(db)
        worker.last_finished_at = clock()
        ok = result.get("status") == "ok" and not result.get("errors")
        worker.last_status = "success" if ok else "error"
        worker.last_processed = result.get("released", 0)
        if ok:
            worker.runs_ok_in_row = (worker.runs_ok_in_row or 0) + 1
            worker.runs_error_in_row = 0
        else:
            worker.last_error_message = (result.get("error") or f"{result.get('errors')} order(s) failed")[:2000]
            worker.runs_ok_in_row = 0
            worker.runs_error_in_row = (worker.runs_error_in_row or 0) + 1
        db.commit()
        return result
    finally:
        if owns_session:
            db.close()


async def run_auto_release_worker_loop(interval_seconds: Optional[int] = None) -> None:
    """Run the auto-release sweep forever in a simple interval loop.

    Each cycle runs in a thread so the blocking DB work does not stall the
    API event loop when started from the application.
    """
    interval = interval_seconds or settings.AUTO_RELEASE_INTERVAL_SECONDS
    logger.info("Escrow auto-release worker loop started (interval=%s seconds)", interval)

    while True:
        try:
            result = await asyncio.to_thread(run_auto_release_once)
            logger.info("Escrow auto-release worker cycle completed: %s", result)
        except Exception as exc:  # pragma: no cover - safety net
            logger.error("Escrow auto-release worker loop error: %s", exc, exc_info=True)

        await asyncio.sleep(interval)


if __name__ == "__main__":  # pragma: no cover
    asyncio.run(run_auto_release_worker_loop())
