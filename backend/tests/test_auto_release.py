from datetime import timedelta

from escrow_market.models_sqlalchemy.models import EscrowStatus, NoteAuthor
from escrow_market.services import dispute_resolver
from escrow_market.services.auto_release import find_due_order_ids, release_due_escrows_once
from escrow_market.workers import auto_release_worker
from escrow_market.workers.auto_release_worker import get_worker_status, run_auto_release_once


def test_nothing_released_before_deadline(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    clock.advance(days=6, hours=23)
    result = release_due_escrows_once(db, clock=clock)

    assert result == {
        "status": "ok",
        "released": 0,
        "skipped": 0,
        "errors": 0,
        "timestamp": clock().isoformat(),
    }
    db.refresh(order)
    assert order.escrow_status == EscrowStatus.held


def test_release_at_deadline_adds_system_note(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    clock.advance(days=7)
    result = release_due_escrows_once(db, clock=clock)

    assert result["released"] == 1
    db.refresh(order)
    assert order.escrow_status == EscrowStatus.released_to_seller
    assert order.notes[-1].author_role == NoteAuthor.system


def test_sweep_is_idempotent(db, market, setup, clock):
    market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    clock.advance(days=8)
    first = release_due_escrows_once(db, clock=clock)
    second = release_due_escrows_once(db, clock=clock)

    assert first["released"] == 2
    assert second["released"] == 0


def test_open_dispute_blocks_release_until_closed(db, market, setup, clock):
    order = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    dispute_resolver.open_dispute(db, order.id, setup["customer"], "Item not as described", clock=clock)

    clock.advance(days=8)
    assert release_due_escrows_once(db, clock=clock)["released"] == 0
    db.refresh(order)
    assert order.escrow_status == EscrowStatus.held

    dispute_resolver.close_dispute(db, setup["admin"], order.id, "Buyer withdrew", clock=clock)
    assert release_due_escrows_once(db, clock=clock)["released"] == 1
    db.refresh(order)
    assert order.escrow_status == EscrowStatus.released_to_seller


def test_due_orders_oldest_deadline_first(db, market, setup, clock):
    older = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    clock.advance(hours=1)
    newer = market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])

    now = clock() + timedelta(days=8)
    assert find_due_order_ids(db, now) == [older.id, newer.id]
    assert find_due_order_ids(db, now, limit=1) == [older.id]


def test_worker_records_heartbeat(db, market, setup, clock):
    market.delivered_order(setup["customer"], setup["product"], setup["seller_user"])
    assert get_worker_status(db) is None

    clock.advance(days=8)
    result = run_auto_release_once(db, clock=clock)

    assert result["released"] == 1
    status = get_worker_status(db)
    assert status["workerName"] == "escrow_auto_release"
    assert status["lastStatus"] == "success"
    assert status["lastProcessed"] == 1
    assert status["runsOkInRow"] == 1
    assert status["runsErrorInRow"] == 0

    run_auto_release_once(db, clock=clock)
    assert get_worker_status(db)["runsOkInRow"] == 2


def test_worker_records_failed_sweep(db, clock, monkeypatch):
    def broken_sweep(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(auto_release_worker, "release_due_escrows_once", broken_sweep)

    result = run_auto_release_once(db, clock=clock)

    assert result["status"] == "error"
    status = get_worker_status(db)
    assert status["lastStatus"] == "error"
    assert status["runsErrorInRow"] == 1
    assert "database went away" in status["lastError"]
