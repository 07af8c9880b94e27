import random
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from stockledger.core.config import settings
from stockledger.core.errors import ConflictError, InsufficientStockError, LocationInUseError, LocationNotFoundError
from stockledger.core.key_locks import StockKey, StockKeyLockRegistry, stock_key_locks
from stockledger.models.stock import StockEntry, StockMovement
from stockledger.services import adjustment_service, location_service
from stockledger.services.adjustment_service import adjust_stock
from stockledger.services.location_service import create_location, delete_location, get_location
from stockledger.services.movement_ledger_service import replay_entry
from stockledger.services.stock_query_service import get_entry
from stockledger.services.transfer_service import transfer_stock

TENANT_ID = "tenant-a"


def _location(session_factory, name: str) -> str:
    with session_factory() as db:
        return create_location(db, tenant_id=TENANT_ID, name=name).id


def _adjust_in_own_session(session_factory, product_id: str, location_id: str, delta: int) -> None:
    with session_factory() as db:
        adjust_stock(
            db,
            tenant_id=TENANT_ID,
            product_id=product_id,
            location_id=location_id,
            quantity_change=delta,
        )


def test_concurrent_adjustments_on_one_key_lose_no_updates(file_session_factory):
    location_id = _location(file_session_factory, "Store")
    _adjust_in_own_session(file_session_factory, "prod-1", location_id, 10_000)

    rng = random.Random(20261019)
    deltas = [rng.choice([-1, 1]) * rng.randint(1, 20) for _ in range(200)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [
            pool.submit(_adjust_in_own_session, file_session_factory, "prod-1", location_id, delta)
            for delta in deltas
        ]
        for future in futures:
            future.result()

    with file_session_factory() as db:
        entry = get_entry(db, tenant_id=TENANT_ID, product_id="prod-1", location_id=location_id)
        assert entry.quantity == 10_000 + sum(deltas)
        assert entry.version == len(deltas) + 1

        versions = db.execute(
            select(StockMovement.entry_version)
            .where(StockMovement.location_id == location_id)
            .order_by(StockMovement.entry_version)
        ).scalars().all()
        assert versions == list(range(1, len(deltas) + 2))
        assert replay_entry(db, tenant_id=TENANT_ID, product_id="prod-1", location_id=location_id).consistent


def test_concurrent_overdraw_never_goes_negative(file_session_factory):
    location_id = _location(file_session_factory, "Store")
    _adjust_in_own_session(file_session_factory, "prod-1", location_id, 50)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def sell_one():
        try:
            _adjust_in_own_session(file_session_factory, "prod-1", location_id, -1)
        except InsufficientStockError:
            result = "rejected"
        else:
            result = "sold"
        with outcomes_lock:
            outcomes.append(result)

    with ThreadPoolExecutor(max_workers=8) as pool:
        for future in [pool.submit(sell_one) for _ in range(80)]:
            future.result()

    assert outcomes.count("sold") == 50
    assert outcomes.count("rejected") == 30
    with file_session_factory() as db:
        assert get_entry(db, tenant_id=TENANT_ID, product_id="prod-1", location_id=location_id).quantity == 0


def test_opposite_transfers_do_not_deadlock_and_conserve_stock(file_session_factory):
    a = _location(file_session_factory, "A")
    b = _location(file_session_factory, "B")
    _adjust_in_own_session(file_session_factory, "prod-1", a, 1_000)
    _adjust_in_own_session(file_session_factory, "prod-1", b, 1_000)

    def move(from_id: str, to_id: str) -> None:
        with file_session_factory() as db:
            transfer_stock(
                db,
                tenant_id=TENANT_ID,
                product_id="prod-1",
                from_location_id=from_id,
                to_location_id=to_id,
                quantity=5,
            )

    jobs = [(a, b)] * 40 + [(b, a)] * 40
    random.Random(7).shuffle(jobs)
    with ThreadPoolExecutor(max_workers=8) as pool:
        for future in [pool.submit(move, from_id, to_id) for from_id, to_id in jobs]:
            future.result()

    with file_session_factory() as db:
        quantities = {
            entry.location_id: entry.quantity
            for entry in db.execute(select(StockEntry)).scalars().all()
        }
        assert quantities == {a: 1_000, b: 1_000}
        for location_id in (a, b):
            assert replay_entry(db, tenant_id=TENANT_ID, product_id="prod-1", location_id=location_id).consistent


def test_disjoint_keys_are_not_blocked(db_session, make_location, monkeypatch):
    location = make_location()
    busy_key = StockKey(TENANT_ID, "busy", location.id)
    held = threading.Event()
    release = threading.Event()

    def hold_busy_key():
        with stock_key_locks.hold(busy_key):
            held.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold_busy_key)
    holder.start()
    try:
        assert held.wait(timeout=5)
        monkeypatch.setattr(stock_key_locks, "timeout_seconds", 0.05)

        entry = adjust_stock(
            db_session,
            tenant_id=TENANT_ID,
            product_id="free",
            location_id=location.id,
            quantity_change=1,
        )
        assert entry.quantity == 1

        with pytest.raises(ConflictError) as excinfo:
            adjust_stock(
                db_session,
                tenant_id=TENANT_ID,
                product_id="busy",
                location_id=location.id,
                quantity_change=1,
            )
        assert excinfo.value.key == busy_key
        assert excinfo.value.requested == {"quantity_change": 1, "reserved_change": 0}
    finally:
        release.set()
        holder.join(timeout=5)

    assert get_entry(db_session, tenant_id=TENANT_ID, product_id="busy", location_id=location.id).quantity == 0


def test_lock_registry_is_reentrant_and_prunes_idle_keys():
    registry = StockKeyLockRegistry(timeout_seconds=0.05)
    first = StockKey("t", "p", "l1")
    second = StockKey("t", "p", "l2")

    with registry.hold(second, first):
        with registry.hold(first):
            assert registry.active_keys() == 2
    assert registry.active_keys() == 0


def test_stale_writer_is_refused_by_version_check(file_session_factory):
    location_id = _location(file_session_factory, "Store")
    _adjust_in_own_session(file_session_factory, "prod-1", location_id, 5)

    with file_session_factory() as stale:
        stale_entry = stale.execute(select(StockEntry)).scalar_one()
        assert stale_entry.version == 1

        _adjust_in_own_session(file_session_factory, "prod-1", location_id, 3)

        stale_entry.quantity = 100
        with pytest.raises(StaleDataError):
            stale.commit()
        stale.rollback()

    with file_session_factory() as db:
        assert get_entry(db, tenant_id=TENANT_ID, product_id="prod-1", location_id=location_id).quantity == 8


def _stale_on_first_calls(monkeypatch, failures: int) -> list[int]:
    real_append = adjustment_service.append_movement
    calls: list[int] = []

    def flaky_append(db, **kwargs):
        calls.append(1)
        if len(calls) <= failures:
            raise StaleDataError("stock_entries row changed underneath")
        return real_append(db, **kwargs)

    monkeypatch.setattr(adjustment_service, "append_movement", flaky_append)
    monkeypatch.setattr(settings, "stock_retry_backoff_seconds", 0)
    return calls


def test_stale_write_is_retried(db_session, make_location, monkeypatch):
    location = make_location()
    calls = _stale_on_first_calls(monkeypatch, failures=2)

    entry = adjust_stock(db_session, tenant_id=TENANT_ID, product_id="prod-1", location_id=location.id, quantity_change=4)

    assert len(calls) == 3
    assert entry.quantity == 4
    assert entry.version == 1
    movements = db_session.execute(select(StockMovement)).scalars().all()
    assert [m.quantity_change for m in movements] == [4]


def test_retries_exhausted_raise_conflict(db_session, make_location, monkeypatch):
    location = make_location()
    monkeypatch.setattr(settings, "stock_max_retries", 2)
    calls = _stale_on_first_calls(monkeypatch, failures=100)

    with pytest.raises(ConflictError) as excinfo:
        adjust_stock(db_session, tenant_id=TENANT_ID, product_id="prod-1", location_id=location.id, quantity_change=4)

    assert len(calls) == 3
    assert excinfo.value.requested == {"quantity_change": 4, "reserved_change": 0}
    assert db_session.execute(select(StockMovement)).scalars().all() == []
    assert get_entry(db_session, tenant_id=TENANT_ID, product_id="prod-1", location_id=location.id).id is None


def test_location_delete_refused_when_a_new_entry_lands_mid_delete(file_session_factory, monkeypatch):
    location_id = _location(file_session_factory, "Pop-up")
    real_audit = location_service.log_audit_event

    def audit_after_concurrent_receipt(db, **kwargs):
        if kwargs["action"] == "location.delete":
            # Another writer creates the first entry for a new product while the delete is in flight.
            _adjust_in_own_session(file_session_factory, "new-prod", location_id, 10)
        return real_audit(db, **kwargs)

    monkeypatch.setattr(location_service, "log_audit_event", audit_after_concurrent_receipt)

    with file_session_factory() as db:
        with pytest.raises(LocationInUseError) as excinfo:
            delete_location(db, tenant_id=TENANT_ID, location_id=location_id)
    assert excinfo.value.blocking_entries == [{"product_id": "new-prod", "quantity": 10, "reserved": 0}]

    with file_session_factory() as db:
        assert get_location(db, tenant_id=TENANT_ID, location_id=location_id).id == location_id
        entry = get_entry(db, tenant_id=TENANT_ID, product_id="new-prod", location_id=location_id)
        assert entry.quantity == 10
        assert replay_entry(db, tenant_id=TENANT_ID, product_id="new-prod", location_id=location_id).consistent


def test_adjust_racing_a_location_delete_leaves_no_orphan_entry(file_session_factory, monkeypatch):
    location_id = _location(file_session_factory, "Pop-up")
    monkeypatch.setattr(settings, "stock_retry_backoff_seconds", 0)
    real_check = adjustment_service.require_active_location
    checks: list[int] = []

    def check_then_lose_location(db, **kwargs):
        location = real_check(db, **kwargs)
        if not checks:
            with file_session_factory() as other:
                delete_location(other, tenant_id=TENANT_ID, location_id=location_id)
        checks.append(1)
        return location

    monkeypatch.setattr(adjustment_service, "require_active_location", check_then_lose_location)

    with file_session_factory() as db:
        with pytest.raises(LocationNotFoundError) as excinfo:
            adjust_stock(db, tenant_id=TENANT_ID, product_id="prod-1", location_id=location_id, quantity_change=5)

    assert len(checks) == 1
    assert excinfo.value.key == StockKey(TENANT_ID, "prod-1", location_id)
    assert excinfo.value.requested == {"quantity_change": 5, "reserved_change": 0}
    with file_session_factory() as db:
        assert db.execute(select(StockEntry)).scalars().all() == []
        assert db.execute(select(StockMovement)).scalars().all() == []
