import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock, RLock
from typing import Any, Iterator, NamedTuple

from stockledger.core.config import settings
from stockledger.core.errors import ConflictError


class StockKey(NamedTuple):
    tenant_id: str
    product_id: str
    location_id: str


@dataclass
class _KeyLockState:
    lock: RLock = field(default_factory=RLock)
    refs: int = 0


class StockKeyLockRegistry:
    """
    Process-wide exclusive locks, one per (tenant, product, location).

    Locks are re-entrant so a transfer holding both of its keys can call the
    single-key adjust path. Idle keys are dropped once nobody references them.
    """

    def __init__(self, *, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self._states: dict[StockKey, _KeyLockState] = {}
        self._lock = Lock()

    @contextmanager
    def hold(
        self,
        *keys: StockKey,
        timeout_seconds: float | None = None,
        requested: dict[str, Any] | None = None,
    ) -> Iterator[None]:
        # Sorted acquisition order: two transfers in opposite directions cannot deadlock.
        ordered = sorted(set(keys))
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        deadline = time.monotonic() + timeout
        acquired: list[tuple[StockKey, _KeyLockState]] = []
        try:
            for key in ordered:
                state = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not state.lock.acquire(timeout=remaining):
                    self._checkin(key)
                    raise ConflictError(
                        f"Timed out after {timeout}s waiting for stock entry lock",
                        key=key,
                        requested=requested,
                    )
                acquired.append((key, state))
            yield
        finally:
            for key, state in reversed(acquired):
                state.lock.release()
                self._checkin(key)

    def active_keys(self) -> int:
        with self._lock:
            return len(self._states)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()

    def _checkout(self, key: StockKey) -> _KeyLockState:
        with self._lock:
            state = self._states.setdefault(key, _KeyLockState())
            state.refs += 1
            return state

    def _checkin(self, key: StockKey) -> None:
        with self._lock:
            state = self._states.get(key)
            if not state:
                return
            state.refs -= 1
            if state.refs <= 0:
                self._states.pop(key, None)


stock_key_locks = StockKeyLockRegistry(timeout_seconds=settings.stock_lock_timeout_seconds)
