"""Local values applied ahead of a confirming write.

Each key holds either ``Committed(value)`` or ``Optimistic(value, rollback)``.
A failed write restores ``rollback``; a write superseded by a newer local
change only updates what that newer change would roll back to.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar, Union

from data_delivery.gate import CRITICAL, ScheduleGate

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Committed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Optimistic(Generic[T]):
    value: T
    rollback: T


PendingState = Union[Committed[T], Optimistic[T]]


class OptimisticStore(Generic[T]):
    def __init__(
        self,
        gate: ScheduleGate,
        initial: Mapping[str, T] | None = None,
        priority: int = CRITICAL,
    ) -> None:
        self._gate = gate
        self._priority = priority
        self._states: dict[str, PendingState[T]] = {
            key: Committed(value) for key, value in (initial or {}).items()
        }
        self._pending: dict[str, list[Optimistic[T]]] = {}

    def get(self, key: str, default: T | None = None) -> T | None:
        state = self._states.get(key)
        return state.value if state is not None else default

    def state(self, key: str) -> PendingState[T] | None:
        return self._states.get(key)

    def is_pending(self, key: str) -> bool:
        return isinstance(self._states.get(key), Optimistic)

    def snapshot(self) -> dict[str, T]:
        return {key: state.value for key, state in self._states.items()}

    def commit(self, key: str, value: T) -> None:
        """Record a server-confirmed value, e.g. after a re-fetch."""
        self._states[key] = Committed(value)

    async def apply(
        self,
        key: str,
        value: T,
        write: Callable[[], Awaitable[Any]],
        default: T | None = None,
    ) -> T:
        current = self._states.get(key)
        rollback = current.value if current is not None else default
        pending: Optimistic[T] = Optimistic(value=value, rollback=rollback)
        self._states[key] = pending
        self._pending.setdefault(key, []).append(pending)
        try:
            await self._gate.submit(write, self._priority)
        except Exception as exc:
            self._settle(key, pending, confirmed=False)
            logger.warning("optimistic_write_rolled_back", extra={"key": key, "error": repr(exc)})
            raise
        self._settle(key, pending, confirmed=True)
        return value

    def _settle(self, key: str, pending: Optimistic[T], confirmed: bool) -> None:
        settled_value = pending.value if confirmed else pending.rollback
        chain = self._pending.get(key, [])
        position = next((index for index, item in enumerate(chain) if item is pending), None)
        successor = chain[position + 1] if position is not None and position + 1 < len(chain) else None
        if position is not None:
            del chain[position]
        if not chain:
            self._pending.pop(key, None)

        if self._states.get(key) is pending:
            self._states[key] = Committed(settled_value)
        elif successor is not None:
            updated = replace(successor, rollback=settled_value)
            chain[position] = updated
            if self._states.get(key) is successor:
                self._states[key] = updated
