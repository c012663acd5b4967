# substrate.py — Execution substrate shared by every registry
# - Time source (SystemClock / FrozenClock)
# - Per-kind id sequences
# - Serialized, all-or-nothing mutations with event emission
# - Reentrancy guard scoped to the current call chain

import asyncio
import contextvars
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ReentrantMutation
from models import EventKind, IdSequence, RegistryEvent, utcnow

logger = logging.getLogger("resource-registry.substrate")


# ============================================================
# CLOCKS
# ============================================================

class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


class FrozenClock:
    """Clock that only moves when told to"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or utcnow()

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


# ============================================================
# MUTATION SCOPE
# ============================================================

@dataclass
class PendingEvent:
    kind: EventKind
    entity_type: str
    entity_id: str
    workspace_id: Optional[int]
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MutationScope:
    """Handed to the body of a mutation; collects events until commit"""
    operation: str
    caller_id: str
    now: datetime
    events: List[PendingEvent] = field(default_factory=list)

    def emit(
        self,
        kind: EventKind,
        entity_type: str,
        entity_id: Any,
        workspace_id: Optional[int] = None,
        **changes: Any,
    ) -> None:
        self.events.append(PendingEvent(
            kind=kind,
            entity_type=entity_type,
            entity_id=str(entity_id),
            workspace_id=workspace_id,
            changes=changes,
        ))


# One mutation at a time, process-wide
_serial_lock = asyncio.Lock()

_active_mutation: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "active_mutation", default=None
)


def active_mutation() -> Optional[str]:
    return _active_mutation.get()


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value


# ============================================================
# SUBSTRATE
# ============================================================

class ExecutionSubstrate:
    """Binds a database session and a clock; every registry mutates through it"""

    def __init__(self, session: AsyncSession, clock: Clock):
        self.session = session
        self.clock = clock

    def now(self) -> datetime:
        return self.clock.now()

    async def next_id(self, kind: str) -> int:
        """Allocate the next id of ``kind``. Only valid inside a mutation."""
        stmt = select(IdSequence).where(IdSequence.kind == kind).with_for_update()
        result = await self.session.execute(stmt)
        seq = result.scalar_one_or_none()
        if seq is None:
            seq = IdSequence(kind=kind, last_value=0)
            self.session.add(seq)
        seq.last_value = (seq.last_value or 0) + 1
        await self.session.flush()
        return seq.last_value

    @asynccontextmanager
    async def mutation(self, operation: str, caller_id: str) -> AsyncIterator[MutationScope]:
        in_progress = _active_mutation.get()
        if in_progress is not None:
            raise ReentrantMutation(
                f"Cannot start '{operation}' while '{in_progress}' is in progress",
                {"operation": operation, "in_progress": in_progress},
            )

        token = _active_mutation.set(operation)
        try:
            async with _serial_lock:
                scope = MutationScope(operation=operation, caller_id=caller_id, now=self.clock.now())
                try:
                    yield scope
                    await self._append_events(scope)
                    await self.session.commit()
                except Exception as exc:
                    await self.session.rollback()
                    logger.warning(f"{operation} rolled back for {caller_id}: {exc}")
                    raise
        finally:
            _active_mutation.reset(token)

        for event in scope.events:
            logger.info(
                f"{event.kind.value} {event.entity_type}={event.entity_id} "
                f"by {caller_id} {event.changes}"
            )

    async def _append_events(self, scope: MutationScope) -> None:
        for event in scope.events:
            sequence = await self.next_id("event")
            self.session.add(RegistryEvent(
                sequence=sequence,
                kind=event.kind,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                workspace_id=event.workspace_id,
                actor_id=scope.caller_id,
                operation=scope.operation,
                changes={k: _json_safe(v) for k, v in event.changes.items()},
                created_at=scope.now,
            ))
