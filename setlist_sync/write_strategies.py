"""
Fallback write chain: upsert -> insert-only -> in-memory record

Each strategy returns a tagged WriteOutcome. The chain stops at the first
success. Insert-only only runs after a permission-denied upsert; any other
failure goes straight to the in-memory fallback, which always succeeds with
the prepared (unpersisted) record.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from .errors import PermissionDenied
from .store import EntityStore, Record

logger = structlog.get_logger(__name__)


@dataclass
class WriteOutcome:
    strategy: str
    ok: bool
    record: Optional[Record] = None
    error: Optional[Exception] = None
    persisted: bool = False

    @property
    def permission_denied(self) -> bool:
        return isinstance(self.error, PermissionDenied)


class WriteStrategy(ABC):
    name = "base"

    @abstractmethod
    def applies(self, previous: Optional[WriteOutcome]) -> bool:
        """Whether this strategy runs after the previous failed outcome (None = first)."""
        ...

    @abstractmethod
    async def attempt(self, store: EntityStore, kind: str, record: Record) -> WriteOutcome:
        ...


class UpsertStrategy(WriteStrategy):
    name = "upsert"

    def applies(self, previous: Optional[WriteOutcome]) -> bool:
        return previous is None

    async def attempt(self, store: EntityStore, kind: str, record: Record) -> WriteOutcome:
        try:
            row = await store.upsert(kind, record)
        except Exception as e:
            if isinstance(e, PermissionDenied):
                logger.warning("Permission denied on upsert", kind=kind, entity_id=record.id)
            else:
                logger.error("Upsert failed", kind=kind, entity_id=record.id, error=str(e), exc_info=True)
            return WriteOutcome(self.name, ok=False, error=e)
        return WriteOutcome(self.name, ok=True, record=row or record, persisted=True)


class InsertOnlyStrategy(WriteStrategy):
    name = "insert_only"

    def applies(self, previous: Optional[WriteOutcome]) -> bool:
        return previous is not None and previous.permission_denied

    async def attempt(self, store: EntityStore, kind: str, record: Record) -> WriteOutcome:
        logger.info("Trying insert-only write", kind=kind, entity_id=record.id)
        try:
            row = await store.insert(kind, record)
        except Exception as e:
            logger.error("Insert-only write also failed", kind=kind, entity_id=record.id, error=str(e))
            return WriteOutcome(self.name, ok=False, error=e)
        return WriteOutcome(self.name, ok=True, record=row or record, persisted=True)


class InMemoryFallbackStrategy(WriteStrategy):
    name = "in_memory"

    def applies(self, previous: Optional[WriteOutcome]) -> bool:
        return True

    async def attempt(self, store: EntityStore, kind: str, record: Record) -> WriteOutcome:
        logger.warning("Returning unpersisted record", kind=kind, entity_id=record.id)
        return WriteOutcome(self.name, ok=True, record=record, persisted=False)


DEFAULT_WRITE_CHAIN: Sequence[WriteStrategy] = (
    UpsertStrategy(),
    InsertOnlyStrategy(),
    InMemoryFallbackStrategy(),
)


async def run_write_chain(
    store: EntityStore,
    kind: str,
    record: Record,
    strategies: Sequence[WriteStrategy] = DEFAULT_WRITE_CHAIN
) -> WriteOutcome:
    """Try each applicable strategy in order until one succeeds."""
    previous: Optional[WriteOutcome] = None
    for strategy in strategies:
        if not strategy.applies(previous):
            continue
        outcome = await strategy.attempt(store, kind, record)
        if outcome.ok:
            return outcome
        previous = outcome

    return WriteOutcome(
        "exhausted",
        ok=False,
        record=record,
        error=previous.error if previous else None
    )
