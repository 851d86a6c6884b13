"""
Outbound persistence interface
The in-memory ledgers are authoritative; durable storage is fed through a
fire-and-forget sink that never blocks snapshot publication.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import json
import logging
import queue
import threading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersistenceRecord:
    """
    One durable fact.

    Attributes:
        kind: e.g. "reservation.confirmed", "inventory.alert_raised"
        entity_type: "reservation" | "inventory_item"
        entity_id: Id of the entity
        payload: JSON-serializable details
        occurred_at: When the in-memory change happened
    """

    kind: str
    entity_type: str
    entity_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def payload_json(self) -> str:
        return json.dumps(self.payload, default=str, sort_keys=True)


class PersistenceSink(ABC):
    """Outbound persistence-write interface."""

    @abstractmethod
    def write(self, record: PersistenceRecord) -> None:
        """Persist one record."""

    def close(self) -> None:
        """Release resources."""


class InMemoryPersistenceSink(PersistenceSink):
    """Keeps records in a list; used by tests and when persistence is disabled."""

    def __init__(self):
        self._records: List[PersistenceRecord] = []
        self._lock = threading.Lock()

    def write(self, record: PersistenceRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> List[PersistenceRecord]:
        with self._lock:
            return list(self._records)

    def kinds(self) -> List[str]:
        return [r.kind for r in self.records]


_STOP = object()


class AsyncPersistenceQueue(PersistenceSink):
    """
    Fire-and-forget wrapper: write() enqueues and returns immediately, a
    daemon worker thread drains into the wrapped sink. Failures of the
    wrapped sink are logged and counted, never raised to the producer.
    """

    def __init__(self, sink: PersistenceSink, max_size: int = 10000,
                 on_error: Optional[Callable[[PersistenceRecord, Exception], None]] = None):
        self._sink = sink
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_size)
        self._on_error = on_error
        self._failed = 0
        self._dropped = 0
        self._worker = threading.Thread(target=self._run, name="persistence-writer", daemon=True)
        self._worker.start()

    @property
    def failed_count(self) -> int:
        return self._failed

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def write(self, record: PersistenceRecord) -> None:
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1
            logger.error(f"Persistence queue full, dropped {record.kind} for {record.entity_id}")

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued record has been handed to the sink."""
        if timeout is None:
            self._queue.join()
            return
        done = threading.Event()

        def _wait():
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        done.wait(timeout)

    def close(self) -> None:
        self._queue.put(_STOP)
        self._worker.join(timeout=5)
        self._sink.close()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._sink.write(item)
            except Exception as e:
                self._failed += 1
                logger.error(f"Persistence write failed for {item.kind}: {e}", exc_info=True)
                if self._on_error is not None:
                    self._on_error(item, e)
            finally:
                self._queue.task_done()


class SqlAlchemyPersistenceSink(PersistenceSink):
    """Writes records to the persistence_records table."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def write(self, record: PersistenceRecord) -> None:
        from guest_dashboard.models.records import PersistedRecord

        db = self._session_factory()
        try:
            db.add(
                PersistedRecord(
                    kind=record.kind,
                    entity_type=record.entity_type,
                    entity_id=record.entity_id,
                    payload=record.payload_json(),
                    occurred_at=record.occurred_at,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


__all__ = [
    "PersistenceRecord",
    "PersistenceSink",
    "InMemoryPersistenceSink",
    "AsyncPersistenceQueue",
    "SqlAlchemyPersistenceSink",
]
