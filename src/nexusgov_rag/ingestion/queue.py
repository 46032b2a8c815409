"""In-process work queue that runs ingestion outside the triggering request.

Each submission becomes a :class:`WorkItem` with an explicit lifecycle
(``PENDING → RUNNING → DONE | FAILED | CANCELLED``).  Items run on a
thread pool, so an HTTP caller that disconnects does not abort the
pipeline, and a failed item can be retried by id.  At most one item per
document is pending or running at a time; a duplicate submission returns
the existing item.

Records live in memory: a process restart loses them (exactly-once
ingestion is out of scope).
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from nexusgov_rag.errors import RAGError
from nexusgov_rag.ingestion.coordinator import CancellationToken, IngestionCoordinator, IngestionOutcome

logger = logging.getLogger(__name__)


class WorkState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class IngestAction(str, Enum):
    INGEST = "ingest"
    RETRY = "retry"
    REPROCESS = "reprocess"


_ACTIVE = (WorkState.PENDING, WorkState.RUNNING)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkItem(BaseModel):
    """Snapshot of one queued ingestion."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    document_id: str
    action: IngestAction = IngestAction.INGEST
    state: WorkState = WorkState.PENDING
    attempts: int = 0
    outcome: IngestionOutcome | None = None
    error: str | None = None
    error_type: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class IngestionQueue:
    """Thread-pool executor for :class:`IngestionCoordinator` runs.

    Parameters
    ----------
    coordinator:
        Runs the actual pipeline.
    max_workers:
        Documents processed in parallel.
    max_finished:
        Finished items kept for lookup; the oldest are forgotten first.
    """

    def __init__(
        self,
        coordinator: IngestionCoordinator,
        *,
        max_workers: int = 4,
        max_finished: int = 1000,
    ) -> None:
        self._coordinator = coordinator
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest")
        self._max_finished = max(1, max_finished)
        self._lock = threading.RLock()
        self._items: dict[str, WorkItem] = {}
        # Only active items hold a token and a future.
        self._tokens: dict[str, CancellationToken] = {}
        self._futures: dict[str, Future[None]] = {}
        self._active: dict[str, str] = {}  # document id -> item id
        self._finished: deque[str] = deque()

    # -- public API -----------------------------------------------------------

    def submit(self, document_id: str, action: IngestAction | str = IngestAction.INGEST) -> WorkItem:
        """Queue *document_id*; returns the already-active item for that document if any."""
        action = IngestAction(action)
        with self._lock:
            active_id = self._active.get(document_id)
            if active_id is not None:
                logger.info("Document %s already queued as %s", document_id, active_id)
                return self._items[active_id].model_copy()
            item = WorkItem(document_id=document_id, action=action)
            self._items[item.id] = item
            self._active[document_id] = item.id
            self._tokens[item.id] = CancellationToken()
            self._futures[item.id] = self._executor.submit(self._execute, item.id)
            logger.info("Queued %s for document %s (%s)", item.id, document_id, action.value)
            return item.model_copy()

    def get(self, item_id: str) -> WorkItem | None:
        with self._lock:
            item = self._items.get(item_id)
            return item.model_copy() if item else None

    def list(self, document_id: str | None = None) -> list[WorkItem]:
        with self._lock:
            return [
                i.model_copy()
                for i in sorted(self._items.values(), key=lambda i: i.created_at)
                if document_id is None or i.document_id == document_id
            ]

    def wait(self, item_id: str, timeout: float | None = None) -> WorkItem:
        """Block until the item finishes (or *timeout* elapses) and return its snapshot."""
        with self._lock:
            if item_id not in self._items:
                raise KeyError(item_id)
            future = self._futures.get(item_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except CancelledError:
                pass
        item = self.get(item_id)
        if item is None:
            raise KeyError(item_id)
        return item

    def cancel(self, item_id: str) -> WorkItem:
        """Request cancellation; a running item stops at its next blocking boundary."""
        with self._lock:
            item = self._items[item_id]
            if item.state in _ACTIVE:
                self._tokens[item_id].cancel()
                if item.state == WorkState.PENDING and self._futures[item_id].cancel():
                    self._finish(item_id, state=WorkState.CANCELLED, error="Cancelled before start")
            return self._items[item_id].model_copy()

    def retry(self, item_id: str) -> WorkItem:
        """Resubmit a failed or cancelled item.

        Items whose pipeline ran (the document is now ``ERROR``) come back as
        an explicit retry; items that never started keep their action.
        """
        with self._lock:
            item = self._items[item_id]
            if item.state not in (WorkState.FAILED, WorkState.CANCELLED):
                raise ValueError(f"Work item {item_id} is {item.state.value}; only failed items can be retried")
            action = IngestAction.RETRY if item.outcome is not None else item.action
            return self.submit(item.document_id, action)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    # -- internals ------------------------------------------------------------

    def _update(self, item_id: str, **fields: object) -> None:
        with self._lock:
            item = self._items[item_id]
            self._items[item_id] = item.model_copy(update={**fields, "updated_at": _now()})

    def _finish(self, item_id: str, **fields: object) -> None:
        """Record the final state, release the item's token and future, prune old items."""
        with self._lock:
            self._update(item_id, **fields)
            self._tokens.pop(item_id, None)
            self._futures.pop(item_id, None)
            document_id = self._items[item_id].document_id
            if self._active.get(document_id) == item_id:
                del self._active[document_id]
            self._finished.append(item_id)
            while len(self._finished) > self._max_finished:
                self._items.pop(self._finished.popleft(), None)

    def _execute(self, item_id: str) -> None:
        with self._lock:
            item = self._items[item_id]
            token = self._tokens[item_id]
            if token.cancelled:
                self._finish(item_id, state=WorkState.CANCELLED, error="Cancelled before start")
                return
            self._update(item_id, state=WorkState.RUNNING, attempts=item.attempts + 1)

        run = {
            IngestAction.INGEST: self._coordinator.ingest,
            IngestAction.RETRY: self._coordinator.retry,
            IngestAction.REPROCESS: self._coordinator.reprocess,
        }[item.action]

        try:
            outcome = run(item.document_id, token)
        except RAGError as exc:
            # Caller mistakes (unknown document, illegal transition).
            logger.warning("Work item %s rejected: %s", item_id, exc)
            self._finish(item_id, state=WorkState.FAILED, error=str(exc), error_type=exc.code)
            return
        except Exception as exc:
            logger.exception("Work item %s crashed", item_id)
            self._finish(item_id, state=WorkState.FAILED, error=str(exc))
            return

        if outcome.success:
            state = WorkState.DONE
        elif token.cancelled:
            state = WorkState.CANCELLED
        else:
            state = WorkState.FAILED
        self._finish(item_id, state=state, outcome=outcome, error=outcome.error, error_type=outcome.error_type)
