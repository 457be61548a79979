import asyncio
import dataclasses
import logging
from uuid import uuid4

from app.config import settings
from app.errors import (
    AllBackendsUnavailable,
    CorrectionError,
    InvalidInput,
    StorageFailure,
)
from app.models import (
    DONE,
    ERROR,
    SOURCES,
    THINKING,
    ClassSession,
    CorrectionResult,
    MistakeEntry,
)
from app.services.correction import CorrectionGateway
from app.services.ledger import SessionLedger
from app.services.storage import MistakeStore

logger = logging.getLogger(__name__)


class MistakeAnalyzer:
    """Drives each submitted utterance from ``thinking`` to ``done`` or ``error``.

    Lifecycle of one entry::

        submit ──> thinking ──ok──> done (durable id swapped in)
                      │  ^
               fail   │  │ automatic retry after ``retry_delay``
                      v  │ (at most ``auto_retry_limit`` times)
                    error ──retry()──> thinking

    Every entry runs in its own task, so one entry's failure or retry never
    touches another. Pending automatic retries are ``TimerHandle`` objects and
    are cancelled by ``delete()`` and ``shutdown()``.
    """

    def __init__(
        self,
        session: ClassSession,
        ledger: SessionLedger,
        gateway: CorrectionGateway,
        store: MistakeStore,
        *,
        auto_retry_limit: int | None = None,
        retry_delay: float | None = None,
        max_concurrent: int | None = None,
        retry_backend_errors: bool | None = None,
    ) -> None:
        self.session = session
        self.ledger = ledger
        self.gateway = gateway
        self.store = store
        self.auto_retry_limit = (
            settings.auto_retry_limit if auto_retry_limit is None else auto_retry_limit
        )
        self.retry_delay = (
            settings.auto_retry_delay_seconds if retry_delay is None else retry_delay
        )
        self.retry_backend_errors = (
            settings.retry_backend_errors
            if retry_backend_errors is None
            else retry_backend_errors
        )
        limit = settings.max_concurrent_analyses if max_concurrent is None else max_concurrent
        self._semaphore = asyncio.Semaphore(limit) if limit > 0 else None

        self._inflight: dict[str | int, asyncio.Task] = {}
        self._pending_retries: dict[str | int, asyncio.TimerHandle] = {}
        # Entries whose row is being written and entries deleted meanwhile
        self._saving: set[str | int] = set()
        self._deleted: set[str | int] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, text, source: str = "manual") -> MistakeEntry:  # noqa: ANN001
        """Insert a ``thinking`` entry and start analysing it in the background."""
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Utterance must be non-empty text")
        if source not in SOURCES:
            raise InvalidInput(f"Unknown source {source!r}")

        entry = MistakeEntry(
            id=f"tmp-{uuid4().hex}",
            session_id=self.session.id,
            owner_id=self.session.teacher_id,
            original_text=text.strip(),
            source=source,
        )
        self.ledger.insert(entry)
        self._launch(entry.id)
        return entry

    def retry(self, entry_id: str | int) -> MistakeEntry:
        """Manual retry: only from ``error``, resets the automatic-retry budget."""
        entry = self.ledger.get(entry_id)
        entry.check_transition(THINKING)
        self.ledger.update(
            entry_id,
            status=THINKING,
            auto_retries=0,
            manual_retries=entry.manual_retries + 1,
            error_kind=None,
            error_message=None,
        )
        logger.info("Manual retry %d for entry %s", entry.manual_retries, entry_id)
        self._launch(entry_id)
        return entry

    async def delete(self, entry_id: str | int) -> MistakeEntry:
        entry = self.ledger.get(entry_id)
        if entry.is_persisted:
            await self.store.delete(entry.id, entry.session_id)
        if entry_id in self._saving:
            # The insert may already be committed; _analyze drops the row.
            self._deleted.add(entry_id)
        else:
            self._cancel(entry_id)
        return self.ledger.remove(entry_id)

    def shutdown(self) -> None:
        """Cancel scheduled automatic retries. In-flight checks keep running.

        Checks that fail after shutdown go straight to ``error``.
        """
        self._closed = True
        for key in list(self._pending_retries):
            self._pending_retries.pop(key).cancel()
            if key in self.ledger:
                self.ledger.update(
                    key,
                    status=ERROR,
                    error_kind="cancelled",
                    error_message="Session closed before the automatic retry ran",
                )

    async def wait_idle(self) -> None:
        """Return once no check is running and no retry is scheduled."""
        while True:
            running = [task for task in self._inflight.values() if not task.done()]
            if running:
                await asyncio.wait(running)
            elif self._pending_retries:
                await asyncio.sleep(0.01)
            else:
                return

    @property
    def busy(self) -> bool:
        return bool(self._inflight or self._pending_retries)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _launch(self, key: str | int) -> None:
        self._pending_retries.pop(key, None)
        task = asyncio.get_running_loop().create_task(self._analyze(key))
        self._inflight[key] = task
        task.add_done_callback(lambda t: self._finished(key, t))

    def _finished(self, key: str | int, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Analysis of entry %s crashed", key, exc_info=task.exception()
            )

    def _cancel(self, key: str | int) -> None:
        handle = self._pending_retries.pop(key, None)
        if handle is not None:
            handle.cancel()
        task = self._inflight.pop(key, None)
        if task is not None:
            task.cancel()

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    async def _analyze(self, key: str | int) -> None:
        entry = self.ledger.get(key)
        try:
            result = await self._check(entry.original_text)
            resolved = dataclasses.replace(
                entry,
                corrected_text=result.corrected_sentence,
                explanation=result.explanation,
                categories=list(result.categories),
                is_correct=result.is_correct,
            )
            # Entries that only succeeded after a manual retry are stored as such.
            source = "retry" if entry.manual_retries else entry.source
            self._saving.add(key)
            try:
                durable_id = await self.store.insert(resolved, source=source)
            finally:
                self._saving.discard(key)
        except (CorrectionError, StorageFailure) as e:
            if key in self._deleted:
                self._deleted.discard(key)
                return
            self._handle_failure(key, e)
            return

        if key in self._deleted:
            self._deleted.discard(key)
            await self._drop_row(durable_id)
            return

        self.ledger.update(
            key,
            new_id=durable_id,
            status=DONE,
            corrected_text=resolved.corrected_text,
            explanation=resolved.explanation,
            categories=resolved.categories,
            is_correct=resolved.is_correct,
            error_kind=None,
            error_message=None,
        )
        logger.info("Entry %s resolved as %s", key, durable_id)

    async def _check(self, text: str) -> CorrectionResult:
        if self._semaphore is None:
            return await self.gateway.check(text, self.session.language)
        async with self._semaphore:
            return await self.gateway.check(text, self.session.language)

    def _handle_failure(self, key: str | int, error: Exception) -> None:
        entry = self.ledger.get(key)
        if isinstance(error, AllBackendsUnavailable):
            kind = error.last_kind
            retryable = self.retry_backend_errors or not error.backend_only
        else:
            kind = getattr(error, "kind", "error")
            retryable = True

        if retryable and not self._closed and entry.auto_retries < self.auto_retry_limit:
            self.ledger.update(key, auto_retries=entry.auto_retries + 1)
            logger.warning(
                "Entry %s failed (%s), retrying in %ss: %s",
                key, kind, self.retry_delay, error,
            )
            loop = asyncio.get_running_loop()
            self._pending_retries[key] = loop.call_later(
                self.retry_delay, self._launch, key
            )
            return

        logger.error("Entry %s failed (%s): %s", key, kind, error)
        self.ledger.update(key, status=ERROR, error_kind=kind, error_message=str(error))

    async def _drop_row(self, durable_id: int) -> None:
        """Remove the row of an entry deleted while it was being saved."""
        try:
            await self.store.delete(durable_id, self.session.id)
        except StorageFailure:
            logger.exception("Could not remove row %s of a deleted entry", durable_id)
            return
        logger.info("Removed row %s of an entry deleted while saving", durable_id)
