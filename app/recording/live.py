import logging
from typing import Awaitable, Callable

from app.errors import CaptureError, InvalidTransition
from app.models import IN_PROGRESS, AudioSegment, ClassSession
from app.recording.capture import AudioCaptureController
from app.services.analysis import MistakeAnalyzer
from app.services.correction import CorrectionGateway
from app.services.ledger import SessionLedger
from app.services.storage import MistakeStore
from app.services.transcription import transcribe_segment

logger = logging.getLogger(__name__)

Transcriber = Callable[[AudioSegment, str | None], Awaitable[str | None]]
Listener = Callable[[dict], None]


class LiveSession:
    """One in-progress class: capture → transcription → analysis → ledger.

    Subscribers receive the ledger's entry events plus::

        {"type": "recording_status", "session_id": int, "status": "recording" | "idle"}
        {"type": "capture_failed", "session_id": int, "kind": str, "message": str}
    """

    def __init__(
        self,
        session: ClassSession,
        *,
        gateway: CorrectionGateway,
        transcriber: Transcriber,
        mistake_store: MistakeStore,
        stream_factory: Callable | None = None,
    ) -> None:
        self.session = session
        self.ledger = SessionLedger(session.id)
        self.analyzer = MistakeAnalyzer(session, self.ledger, gateway, mistake_store)
        self.transcriber = transcriber
        self.capture = AudioCaptureController(
            self._on_segment,
            self._on_capture_failure,
            stream_factory=stream_factory,
        )
        self._listeners: list[Listener] = []

    @property
    def is_recording(self) -> bool:
        return self.capture.is_active

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def recording_status(self) -> dict:
        return {
            "type": "recording_status",
            "session_id": self.session.id,
            "status": "recording" if self.is_recording else "idle",
        }

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        unsubscribe_ledger = self.ledger.subscribe(listener)

        def unsubscribe() -> None:
            unsubscribe_ledger()
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, message: dict) -> None:
        for fn in list(self._listeners):
            try:
                fn(message)
            except Exception:
                logger.exception("Live-session listener failed")

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def start_capture(self) -> None:
        if self.is_recording:
            return
        self.capture.start()
        self._publish(self.recording_status())

    def stop_capture(self) -> None:
        if not self.is_recording:
            return
        self.capture.stop()
        self._publish(self.recording_status())

    def close(self) -> None:
        """Release the microphone and cancel scheduled retries."""
        self.stop_capture()
        self.analyzer.shutdown()

    async def _on_segment(self, segment: AudioSegment) -> None:
        text = await self.transcriber(segment, self.session.language)
        if not text:
            logger.debug("No speech in segment %d of session %s", segment.index, self.session.id)
            return
        self.analyzer.submit(text, "audio")

    def _on_capture_failure(self, error: CaptureError) -> None:
        self._publish(
            {
                "type": "capture_failed",
                "session_id": self.session.id,
                "kind": error.kind,
                "message": str(error),
            }
        )
        self._publish(self.recording_status())


class LiveSessionRegistry:
    """In-memory registry of live sessions, keyed by class-session id."""

    def __init__(
        self,
        *,
        gateway: CorrectionGateway | None = None,
        transcriber: Transcriber = transcribe_segment,
        mistake_store: MistakeStore | None = None,
        stream_factory: Callable | None = None,
    ) -> None:
        self._gateway = gateway
        self.transcriber = transcriber
        self.mistake_store = mistake_store or MistakeStore()
        self.stream_factory = stream_factory
        self._live: dict[int, LiveSession] = {}

    @property
    def gateway(self) -> CorrectionGateway:
        # Built on first use so importing the app never needs Groq credentials.
        if self._gateway is None:
            self._gateway = CorrectionGateway()
        return self._gateway

    @gateway.setter
    def gateway(self, value: CorrectionGateway) -> None:
        self._gateway = value

    def get(self, session_id: int) -> LiveSession | None:
        return self._live.get(session_id)

    async def open(self, session: ClassSession) -> LiveSession:
        """Return the live session, creating it and loading its history if needed."""
        live = self._live.get(session.id)
        if live is not None:
            return live
        if session.status != IN_PROGRESS:
            raise InvalidTransition(f"Session {session.id} is {session.status}, not in progress")

        history = await self.mistake_store.list_for_session(session.id)
        live = self._live.get(session.id)  # opened by a concurrent request meanwhile
        if live is not None:
            return live
        live = LiveSession(
            session,
            gateway=self.gateway,
            transcriber=self.transcriber,
            mistake_store=self.mistake_store,
            stream_factory=self.stream_factory,
        )
        live.ledger.hydrate(history)
        self._live[session.id] = live
        logger.info("Opened live session %s (%d saved entries)", session.id, len(history))
        return live

    def close(self, session_id: int) -> LiveSession | None:
        live = self._live.pop(session_id, None)
        if live is not None:
            live.close()
            logger.info("Closed live session %s", session_id)
        return live

    async def close_all(self) -> None:
        """Close every session and let in-flight checks land before shutdown."""
        closed = [self.close(session_id) for session_id in list(self._live)]
        for live in closed:
            await live.capture.wait_consumers()
            await live.analyzer.wait_idle()
