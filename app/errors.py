"""Domain errors.

Every error carries a short ``kind`` string so routes and WebSocket clients
can tell failures apart without matching on class names.
"""


class TutorError(Exception):
    kind = "error"


class InvalidInput(TutorError):
    """Utterance is empty or not text. Raised before any network call."""

    kind = "invalid_input"


# ----------------------------------------------------------------------
# Audio capture
# ----------------------------------------------------------------------


class CaptureError(TutorError):
    kind = "capture"


class HardwareUnavailable(CaptureError):
    kind = "hardware_unavailable"


class PermissionDenied(CaptureError):
    kind = "permission_denied"


# ----------------------------------------------------------------------
# Correction service
# ----------------------------------------------------------------------


class CorrectionError(TutorError):
    kind = "correction"


class TransportFailure(CorrectionError):
    """The correction service could not be reached or timed out."""

    kind = "transport"


class BackendLogicError(CorrectionError):
    """The service answered but reported an application-level error."""

    kind = "backend"


class MalformedResponse(CorrectionError):
    """The service answered with something that is not a correction result."""

    kind = "malformed"


class AllBackendsUnavailable(CorrectionError):
    """Every model in the waterfall failed.

    ``failures`` holds ``(model, error)`` pairs in the order they were tried.
    """

    kind = "unavailable"

    def __init__(self, failures: list[tuple[str, CorrectionError]]) -> None:
        self.failures = failures
        self.last_error = failures[-1][1] if failures else None
        detail = str(self.last_error) if self.last_error else "no models configured"
        super().__init__(f"All correction backends failed: {detail}")

    @property
    def backend_only(self) -> bool:
        """True when every failure was reported by the backend itself."""
        return bool(self.failures) and all(
            isinstance(err, BackendLogicError) for _, err in self.failures
        )

    @property
    def last_kind(self) -> str:
        return self.last_error.kind if self.last_error else self.kind


# ----------------------------------------------------------------------
# Storage and lifecycle
# ----------------------------------------------------------------------


class StorageFailure(TutorError):
    kind = "storage"


class InvalidTransition(TutorError):
    kind = "invalid_transition"


class EntryNotFound(TutorError):
    kind = "entry_not_found"


class SessionNotFound(TutorError):
    kind = "session_not_found"


class SessionConflict(TutorError):
    """The teacher already has a class in progress.

    ``existing`` is the in-progress ``ClassSession`` (or ``None`` when the
    conflict was only detected by the storage constraint).
    """

    kind = "session_conflict"

    def __init__(self, existing=None) -> None:  # noqa: ANN001
        self.existing = existing
        if existing is not None:
            msg = (
                f"Teacher {existing.teacher_id} already has session "
                f"{existing.id} in progress"
            )
        else:
            msg = "Teacher already has a session in progress"
        super().__init__(msg)
