"""Typed failures raised by the identity core.

Learn: Every failure leaves the core typed by kind, never as an opaque
message. The API layer maps `kind` to an HTTP status in one exception
handler; library callers branch on the class. Only the `retryable`
kinds (provider or store/bus transient failures) are worth retrying —
everything else is terminal for that request.
"""

from typing import Optional


class TesseraError(Exception):
    """Base class for all core failures."""

    kind: str = "error"
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


# ─── Auth layer ──────────────────────────────────────────


class InvalidStateError(TesseraError):
    """The OAuth `state` was never issued, already used, or expired."""

    kind = "invalid_state"


class ProviderUnavailableError(TesseraError):
    """The identity provider could not be reached or failed transiently."""

    kind = "provider_unavailable"
    retryable = True


class InvalidGrantError(TesseraError):
    """The provider rejected the authorization code (used, expired, bogus)."""

    kind = "invalid_grant"


# ─── Identity resolution ─────────────────────────────────


class EmailConflictError(TesseraError):
    """Email already belongs to a different external identity."""

    kind = "email_conflict"


# ─── Authorization ───────────────────────────────────────


class ForbiddenError(TesseraError):
    kind = "forbidden"


# ─── Tokens ──────────────────────────────────────────────


class TokenExpiredError(TesseraError):
    kind = "expired"


class TokenInvalidError(TesseraError):
    """Bad signature, malformed token, or wrong token type."""

    kind = "invalid"


class ReuseDetectedError(TesseraError):
    """A rotated or revoked refresh token was replayed.

    The whole token family has been revoked by the time this is raised;
    the client must perform a full re-login. `unpublished_event` is set
    when the reuse event could not be published; the error itself stands.
    """

    kind = "reuse_detected"

    def __init__(
        self,
        message: str = "",
        user_id: Optional[int] = None,
        family_id: Optional[str] = None,
    ):
        super().__init__(message or "Refresh token reuse detected")
        self.user_id = user_id
        self.family_id = family_id
        self.unpublished_event = None


# ─── Lookups / directory ─────────────────────────────────


class NotFoundError(TesseraError):
    kind = "not_found"


class TokenNotFoundError(NotFoundError):
    """Refresh token is unknown to the store."""


class ConflictError(TesseraError):
    """Uniqueness or referential rule would be violated."""

    kind = "conflict"


# ─── Infrastructure ──────────────────────────────────────


class UnavailableError(TesseraError):
    """Store or bus transient failure (connection lost, timeout)."""

    kind = "unavailable"
    retryable = True


class PublishFailedError(UnavailableError):
    """The state change committed but its event could not be enqueued.

    Nothing is rolled back. `result` holds whatever the operation produced
    so the caller can still use it; `event` is the unsent event, ready to
    be re-published (its id is deterministic, consumers dedupe).
    """

    def __init__(self, message: str = "", event=None, result=None):
        super().__init__(message or "Event publish failed")
        self.event = event
        self.result = result
