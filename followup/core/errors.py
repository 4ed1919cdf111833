"""
Error taxonomy for the follow-up coordinator.

Every failure resolves to a session transition (re-prompt, regenerate,
escalate) or a logged no-op; none of these are fatal to the process.
"""

from typing import Optional


class SchedulingError(Exception):
    """Base class for all coordinator errors."""

    pass


class ValidationError(SchedulingError):
    """Malformed identity, interval or request rejected at the boundary."""

    pass


class InvalidTransition(SchedulingError):
    """Raised when the state machine is asked for a transition it forbids."""

    pass


# === Session store ===


class SessionNotFound(SchedulingError):
    """No session exists for the key."""

    def __init__(self, session_key: str):
        super().__init__(f"No session for {session_key}")
        self.session_key = session_key


class SessionAlreadyExists(SchedulingError):
    """A live session already exists for the key."""

    def __init__(self, session_key: str):
        super().__init__(f"Live session already exists for {session_key}")
        self.session_key = session_key


class SessionConflict(SchedulingError):
    """Compare-and-swap failed: the session changed since it was read."""

    def __init__(self, session_key: str, expected_phase: str):
        super().__init__(
            f"Session {session_key} changed since read (expected phase {expected_phase})"
        )
        self.session_key = session_key
        self.expected_phase = expected_phase


class SessionStoreUnavailable(SchedulingError):
    """Session store backend cannot be reached."""

    pass


# === External capabilities ===


class CapabilityFailure(SchedulingError):
    """An external calendar/messaging call failed.

    Retryable by default; subclasses that cannot succeed on retry set
    ``retryable = False``.
    """

    retryable = True

    def __init__(self, capability: str, message: str = ""):
        super().__init__(f"{capability} failed: {message}" if message else f"{capability} failed")
        self.capability = capability


class CalendarUnavailable(CapabilityFailure):
    """Calendar provider rejected or could not serve the request."""

    def __init__(self, message: str = ""):
        super().__init__("calendar", message)


class MessagingFailure(CapabilityFailure):
    """Messaging provider could not deliver the message."""

    def __init__(self, message: str = ""):
        super().__init__("messaging", message)


class ChannelWindowClosed(MessagingFailure):
    """The channel's reachability window for this patient has closed."""

    retryable = False


class PatientUnreachable(MessagingFailure):
    """The patient handle cannot receive messages."""

    retryable = False


# === Negotiation ===


class AmbiguousInput(SchedulingError):
    """A reply could not be resolved to exactly one proposed slot."""

    def __init__(self, reason: str, matches: Optional[tuple[int, ...]] = None):
        super().__init__(f"Reply not resolvable: {reason}")
        self.reason = reason
        self.matches = matches or ()


class RaceLost(SchedulingError):
    """The selected slot was taken between proposal and booking."""

    pass
