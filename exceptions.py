"""Errors raised by the signaling core."""


class SignalingError(Exception):
    """Base exception for the signaling relay."""

    pass


class MalformedEventError(SignalingError):
    """Raised when an inbound frame cannot be turned into a known event.

    Nothing is mutated before this is raised, so the handler can report it
    to the sender and keep the connection open.
    """

    def __init__(self, message: str, event: str = None):
        super().__init__(message)
        self.message = message
        self.event = event


class InvariantViolation(SignalingError):
    """Raised when the room/queue tables are found in an impossible state."""

    pass
