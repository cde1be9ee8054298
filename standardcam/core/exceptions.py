"""
Custom exception classes for StandardCam.
"""


class StandardCamError(Exception):
    """Base exception for StandardCam."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{super().__str__()} - {self.details}"
        return super().__str__()


class SignalingError(StandardCamError):
    """Raised when the signaling client cannot reach or talk to the relay."""
    pass


class HandshakeError(StandardCamError):
    """Raised when a handshake payload cannot be decoded or repaired."""
    pass


class InvalidPointBatch(StandardCamError):
    """Raised when a point batch violates the positions/colors shape rules."""
    pass


class TransportOverflow(StandardCamError):
    """Raised by a transport when its send queue is full."""
    pass


class TransportSaturated(StandardCamError):
    """Reported when the data transport overflows again after a reconnect."""
    pass
