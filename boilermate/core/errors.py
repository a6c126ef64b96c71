"""Domain-specific errors for boilermate."""


class BoilerMateError(Exception):
    """Base error for boilermate."""


class FrameError(BoilerMateError):
    """Base error for wire frame handling."""


class FrameDecodeError(FrameError):
    """Raised when a datagram cannot be decoded into a frame."""


class FrameEncodeError(FrameError):
    """Raised when a frame cannot be serialized to the wire format."""


class EncryptionError(BoilerMateError):
    """Raised when an authenticated write cannot be encrypted."""


class TransportError(BoilerMateError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised when the UDP socket cannot be opened or the host resolved."""


class TransportSendError(TransportError):
    """Raised when writing a datagram fails."""


class TransportTimeoutError(TransportError):
    """Raised when no correlated response arrives in time."""


class DiscoveryError(BoilerMateError):
    """Raised when controller discovery or key retrieval fails."""


class ConfigLoadError(BoilerMateError):
    """Raised when reading configuration sources fails."""


class ConfigValidationError(BoilerMateError):
    """Raised when configuration does not conform to schema or semantics."""


class PublishError(BoilerMateError):
    """Raised when a change-set publisher cannot be set up."""
