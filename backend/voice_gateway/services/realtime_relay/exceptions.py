"""Realtime relay service exceptions."""


class RelayError(Exception):
    """Base exception for all realtime relay operations."""


class UpstreamConfigurationError(RelayError):
    """Raised when the upstream realtime API configuration is missing or invalid."""


class UpstreamConnectError(RelayError):
    """Raised when the upstream realtime API connection fails or is rejected."""

    def __init__(self, message: str) -> None:
        super().__init__(f"[upstream] {message}")


class UpstreamTimeoutError(UpstreamConnectError):
    """Raised when an upstream connect or write exceeds its timeout."""


class UpstreamSendError(UpstreamConnectError):
    """Raised when a write to an open upstream link fails."""


class NotConnectedError(RelayError):
    """Raised when an operation needs an open upstream link and there is none."""

    def __init__(self, session_id: str, message: str) -> None:
        self.session_id = session_id
        super().__init__(f"[session:{session_id}] {message}")
