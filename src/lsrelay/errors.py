"""Error taxonomy for the relay.

Connectivity errors derive from ServiceUnavailableError so callers can tell
"could not reach the service" apart from "the service returned an error".
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Relay error with stable error code."""

    code = "relay_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return cls.__doc__.strip().splitlines()[0] if cls.__doc__ else cls.code


# =============================================================================
# Connectivity
# =============================================================================


class ServiceUnavailableError(RelayError):
    """Service unavailable."""

    code = "service_unavailable"


class EndpointUnavailableError(ServiceUnavailableError):
    """Waiting for service to connect to the communication bridge."""

    code = "endpoint_unavailable"


class ConnectionCreationError(ServiceUnavailableError):
    """Failed to create connection to the extension service."""

    code = "connection_not_created"


class ConnectionInvalidatedError(ServiceUnavailableError):
    """Connection to the extension service was invalidated."""

    code = "connection_invalidated"


class ServerUnavailableError(ServiceUnavailableError):
    """Language server is not running."""

    code = "server_unavailable"


# =============================================================================
# Remote-reported
# =============================================================================


class RemoteError(RelayError):
    """Remote side returned a JSON-RPC error object."""

    code = "remote_error"

    def __init__(self, error_code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.data = data

    @property
    def message(self) -> str:
        return str(self)


class ExtensionServiceCallError(RelayError):
    """Connection to extension service error."""

    code = "extension_service_error"

    def __init__(self, error: BaseException) -> None:
        super().__init__(f"Connection to extension service error: {error}")
        self.error = error


# =============================================================================
# Decode
# =============================================================================


class DecodeError(RelayError):
    """Response payload could not be decoded."""

    code = "decode_error"


class NoDataError(DecodeError):
    """Response carried no data."""

    code = "no_data"


# =============================================================================
# Resolution discipline
# =============================================================================


class ContinuationAlreadyResolvedError(AssertionError):
    """A pending call was resolved more than once."""
