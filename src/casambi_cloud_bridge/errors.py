"""Exception hierarchy for cloud, session, and wire failures."""

from __future__ import annotations

from typing import Optional


class CasambiError(Exception):
    """Base class for all bridge errors."""


class AuthRejected(CasambiError):
    """The cloud refused the supplied credentials.

    Retrying with the same credentials cannot succeed, so callers must stop
    and surface the failure to the operator.
    """

    def __init__(self, status_code: int, detail: Optional[str] = None) -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"Credentials rejected by the cloud (HTTP {status_code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TransientAuthFailure(CasambiError):
    """Login failed for a reason that may clear up (network, server error)."""


class ConnectionLost(CasambiError):
    """The WebSocket went away while an operation depended on it."""


class WireOpenRejected(CasambiError):
    """The server refused to open a wire for a network."""

    def __init__(self, reason: str, network_id: Optional[str] = None) -> None:
        self.reason = reason
        self.network_id = network_id
        super().__init__(f"Wire open rejected: {reason}")


class CommandTransmitFailure(CasambiError):
    """A frame could not be written to the socket."""


class FrameDecodeError(CasambiError):
    """An inbound frame was not a JSON object."""


class UnknownUnitError(CasambiError, KeyError):
    """No session owns the requested unit."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class UnsupportedControlError(CasambiError, ValueError):
    """A control name or value cannot be applied to a unit."""


class CloudRequestError(CasambiError):
    """A REST read against the cloud failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)
