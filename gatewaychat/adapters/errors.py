"""Exceptions raised by the gateway transport."""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for every gateway client failure."""


class GatewayNotConnectedError(GatewayError, ConnectionError):
    """A request was attempted while the socket was not open."""

    def __init__(self, message: str = "gateway not connected") -> None:
        super().__init__(message)


class GatewayClosedError(GatewayError, ConnectionError):
    """The socket closed (or the client stopped) before a response arrived."""


class GatewayTimeoutError(GatewayError, TimeoutError):
    """No response arrived within the caller's timeout."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"gateway request '{method}' timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class GatewayRequestError(GatewayError):
    """The gateway answered a request with ``ok: false``."""

    def __init__(
        self,
        message: str = "request failed",
        *,
        code: str | int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
