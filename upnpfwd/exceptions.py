"""Exception hierarchy for upnpfwd.

The forwarding agent itself never raises across its public surface; these
exceptions travel inside the transport and configuration layers.
"""

from __future__ import annotations

from typing import Any


class UPnPFwdError(Exception):
    """Base exception for all upnpfwd errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ConfigurationError(UPnPFwdError):
    """Configuration validation errors."""


class UPnPError(UPnPFwdError):
    """UPnP transport error."""


class DescriptionError(UPnPError):
    """Device or service description could not be fetched or parsed."""


class SOAPError(UPnPError):
    """A SOAP control action failed."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        http_status: int | None = None,
    ):
        details: dict[str, Any] = {}
        if error_code:
            details["error_code"] = error_code
        if http_status is not None:
            details["http_status"] = http_status
        super().__init__(message, details)
        self.error_code = error_code
        self.http_status = http_status
