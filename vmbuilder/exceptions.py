"""Custom exceptions for vm-builder."""

from __future__ import annotations

from typing import Dict, Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors.

    Every error carries a stable ``code`` and the HTTP status the web layer
    answers with when the error surfaces synchronously.
    """

    code = "internal-error"
    http_status = 500
    default_message = "Whops! Our team is currently looking into this. Apologies for the inconvenience"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


class ValidationError(ManagerError):
    code = "invalid-request"
    http_status = 400
    default_message = "The request body is not a valid virtual machine configuration."


class NotFoundError(ManagerError):
    code = "vm-not-found"
    http_status = 404
    default_message = "The requested virtual machine ID was not found"


class ImageError(ManagerError):
    """Download, verification or unpack of a gold image failed."""

    code = "image-error"
    default_message = "The OS image could not be fetched or unpacked."


class ExternalToolError(ManagerError):
    """A hypervisor call failed."""

    code = "hypervisor-error"


class ToolUnavailableError(ExternalToolError):
    code = "hypervisor-unavailable"
    default_message = "The hypervisor control tool or service is not available."


class OperationFailedError(ExternalToolError):
    code = "hypervisor-operation-failed"


class ResourceBusyError(ExternalToolError):
    code = "vm-open-error"
    http_status = 409
    default_message = (
        "The VM was found but we were unable to open its configuration file. "
        "Caused, most likely, by a corrupt VMX file or a stalled lock."
    )


class OperationTimeoutError(ExternalToolError):
    code = "hypervisor-timeout"


class UnsupportedOperationError(ManagerError):
    code = "not-implemented"
    http_status = 501
    default_message = "The configured hypervisor backend does not support this operation."


class CreationCancelled(ManagerError):
    code = "vm-create-cancelled"
    http_status = 409
    default_message = "The virtual machine creation was cancelled."
