"""
Error taxonomy for the DVM.

Every failure inside the engine is scoped to one job execution or one
reconciliation tick. The executor maps collaborator failures onto these
types; the message of the classified error is what a requester sees in the
kind 7000 "error" feedback event.
"""

from typing import Any, Optional


class DVMError(Exception):
    """Base class for all DVM errors."""

    stage: str = "unknown"

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = dict(context or {})
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigurationError(DVMError):
    """Missing private key, empty relay list or otherwise unusable identity."""

    stage = "configuration"


class DVMConnectionError(DVMError, ConnectionError):
    """Relay subscribe/list/publish transport failure."""

    stage = "connection"


class JobRequestError(DVMError):
    """Malformed, undecryptable or incomplete job request."""

    stage = "request"


class JobProcessingError(DVMError):
    """Inference (or result encryption) failure."""

    stage = "processing"


class PaymentError(DVMError):
    """Invoice issuance failure."""

    stage = "payment"
