"""Failure taxonomy shared by the job client, submitter and workflows.

The job client only knows transport outcomes (``TransportFailure``). The
submitter and the workflows attach domain meaning (``ErrorCategory``), and
user-facing text is always derived from the category.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TransportFailure(str, Enum):
    TRANSIENT_NETWORK = "TRANSIENT_NETWORK"
    TIMEOUT = "TIMEOUT"
    CROSS_ORIGIN_DENIED = "CROSS_ORIGIN_DENIED"
    SERVER_REJECTED = "SERVER_REJECTED"


class ErrorCategory(str, Enum):
    TRANSIENT_NETWORK = "TRANSIENT_NETWORK"
    TIMEOUT_UNKNOWN_OUTCOME = "TIMEOUT_UNKNOWN_OUTCOME"
    SERVER_REJECTED_VALIDATION = "SERVER_REJECTED_VALIDATION"
    RESOURCE_NOT_READY = "RESOURCE_NOT_READY"
    PERMANENT_CONFIG = "PERMANENT_CONFIG"

    @property
    def retryable(self) -> bool:
        return self in (ErrorCategory.TRANSIENT_NETWORK, ErrorCategory.RESOURCE_NOT_READY)


@dataclass(frozen=True)
class OperationError:
    category: ErrorCategory
    code: Optional[str] = None
    message: Optional[str] = None

    @property
    def user_message(self) -> str:
        return user_message(self.category, detail=self.message)


class ProvisioningError(RuntimeError):
    """Raised by workflows when a request cannot be attempted at all."""

    def __init__(self, message: str, *, category: ErrorCategory = ErrorCategory.SERVER_REJECTED_VALIDATION) -> None:
        super().__init__(message)
        self.category = category


_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.TRANSIENT_NETWORK: "Network error. Please check your connection and try again.",
    ErrorCategory.TIMEOUT_UNKNOWN_OUTCOME: (
        "The operation is taking longer than expected. We'll keep checking and update you when it completes."
    ),
    ErrorCategory.RESOURCE_NOT_READY: (
        "Your secondary account is still being prepared. The request will resume automatically once it is ready."
    ),
    ErrorCategory.PERMANENT_CONFIG: "The service refused this client. Please contact support.",
}


def user_message(category: ErrorCategory, *, detail: Optional[str] = None) -> str:
    """Return UI text for a failure category.

    Validation rejections carry the service's own explanation (for example an
    insufficient balance), which is the only case where ``detail`` is shown.
    """

    if category is ErrorCategory.SERVER_REJECTED_VALIDATION:
        return detail or "The request was rejected. Please review the details and try again."
    return _MESSAGES.get(category) or detail or "The operation failed."
