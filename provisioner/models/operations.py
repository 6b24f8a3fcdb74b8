from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from provisioner.services.errors import ErrorCategory, OperationError


class OperationKind(str, Enum):
    CREATE_PRIMARY = "create_primary"
    CREATE_BUNDLE = "create_bundle"
    CREATE_RESOURCE = "create_resource"
    VERIFY_BALANCE = "verify_balance"
    VERIFY_SECONDARY_BALANCE = "verify_secondary_balance"
    SELL_RESOURCE = "sell_resource"
    TRANSFER_TO_OWNER = "transfer_to_owner"


class OperationStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def new_idempotency_key() -> str:
    return str(uuid.uuid4())


@dataclass
class Operation:
    """One logical request against the job service.

    Lives for the duration of a session only. ``idempotency_key`` is fixed at
    creation; resending the same logical request reuses it.
    """

    kind: OperationKind
    payload: dict[str, Any]
    timeout_seconds: float
    idempotency_key: str = field(default_factory=new_idempotency_key)
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: OperationStatus = OperationStatus.PENDING
    result: Optional[dict[str, Any]] = None
    error: Optional[OperationError] = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status is not OperationStatus.PENDING

    @property
    def succeeded(self) -> bool:
        return self.status is OperationStatus.SUCCEEDED

    @property
    def outcome_unknown(self) -> bool:
        return self.status is OperationStatus.TIMED_OUT

    @property
    def error_category(self) -> Optional[ErrorCategory]:
        return self.error.category if self.error else None

    def succeed(self, result: dict[str, Any]) -> None:
        self.status = OperationStatus.SUCCEEDED
        self.result = result
        self.error = None

    def fail(self, error: OperationError) -> None:
        if error.category is ErrorCategory.TIMEOUT_UNKNOWN_OUTCOME:
            self.status = OperationStatus.TIMED_OUT
        else:
            self.status = OperationStatus.FAILED
        self.error = error
