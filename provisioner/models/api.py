from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from provisioner.models.accounts import AccountRecord, ResourceBundle, ResourceRequest, TokenRecord
from provisioner.models.notifications import UIEvent
from provisioner.models.operations import Operation, OperationKind, OperationStatus
from provisioner.services.errors import ErrorCategory
from provisioner.services.provisioning_state_machine import ProvisioningOutcome, ProvisioningState


class ConnectRequest(BaseModel):
    identity_key: str = Field(..., min_length=1, description="Externally supplied identity (wallet address)")


class SessionResponse(BaseModel):
    identity_key: str
    state: ProvisioningState
    account: Optional[AccountRecord] = None
    bundles: list[ResourceBundle] = Field(default_factory=list)
    tokens: list[TokenRecord] = Field(default_factory=list)


class DisconnectResponse(BaseModel):
    disconnected: bool


class SessionEventsResponse(BaseModel):
    count: int
    events: list[UIEvent]


class OperationResponse(BaseModel):
    kind: OperationKind
    status: OperationStatus
    idempotency_key: str
    timeout_seconds: float
    attempts: int
    category: Optional[ErrorCategory] = None
    code: Optional[str] = None
    message: Optional[str] = None

    @staticmethod
    def from_operation(operation: Operation) -> "OperationResponse":
        error = operation.error
        return OperationResponse(
            kind=operation.kind,
            status=operation.status,
            idempotency_key=operation.idempotency_key,
            timeout_seconds=operation.timeout_seconds,
            attempts=operation.attempts,
            category=error.category if error else None,
            code=error.code if error else None,
            message=error.user_message if error else None,
        )


def _operation(operation: Optional[Operation]) -> Optional[OperationResponse]:
    return OperationResponse.from_operation(operation) if operation is not None else None


class PrimaryAccountResponse(BaseModel):
    outcome: ProvisioningOutcome
    account: Optional[AccountRecord] = None
    operation: Optional[OperationResponse] = None


class AccountResponse(BaseModel):
    account: Optional[AccountRecord] = None
    operation: Optional[OperationResponse] = None

    @staticmethod
    def build(account: Optional[AccountRecord], operation: Optional[Operation] = None) -> "AccountResponse":
        return AccountResponse(account=account, operation=_operation(operation))


class CreateBundleRequest(BaseModel):
    units: int = Field(..., ge=1, description="Whole units to allocate to the bundle")
    idempotency_key: Optional[str] = Field(default=None, description="Reuse to resend the same logical request")


class UpdateBundleRequest(BaseModel):
    is_active: bool


class BundleResponse(BaseModel):
    bundle: Optional[ResourceBundle] = None
    operation: Optional[OperationResponse] = None
    pending: bool = False

    @staticmethod
    def build(
        bundle: Optional[ResourceBundle], operation: Optional[Operation] = None, *, pending: bool = False
    ) -> "BundleResponse":
        return BundleResponse(bundle=bundle, operation=_operation(operation), pending=pending)


class BundleListResponse(BaseModel):
    count: int
    bundles: list[ResourceBundle]


class CreateResourceRequest(ResourceRequest):
    idempotency_key: Optional[str] = None

    def to_resource_request(self) -> ResourceRequest:
        return ResourceRequest.model_validate(self.model_dump(exclude={"idempotency_key"}))


class ResourceResponse(BaseModel):
    token: Optional[TokenRecord] = None
    operation: Optional[OperationResponse] = None
    deferred: bool = False
    idempotency_key: Optional[str] = None
    message: Optional[str] = None


class SellRequest(BaseModel):
    percent: float = Field(..., gt=0, le=100)


class TransferRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class OperationOnlyResponse(BaseModel):
    operation: Optional[OperationResponse] = None

    @staticmethod
    def build(operation: Optional[Operation]) -> "OperationOnlyResponse":
        return OperationOnlyResponse(operation=_operation(operation))


class NotificationAck(BaseModel):
    ok: bool
    applied: bool = False
    changed: list[str] = Field(default_factory=list)
