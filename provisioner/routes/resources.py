from __future__ import annotations

from fastapi import APIRouter, Depends

from provisioner.models.api import (
    CreateResourceRequest,
    OperationOnlyResponse,
    OperationResponse,
    ResourceResponse,
    SellRequest,
    TransferRequest,
)
from provisioner.services.dependencies import get_active_session
from provisioner.services.errors import ErrorCategory, user_message
from provisioner.services.session import ProvisioningSession

router = APIRouter(tags=["resources"])


@router.post("/resources", response_model=ResourceResponse)
async def create_resource(
    body: CreateResourceRequest,
    session: ProvisioningSession = Depends(get_active_session),
) -> ResourceResponse:
    result = await session.allocations.create_resource(
        body.to_resource_request(), idempotency_key=body.idempotency_key
    )
    return ResourceResponse(
        token=result.token,
        operation=OperationResponse.from_operation(result.operation) if result.operation else None,
        deferred=result.deferred,
        idempotency_key=result.idempotency_key or (result.operation.idempotency_key if result.operation else None),
        message=user_message(ErrorCategory.RESOURCE_NOT_READY) if result.deferred else None,
    )


@router.post("/resources/sell", response_model=OperationOnlyResponse)
async def sell_resource(
    body: SellRequest,
    session: ProvisioningSession = Depends(get_active_session),
) -> OperationOnlyResponse:
    result = await session.allocations.sell_resource(body.percent)
    return OperationOnlyResponse.build(result.operation)


@router.post("/transfers/owner", response_model=OperationOnlyResponse)
async def transfer_to_owner(
    body: TransferRequest,
    session: ProvisioningSession = Depends(get_active_session),
) -> OperationOnlyResponse:
    result = await session.allocations.transfer_to_owner(body.amount)
    return OperationOnlyResponse.build(result.operation)
