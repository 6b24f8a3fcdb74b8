from __future__ import annotations

from fastapi import APIRouter, Depends

from provisioner.models.api import AccountResponse, OperationResponse, PrimaryAccountResponse
from provisioner.services.dependencies import get_active_session
from provisioner.services.session import ProvisioningSession

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post("/primary", response_model=PrimaryAccountResponse)
async def create_primary(session: ProvisioningSession = Depends(get_active_session)) -> PrimaryAccountResponse:
    result = await session.state_machine.create_primary()
    return PrimaryAccountResponse(
        outcome=result.outcome,
        account=result.record,
        operation=OperationResponse.from_operation(result.operation) if result.operation else None,
    )


@router.post("/refresh", response_model=AccountResponse)
async def refresh(session: ProvisioningSession = Depends(get_active_session)) -> AccountResponse:
    account = await session.state_machine.refresh()
    return AccountResponse.build(account)


@router.post("/verify-balance", response_model=AccountResponse)
async def verify_balance(session: ProvisioningSession = Depends(get_active_session)) -> AccountResponse:
    result = await session.allocations.verify_balance()
    return AccountResponse.build(session.reconciler.account, result.operation)


@router.post("/verify-secondary-balance", response_model=AccountResponse)
async def verify_secondary_balance(
    session: ProvisioningSession = Depends(get_active_session),
) -> AccountResponse:
    result = await session.allocations.verify_secondary_balance()
    return AccountResponse.build(session.reconciler.account, result.operation)
