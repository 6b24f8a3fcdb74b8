from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query

from provisioner.models.api import BundleListResponse, BundleResponse, CreateBundleRequest, UpdateBundleRequest
from provisioner.services.dependencies import get_active_session
from provisioner.services.session import ProvisioningSession

router = APIRouter(prefix="/bundles", tags=["bundles"])


@router.post("", response_model=BundleResponse)
async def create_bundle(
    body: CreateBundleRequest,
    session: ProvisioningSession = Depends(get_active_session),
) -> BundleResponse:
    result = await session.allocations.create_bundle(body.units, idempotency_key=body.idempotency_key)
    pending = result.operation is not None and result.operation.outcome_unknown
    return BundleResponse.build(result.bundle, result.operation, pending=pending)


@router.get("", response_model=BundleListResponse)
async def list_bundles(
    refresh: bool = Query(default=False, description="Read the store before answering"),
    session: ProvisioningSession = Depends(get_active_session),
) -> BundleListResponse:
    if refresh:
        bundles = await session.allocations.refresh_bundles()
    else:
        bundles = session.reconciler.bundles
    return BundleListResponse(count=len(bundles), bundles=bundles)


@router.patch("/{bundle_id}", response_model=BundleResponse)
async def update_bundle(
    body: UpdateBundleRequest,
    bundle_id: str = Path(..., description="Bundle id"),
    session: ProvisioningSession = Depends(get_active_session),
) -> BundleResponse:
    bundle = await session.allocations.set_bundle_active(bundle_id, is_active=body.is_active)
    return BundleResponse.build(bundle)
