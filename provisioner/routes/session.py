from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from provisioner.models.api import (
    ConnectRequest,
    DisconnectResponse,
    SessionEventsResponse,
    SessionResponse,
)
from provisioner.services.dependencies import get_active_session, get_session_manager
from provisioner.services.session import ProvisioningSession, SessionManager

router = APIRouter(prefix="/session", tags=["session"])


def session_snapshot(session: ProvisioningSession) -> SessionResponse:
    return SessionResponse(
        identity_key=session.identity_key,
        state=session.state_machine.state,
        account=session.reconciler.account,
        bundles=session.reconciler.bundles,
        tokens=session.reconciler.tokens,
    )


@router.post("/connect", response_model=SessionResponse)
async def connect(
    body: ConnectRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionResponse:
    session = await manager.connect(body.identity_key)
    return session_snapshot(session)


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect(manager: SessionManager = Depends(get_session_manager)) -> DisconnectResponse:
    was_connected = manager.active is not None
    await manager.disconnect()
    return DisconnectResponse(disconnected=was_connected)


@router.get("", response_model=SessionResponse)
async def get_session(session: ProvisioningSession = Depends(get_active_session)) -> SessionResponse:
    return session_snapshot(session)


@router.get("/events", response_model=SessionEventsResponse)
async def list_events(
    since: int = Query(default=0, ge=0, description="Skip this many earlier events"),
    session: ProvisioningSession = Depends(get_active_session),
) -> SessionEventsResponse:
    events = list(session.events)[since:]
    return SessionEventsResponse(count=len(events), events=events)
