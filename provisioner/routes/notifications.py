from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from starlette import status

from provisioner.models.api import NotificationAck
from provisioner.models.notifications import NotificationEvent
from provisioner.services.dependencies import get_session_manager
from provisioner.services.session import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.post("", response_model=NotificationAck)
async def receive_notification(
    body: dict[str, Any] = Body(...),
    manager: SessionManager = Depends(get_session_manager),
) -> NotificationAck:
    """Webhook form of the job service's notifications.

    Events for an identity that is not connected are acknowledged and dropped;
    the next store read picks up whatever they described.
    """

    if not body.get("type") or not body.get("message"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields: type, message",
        )

    try:
        event = NotificationEvent.from_wire(body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    session = manager.active
    if session is None:
        logger.info("No connected session for %s notification; dropping", event.type.value)
        return NotificationAck(ok=True)

    changed = session.dispatcher.dispatch(event)
    return NotificationAck(ok=True, applied=bool(changed), changed=sorted(changed))
