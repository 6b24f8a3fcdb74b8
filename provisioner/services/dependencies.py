from __future__ import annotations

import aiohttp
from fastapi import Depends, FastAPI, Request

from provisioner.services.config import ProvisioningConfig, RecordStoreConfig, RemoteJobConfig
from provisioner.services.record_store_client import RecordStoreClient
from provisioner.services.remote_job_client import RemoteJobClient
from provisioner.services.session import ProvisioningSession, SessionManager


def get_http_session_from_app(app: FastAPI) -> aiohttp.ClientSession:
    session = getattr(app.state, "http_session", None)
    if session is None:
        raise RuntimeError("HTTP session not initialized (app.state.http_session)")
    if not isinstance(session, aiohttp.ClientSession):
        raise RuntimeError("Unexpected http_session type")
    return session


def get_http_session(request: Request) -> aiohttp.ClientSession:
    return get_http_session_from_app(request.app)


def get_remote_job_client_from_app(app: FastAPI) -> RemoteJobClient:
    return RemoteJobClient(RemoteJobConfig.from_env(), session=get_http_session_from_app(app))


def get_record_store_client_from_app(app: FastAPI) -> RecordStoreClient:
    return RecordStoreClient(RecordStoreConfig.from_env(), session=get_http_session_from_app(app))


def build_session_manager_from_app(app: FastAPI) -> SessionManager:
    """Provider for non-request contexts (e.g. app lifespan startup)."""

    return SessionManager(
        job_client=get_remote_job_client_from_app(app),
        store=get_record_store_client_from_app(app),
        config=ProvisioningConfig.from_env(),
        http_session=get_http_session_from_app(app),
    )


def get_session_manager_from_app(app: FastAPI) -> SessionManager:
    manager = getattr(app.state, "session_manager", None)
    if manager is None:
        raise RuntimeError("Session manager not initialized (app.state.session_manager)")
    if not isinstance(manager, SessionManager):
        raise RuntimeError("Unexpected session_manager type")
    return manager


def get_session_manager(request: Request) -> SessionManager:
    """FastAPI dependency provider for the process-wide SessionManager."""

    return get_session_manager_from_app(request.app)


def get_active_session(manager: SessionManager = Depends(get_session_manager)) -> ProvisioningSession:
    """Dependency provider for the connected identity's session.

    Raises ``NoActiveSessionError`` when nobody is connected; the app maps that
    to 409.
    """

    return manager.require()
