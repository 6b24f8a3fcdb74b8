from contextlib import asynccontextmanager
import logging

import aiohttp
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette import status

from provisioner.routes.accounts import router as accounts_router
from provisioner.routes.bundles import router as bundles_router
from provisioner.routes.notifications import router as notifications_router
from provisioner.routes.resources import router as resources_router
from provisioner.routes.session import router as session_router
from provisioner.services.dependencies import build_session_manager_from_app
from provisioner.services.errors import ErrorCategory, ProvisioningError, user_message
from provisioner.services.record_store_client import RecordStoreError
from provisioner.services.session import NoActiveSessionError
from provisioner.services.state_reconciler import ReconcilerClosedError


def _ensure_logging() -> None:
    formatter = logging.Formatter("%(levelname)s: %(message)s")
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    else:
        root.setLevel(logging.INFO)
        for handler in root.handlers:
            handler.setFormatter(formatter)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _ensure_logging()
    app.state.http_session = aiohttp.ClientSession()
    app.state.session_manager = build_session_manager_from_app(app)
    try:
        yield
    finally:
        await app.state.session_manager.aclose()
        await app.state.http_session.close()


app = FastAPI(lifespan=lifespan)

app.include_router(session_router)
app.include_router(accounts_router)
app.include_router(bundles_router)
app.include_router(resources_router)
app.include_router(notifications_router)


@app.exception_handler(RecordStoreError)
async def record_store_error_handler(request: Request, exc: RecordStoreError) -> JSONResponse:
    """Map record store failures to a consistent HTTP response.

    Returns:
        502 Bad Gateway with a JSON body: {"detail": "..."}
    """
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": str(exc)},
    )


@app.exception_handler(ProvisioningError)
async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
    """Requests that could not be attempted.

    Invalid input is 422; anything that depends on state that is not there yet
    (secondary not ready, an unresolved earlier request) is 409.
    """
    code = (
        status.HTTP_422_UNPROCESSABLE_ENTITY
        if exc.category is ErrorCategory.SERVER_REJECTED_VALIDATION
        else status.HTTP_409_CONFLICT
    )
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc) or user_message(exc.category), "category": exc.category.value},
    )


@app.exception_handler(NoActiveSessionError)
async def no_session_error_handler(request: Request, exc: NoActiveSessionError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(ReconcilerClosedError)
async def session_closed_error_handler(request: Request, exc: ReconcilerClosedError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.get("/")
async def root():
    return {"message": "Provisioning orchestrator is running."}
