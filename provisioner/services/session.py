from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Optional

import aiohttp

from provisioner.models.accounts import AccountRecord, ResourceBundle
from provisioner.models.notifications import UIEvent
from provisioner.models.operations import OperationKind
from provisioner.services.allocation_service import AllocationService
from provisioner.services.config import ProvisioningConfig
from provisioner.services.errors import ErrorCategory
from provisioner.services.notification_dispatcher import NotificationDispatcher, UICallbacks
from provisioner.services.notification_stream import NotificationStream
from provisioner.services.operation_submitter import OperationSubmitter
from provisioner.services.provisioning_state_machine import ProvisioningStateMachine
from provisioner.services.record_store_client import RecordStoreClient
from provisioner.services.remote_job_client import RemoteJobClient
from provisioner.services.state_reconciler import StateReconciler


logger = logging.getLogger(__name__)


class NoActiveSessionError(RuntimeError):
    pass


class ProvisioningSession:
    """Everything that belongs to one connected identity.

    Built on connect and torn down on disconnect or identity switch. Closing
    cancels every poller, deferred request and stream, and closes the
    reconciler so late completions cannot write into a torn-down session.
    """

    def __init__(
        self,
        identity_key: str,
        *,
        job_client: RemoteJobClient,
        store: RecordStoreClient,
        config: ProvisioningConfig,
        http_session: Optional[aiohttp.ClientSession] = None,
        callbacks: Optional[UICallbacks] = None,
        max_events: int = 200,
    ) -> None:
        self.identity_key = identity_key
        self.events: deque[UIEvent] = deque(maxlen=max_events)
        self._extra_callbacks = callbacks or UICallbacks()

        self.reconciler = StateReconciler(identity_key)
        self.dispatcher = NotificationDispatcher(self.reconciler, self._recording_callbacks())
        self.submitter = OperationSubmitter(job_client, config)
        self.state_machine = ProvisioningStateMachine(
            reconciler=self.reconciler,
            dispatcher=self.dispatcher,
            submitter=self.submitter,
            store=store,
            config=config,
        )
        self.allocations = AllocationService(
            reconciler=self.reconciler,
            dispatcher=self.dispatcher,
            submitter=self.submitter,
            store=store,
            state_machine=self.state_machine,
            config=config,
        )

        self.stream: Optional[NotificationStream] = None
        if config.notifications_stream_enabled and http_session is not None:
            self.stream = NotificationStream(
                job_client.config, self.dispatcher, session=http_session, identity_key=identity_key
            )

    @property
    def closed(self) -> bool:
        return self.reconciler.closed

    def _recording_callbacks(self) -> UICallbacks:
        extra = self._extra_callbacks

        def on_account_ready(record: AccountRecord) -> None:
            self.events.append(UIEvent(name="account_ready", data=record.model_dump(mode="json")))
            if extra.on_account_ready is not None:
                extra.on_account_ready(record)

        def on_bundle_created(bundle: ResourceBundle) -> None:
            self.events.append(UIEvent(name="bundle_created", data=bundle.model_dump(mode="json")))
            if extra.on_bundle_created is not None:
                extra.on_bundle_created(bundle)

        def on_balance_changed(record: AccountRecord) -> None:
            self.events.append(UIEvent(name="balance_changed", data=record.model_dump(mode="json")))
            if extra.on_balance_changed is not None:
                extra.on_balance_changed(record)

        def on_operation_failed(
            kind: OperationKind, category: ErrorCategory, code: Optional[str], message: str
        ) -> None:
            self.events.append(
                UIEvent(
                    name="operation_failed",
                    data={"kind": kind.value, "category": category.value, "code": code, "message": message},
                )
            )
            if extra.on_operation_failed is not None:
                extra.on_operation_failed(kind, category, code, message)

        return UICallbacks(
            on_account_ready=on_account_ready,
            on_bundle_created=on_bundle_created,
            on_operation_failed=on_operation_failed,
            on_balance_changed=on_balance_changed,
        )

    async def open(self) -> Optional[AccountRecord]:
        account = await self.state_machine.load()
        if account is not None:
            await self.allocations.refresh_bundles(announce=False)
            await self.allocations.refresh_tokens()
        if self.stream is not None:
            self.stream.start()
        logger.info("Session opened for %s (registered=%s)", self.identity_key, account is not None)
        return account

    async def close(self) -> None:
        if self.reconciler.closed:
            return
        self.reconciler.close()
        self.dispatcher.clear()
        if self.stream is not None:
            await self.stream.stop()
        await self.allocations.close()
        await self.state_machine.close()
        logger.info("Session closed for %s", self.identity_key)


class SessionManager:
    """Holds the single active session; connecting a new identity replaces it."""

    def __init__(
        self,
        *,
        job_client: RemoteJobClient,
        store: RecordStoreClient,
        config: ProvisioningConfig,
        http_session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._job_client = job_client
        self._store = store
        self._config = config
        self._http_session = http_session
        self._active: Optional[ProvisioningSession] = None
        self._lock = asyncio.Lock()

    @property
    def active(self) -> Optional[ProvisioningSession]:
        return self._active

    def require(self) -> ProvisioningSession:
        if self._active is None:
            raise NoActiveSessionError("No identity is connected")
        return self._active

    async def connect(self, identity_key: str, *, callbacks: Optional[UICallbacks] = None) -> ProvisioningSession:
        async with self._lock:
            if self._active is not None and self._active.identity_key == identity_key:
                return self._active

            if self._active is not None:
                logger.info("Switching identity %s -> %s", self._active.identity_key, identity_key)
                await self._active.close()
                self._active = None

            session = ProvisioningSession(
                identity_key,
                job_client=self._job_client,
                store=self._store,
                config=self._config,
                http_session=self._http_session,
                callbacks=callbacks,
            )
            try:
                await session.open()
            except Exception:
                logger.exception("Failed to open session for %s", identity_key)
                await session.close()
                raise

            self._active = session
            return session

    async def disconnect(self) -> None:
        async with self._lock:
            if self._active is None:
                return
            session, self._active = self._active, None
            await session.close()

    async def aclose(self) -> None:
        await self.disconnect()
