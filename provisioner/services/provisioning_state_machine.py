from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from pydantic import ValidationError

from provisioner.models.accounts import AccountPatch, AccountRecord
from provisioner.models.notifications import NotificationEvent, NotificationType
from provisioner.models.operations import Operation, OperationKind
from provisioner.services.config import ProvisioningConfig
from provisioner.services.errors import OperationError
from provisioner.services.notification_dispatcher import NotificationDispatcher
from provisioner.services.operation_submitter import OperationSubmitter
from provisioner.services.readiness_poller import PollHandle, ReadinessPoller
from provisioner.services.record_store_client import RecordStoreClient, RecordStoreError
from provisioner.services.state_reconciler import MergeSource, StateReconciler


logger = logging.getLogger(__name__)


# Message the job service returns when the identity already has a primary.
ALREADY_PROVISIONED_MESSAGE = "already has an in-app wallet"


class ProvisioningState(str, Enum):
    UNREGISTERED = "unregistered"
    PRIMARY_CREATED = "primary_created"


class ProvisioningOutcome(str, Enum):
    CREATED = "created"
    ALREADY_PROVISIONED = "already_provisioned"
    FAILED = "failed"


@dataclass
class ProvisioningResult:
    outcome: ProvisioningOutcome
    record: Optional[AccountRecord] = None
    operation: Optional[Operation] = None

    @property
    def error(self) -> Optional[OperationError]:
        return self.operation.error if self.operation is not None else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningStateMachine:
    """Account lifecycle for one identity.

    UNREGISTERED -> PRIMARY_CREATED (secondary pending) -> PRIMARY_CREATED
    (secondary ready). The state is read off the reconciled record, never kept
    separately. Only store observations (through the secondary poller) or a
    pushed notification move the secondary from pending to ready.
    """

    def __init__(
        self,
        *,
        reconciler: StateReconciler,
        dispatcher: NotificationDispatcher,
        submitter: OperationSubmitter,
        store: RecordStoreClient,
        config: ProvisioningConfig,
    ) -> None:
        self._reconciler = reconciler
        self._dispatcher = dispatcher
        self._submitter = submitter
        self._store = store
        self._config = config
        self._poller: ReadinessPoller[Optional[AccountRecord]] = ReadinessPoller(
            self._read_for_poll,
            name="secondary",
            floor_seconds=config.secondary_poll_floor_seconds,
        )
        self._creating: Optional[asyncio.Task[ProvisioningResult]] = None
        self._ready_waiters: list[Callable[[AccountRecord], None]] = []
        self._unsubscribe = dispatcher.subscribe(NotificationType.SECONDARY_READY, self._on_secondary_ready_event)

    @property
    def identity_key(self) -> str:
        return self._reconciler.identity_key

    @property
    def poller(self) -> ReadinessPoller[Optional[AccountRecord]]:
        return self._poller

    @property
    def state(self) -> ProvisioningState:
        if self._reconciler.account is None:
            return ProvisioningState.UNREGISTERED
        return ProvisioningState.PRIMARY_CREATED

    @property
    def account(self) -> Optional[AccountRecord]:
        return self._reconciler.account

    @property
    def secondary_ready(self) -> bool:
        account = self._reconciler.account
        return account is not None and account.secondary_ready

    async def load(self) -> Optional[AccountRecord]:
        """Initial store read for a freshly connected identity."""

        account = await self.refresh()
        if account is not None and not account.secondary_ready:
            self.ensure_secondary_polling()
        return account

    async def refresh(self) -> Optional[AccountRecord]:
        # Stamp with the time the read was issued; anything observed after
        # that is newer than whatever the store returns.
        observed_at = _utcnow()
        record = await self._store.read_account(self.identity_key)
        if record is not None:
            self._merge_store_record(record, observed_at)
        return self._reconciler.account

    def _merge_store_record(self, record: AccountRecord, observed_at: datetime) -> None:
        if self._reconciler.closed:
            return
        changed = self._reconciler.merge_account(
            AccountPatch.from_record(record), source=MergeSource.STORE, observed_at=observed_at
        )
        if changed:
            self._dispatcher.publish(changed)

    async def create_primary(self) -> ProvisioningResult:
        """Create the primary account, or report that it already exists.

        Concurrent calls share one attempt; every call after the first resolves
        to ALREADY_PROVISIONED once the first one has created the account.
        """

        pending = self._creating
        if pending is not None and not pending.done():
            first = await asyncio.shield(pending)
            if first.outcome is ProvisioningOutcome.FAILED:
                return first
            return ProvisioningResult(ProvisioningOutcome.ALREADY_PROVISIONED, record=self._reconciler.account)

        task = asyncio.create_task(self._create_primary(), name=f"create-primary-{self.identity_key}")
        task.add_done_callback(self._creation_finished)
        self._creating = task
        return await asyncio.shield(task)

    def _creation_finished(self, task: asyncio.Task) -> None:
        # Runs even when the caller that started the attempt was cancelled.
        if self._creating is task:
            self._creating = None

    async def _create_primary(self) -> ProvisioningResult:
        account = self._reconciler.account
        if account is not None:
            logger.info("Primary for %s already known locally", self.identity_key)
            return ProvisioningResult(ProvisioningOutcome.ALREADY_PROVISIONED, record=account)

        try:
            account = await self.refresh()
        except RecordStoreError:
            logger.warning("Store check before creating primary for %s failed; submitting anyway", self.identity_key)
            account = None
        if account is not None:
            logger.info("Primary for %s already present in store", self.identity_key)
            self.ensure_secondary_polling()
            return ProvisioningResult(ProvisioningOutcome.ALREADY_PROVISIONED, record=account)

        operation = await self._submitter.submit(OperationKind.CREATE_PRIMARY, {"user_wallet_id": self.identity_key})

        if operation.succeeded and operation.result is not None:
            try:
                patch = AccountPatch.from_job_response(operation.result)
            except ValidationError:
                logger.warning("Primary creation for %s returned an unreadable payload", self.identity_key)
                patch = AccountPatch()
            changed = self._reconciler.merge_account(patch, source=MergeSource.OPTIMISTIC)
            if changed:
                self._dispatcher.publish(changed)
            if self._reconciler.account is None:
                await self.refresh_quietly()
            self.ensure_secondary_polling()
            logger.info("Primary created for %s", self.identity_key)
            return ProvisioningResult(ProvisioningOutcome.CREATED, record=self._reconciler.account, operation=operation)

        error = operation.error
        if error is not None and self._is_already_provisioned(error):
            account = await self.refresh_quietly()
            if account is not None:
                logger.info("Job service reports %s is already provisioned", self.identity_key)
                self.ensure_secondary_polling()
                return ProvisioningResult(
                    ProvisioningOutcome.ALREADY_PROVISIONED, record=account, operation=operation
                )

        if error is not None:
            self._dispatcher.operation_failed(
                operation.kind, error.category, code=error.code, message=error.user_message
            )
        if operation.outcome_unknown:
            # The account may still appear; keep watching the store for it.
            self.ensure_secondary_polling()
        return ProvisioningResult(ProvisioningOutcome.FAILED, record=self._reconciler.account, operation=operation)

    def _is_already_provisioned(self, error: OperationError) -> bool:
        if error.code and error.code in self._config.already_provisioned_codes:
            return True
        return ALREADY_PROVISIONED_MESSAGE in (error.message or "")

    async def refresh_quietly(self) -> Optional[AccountRecord]:
        try:
            return await self.refresh()
        except RecordStoreError:
            logger.warning("Account refresh for %s failed", self.identity_key)
            return self._reconciler.account

    # -----------------
    # Secondary readiness
    # -----------------

    def ensure_secondary_polling(self) -> Optional[PollHandle[Optional[AccountRecord]]]:
        """Start the secondary poller unless it is running or not needed."""

        if self._reconciler.closed or self.secondary_ready:
            return None
        existing = self._poller.handle_for(self.identity_key)
        if existing is not None and existing.active:
            return existing

        account = self._reconciler.account
        eta = account.secondary.eta_seconds if account is not None else None
        return self._poller.start(
            self.identity_key,
            lambda record: record is not None and record.secondary_ready,
            self._secondary_ready,
            eta_seconds=eta,
        )

    async def _read_for_poll(self, identity_key: str) -> Optional[AccountRecord]:
        observed_at = _utcnow()
        record = await self._store.read_account(identity_key)
        if record is not None:
            self._merge_store_record(record, observed_at)
        return self._reconciler.account

    def when_secondary_ready(self, callback: Callable[[AccountRecord], None]) -> None:
        """Run ``callback`` once the secondary is ready (now, if it already is)."""

        account = self._reconciler.account
        if account is not None and account.secondary_ready:
            callback(account)
            return
        self._ready_waiters.append(callback)
        self.ensure_secondary_polling()

    def _on_secondary_ready_event(self, event: NotificationEvent) -> None:
        account = self._reconciler.account
        if account is not None and account.secondary_ready:
            self._secondary_ready(account)

    def _secondary_ready(self, account: Optional[AccountRecord]) -> None:
        self._poller.stop_key(self.identity_key)
        if account is None:
            return

        waiters, self._ready_waiters = self._ready_waiters, []
        for waiter in waiters:
            waiter(account)

    async def close(self) -> None:
        self._unsubscribe()
        self._ready_waiters.clear()
        if self._creating is not None and not self._creating.done():
            self._creating.cancel()
        await self._poller.aclose()
