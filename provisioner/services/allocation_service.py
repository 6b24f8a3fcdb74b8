from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from pydantic import ValidationError

from provisioner.models.accounts import (
    AccountPatch,
    BundlePatch,
    ResourceBundle,
    ResourceRequest,
    TokenRecord,
)
from provisioner.models.notifications import NotificationEvent, NotificationType
from provisioner.models.operations import Operation, OperationKind, new_idempotency_key
from provisioner.services.config import ProvisioningConfig
from provisioner.services.errors import ErrorCategory, ProvisioningError, user_message
from provisioner.services.notification_dispatcher import NotificationDispatcher
from provisioner.services.operation_submitter import OperationSubmitter
from provisioner.services.provisioning_state_machine import ProvisioningStateMachine
from provisioner.services.readiness_poller import ReadinessPoller
from provisioner.services.record_store_client import RecordStoreClient, RecordStoreError
from provisioner.services.state_reconciler import MergeSource, StateReconciler


logger = logging.getLogger(__name__)


@dataclass
class AllocationResult:
    operation: Optional[Operation] = None
    bundle: Optional[ResourceBundle] = None
    token: Optional[TokenRecord] = None
    deferred: bool = False
    idempotency_key: Optional[str] = None


@dataclass
class BundleSnapshot:
    observed_at: datetime
    bundles: list[ResourceBundle] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AllocationService:
    """Workflows that spend from an existing account: bundles, resources, transfers.

    Every request goes through the submitter, every response is merged
    optimistically and then confirmed against the store. A bundle request that
    timed out is resolved by watching the store for the bundle, not by sending
    it again.
    """

    def __init__(
        self,
        *,
        reconciler: StateReconciler,
        dispatcher: NotificationDispatcher,
        submitter: OperationSubmitter,
        store: RecordStoreClient,
        state_machine: ProvisioningStateMachine,
        config: ProvisioningConfig,
    ) -> None:
        self._reconciler = reconciler
        self._dispatcher = dispatcher
        self._submitter = submitter
        self._store = store
        self._state_machine = state_machine
        self._config = config
        self._bundle_poller: ReadinessPoller[BundleSnapshot] = ReadinessPoller(
            self._read_bundles_for_poll,
            name="bundle",
            floor_seconds=config.bundle_poll_interval_seconds,
        )
        # idempotency key -> bundle ids visible before the request was sent
        self._unresolved_bundles: dict[str, frozenset[str]] = {}
        self._deferred: dict[str, ResourceRequest] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._unsubscribe = dispatcher.subscribe(NotificationType.BUNDLE_CREATED, self._on_bundle_created_event)

    @property
    def identity_key(self) -> str:
        return self._reconciler.identity_key

    @property
    def bundle_poller(self) -> ReadinessPoller[BundleSnapshot]:
        return self._bundle_poller

    def is_deferred(self, idempotency_key: str) -> bool:
        return idempotency_key in self._deferred

    def is_unresolved(self, idempotency_key: str) -> bool:
        return idempotency_key in self._unresolved_bundles

    def _failed(self, operation: Operation) -> None:
        error = operation.error
        if error is None:
            return
        self._dispatcher.operation_failed(operation.kind, error.category, code=error.code, message=error.user_message)

    # -----------------
    # Bundles
    # -----------------

    async def create_bundle(self, units: int, *, idempotency_key: Optional[str] = None) -> AllocationResult:
        if isinstance(units, bool) or not isinstance(units, int) or units < 1:
            raise ProvisioningError("Bundle size must be a whole number of at least 1")

        account = self._reconciler.account
        if account is None:
            raise ProvisioningError("Create the primary account before allocating bundles")
        if account.primary.balance_major < units:
            raise ProvisioningError(
                f"Insufficient balance: {account.primary.balance_major} available, {units} requested"
            )

        if idempotency_key is not None:
            existing = self._reconciler.bundle_for_key(idempotency_key)
            if existing is not None:
                logger.info("Bundle for key %s already exists (id=%s)", idempotency_key, existing.id)
                return AllocationResult(bundle=existing)
            if idempotency_key in self._unresolved_bundles:
                raise ProvisioningError(
                    "A bundle request with this key is still being confirmed",
                    category=ErrorCategory.TIMEOUT_UNKNOWN_OUTCOME,
                )

        key = idempotency_key or new_idempotency_key()
        baseline = frozenset(bundle.id for bundle in self._reconciler.bundles)
        operation = await self._submitter.submit(
            OperationKind.CREATE_BUNDLE,
            {"user_wallet_id": self.identity_key, "bundler_balance": units},
            idempotency_key=key,
            workload=units,
        )

        if self._reconciler.closed:
            logger.info("Session for %s closed before bundle request %s completed", self.identity_key, key)
            return AllocationResult(operation=operation)

        if operation.succeeded and operation.result is not None:
            bundle = self._merge_created_bundle(operation, units)
            await self._refresh_after_spend()
            return AllocationResult(operation=operation, bundle=bundle or self._reconciler.bundle_for_key(key))

        if operation.outcome_unknown:
            self._watch_for_late_bundle(key, baseline)
        self._failed(operation)
        return AllocationResult(operation=operation)

    def _merge_created_bundle(self, operation: Operation, units: int) -> Optional[ResourceBundle]:
        try:
            patch = BundlePatch.from_job_response(
                operation.result or {},
                owner_identity_key=self.identity_key,
                units=units,
                idempotency_key=operation.idempotency_key,
            )
        except (ValidationError, ValueError):
            logger.warning("Bundle response for key %s had no usable id", operation.idempotency_key)
            return None

        changed = self._reconciler.merge_bundle(patch, source=MergeSource.OPTIMISTIC)
        bundle = self._reconciler.bundle(patch.id)
        if "id" in changed and bundle is not None:
            self._dispatcher.publish(changed, new_bundles=[bundle])
        return bundle

    def _watch_for_late_bundle(self, idempotency_key: str, baseline: frozenset[str]) -> None:
        self._unresolved_bundles[idempotency_key] = baseline

        def _has_new_bundle(snapshot: BundleSnapshot) -> bool:
            return any(
                bundle.id not in baseline and bundle.idempotency_key in (None, idempotency_key)
                for bundle in snapshot.bundles
            )

        def _expired() -> None:
            self._unresolved_bundles.pop(idempotency_key, None)
            logger.warning("No bundle appeared in the store for key %s", idempotency_key)

        self._bundle_poller.start(
            idempotency_key,
            _has_new_bundle,
            lambda snapshot: self._late_bundle_found(idempotency_key, snapshot),
            interval_seconds=self._config.bundle_poll_interval_seconds,
            deadline_seconds=self._config.bundle_poll_deadline_seconds,
            on_expired=_expired,
        )

    async def _read_bundles_for_poll(self, idempotency_key: str) -> BundleSnapshot:
        observed_at = _utcnow()
        bundles = await self._store.read_bundles(self.identity_key)
        return BundleSnapshot(observed_at=observed_at, bundles=bundles)

    def _late_bundle_found(self, idempotency_key: str, snapshot: BundleSnapshot) -> None:
        baseline = self._unresolved_bundles.pop(idempotency_key, frozenset())
        if self._reconciler.closed:
            return

        fresh = [bundle for bundle in snapshot.bundles if bundle.id not in baseline]
        match = next((bundle for bundle in fresh if bundle.idempotency_key == idempotency_key), None)
        if match is None and fresh:
            # Store order is newest first.
            match = fresh[0]
        if match is None:
            return

        logger.info("Bundle %s for key %s showed up after the request timed out", match.id, idempotency_key)
        attributed = [
            bundle.model_copy(update={"idempotency_key": idempotency_key}) if bundle.id == match.id else bundle
            for bundle in snapshot.bundles
        ]
        self._merge_store_bundles(attributed, snapshot.observed_at, announce=True)

    def _on_bundle_created_event(self, event: NotificationEvent) -> None:
        key = event.payload.get("idempotency_key")
        if key and key in self._unresolved_bundles:
            self._unresolved_bundles.pop(key, None)
            self._bundle_poller.stop_key(key)

    def _merge_store_bundles(
        self, bundles: list[ResourceBundle], observed_at: datetime, *, announce: bool
    ) -> list[ResourceBundle]:
        new_bundles = self._reconciler.merge_bundles(bundles, source=MergeSource.STORE, observed_at=observed_at)
        if new_bundles and announce:
            self._dispatcher.publish({"id"}, new_bundles=new_bundles)
        return new_bundles

    async def refresh_bundles(self, *, announce: bool = True) -> list[ResourceBundle]:
        observed_at = _utcnow()
        bundles = await self._store.read_bundles(self.identity_key)
        if not self._reconciler.closed:
            self._merge_store_bundles(bundles, observed_at, announce=announce)
        return self._reconciler.bundles

    async def set_bundle_active(self, bundle_id: str, *, is_active: bool) -> ResourceBundle:
        previous = self._reconciler.bundle(bundle_id)
        if previous is None:
            raise ProvisioningError(f"Unknown bundle: {bundle_id}")

        self._reconciler.merge_bundle(BundlePatch(id=bundle_id, is_active=is_active), source=MergeSource.OPTIMISTIC)
        observed_at = _utcnow()
        try:
            updated = await self._store.update_bundle_status(bundle_id, is_active=is_active)
        except RecordStoreError:
            logger.warning(
                "Reverting bundle %s to is_active=%s after failed store write", bundle_id, previous.is_active
            )
            if not self._reconciler.closed:
                self._reconciler.merge_bundle(
                    BundlePatch(id=bundle_id, is_active=previous.is_active), source=MergeSource.OPTIMISTIC
                )
            raise
        if updated is not None and not self._reconciler.closed:
            self._reconciler.merge_bundle(
                BundlePatch.from_bundle(updated), source=MergeSource.STORE, observed_at=observed_at
            )

        bundle = self._reconciler.bundle(bundle_id)
        if bundle is None:
            raise ProvisioningError(f"Unknown bundle: {bundle_id}")
        return bundle

    # -----------------
    # Resources
    # -----------------

    async def create_resource(
        self, request: ResourceRequest, *, idempotency_key: Optional[str] = None
    ) -> AllocationResult:
        account = self._reconciler.account
        if account is None:
            raise ProvisioningError("Create the primary account before creating resources")

        key = idempotency_key or new_idempotency_key()
        if not account.secondary_ready:
            return self._defer(request, key)

        minimum = self._config.min_secondary_balance_major
        if account.secondary.balance_major < minimum:
            raise ProvisioningError(
                f"Secondary account needs at least {minimum} to create a resource "
                f"(current balance {account.secondary.balance_major})"
            )

        operation = await self._submitter.submit(
            OperationKind.CREATE_RESOURCE,
            request.to_payload(self.identity_key),
            idempotency_key=key,
        )

        if operation.succeeded and operation.result is not None:
            token = request.to_token(self.identity_key, operation.result)
            try:
                token = await self._store.insert_token(token)
            except RecordStoreError:
                logger.warning("Resource %s created but could not be recorded in the store", token.name)
            if not self._reconciler.closed and self._reconciler.merge_token(token):
                self._dispatcher.publish({"tokens"})
            await self._refresh_after_spend()
            return AllocationResult(operation=operation, token=token)

        if operation.error_category is ErrorCategory.RESOURCE_NOT_READY:
            return self._defer(request, key, operation)

        self._failed(operation)
        return AllocationResult(operation=operation)

    def _defer(
        self, request: ResourceRequest, idempotency_key: str, operation: Optional[Operation] = None
    ) -> AllocationResult:
        if idempotency_key in self._deferred:
            return AllocationResult(operation=operation, deferred=True, idempotency_key=idempotency_key)

        self._deferred[idempotency_key] = request
        code = operation.error.code if operation is not None and operation.error is not None else None
        self._dispatcher.operation_failed(
            OperationKind.CREATE_RESOURCE,
            ErrorCategory.RESOURCE_NOT_READY,
            code=code,
            message=user_message(ErrorCategory.RESOURCE_NOT_READY),
        )

        if self._state_machine.secondary_ready:
            # Ready in the store but not yet on the job service; try again after a poll interval.
            loop = asyncio.get_running_loop()
            self._timers[idempotency_key] = loop.call_later(
                self._config.secondary_poll_floor_seconds, self._resume, idempotency_key
            )
        else:
            self._state_machine.when_secondary_ready(lambda _account: self._resume(idempotency_key))

        logger.info("Resource request %s deferred until the secondary account is ready", idempotency_key)
        return AllocationResult(operation=operation, deferred=True, idempotency_key=idempotency_key)

    def _resume(self, idempotency_key: str) -> None:
        self._timers.pop(idempotency_key, None)
        request = self._deferred.pop(idempotency_key, None)
        if request is None or self._reconciler.closed:
            return

        task = asyncio.create_task(self._run_deferred(request, idempotency_key), name=f"resume-{idempotency_key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_deferred(self, request: ResourceRequest, idempotency_key: str) -> None:
        logger.info("Resuming deferred resource request %s", idempotency_key)
        try:
            await self.create_resource(request, idempotency_key=idempotency_key)
        except ProvisioningError as exc:
            self._dispatcher.operation_failed(OperationKind.CREATE_RESOURCE, exc.category, message=str(exc))

    async def sell_resource(self, percent: float) -> AllocationResult:
        if not 0 < percent <= 100:
            raise ProvisioningError("Sell percentage must be between 0 and 100")

        operation = await self._submitter.submit(
            OperationKind.SELL_RESOURCE, {"user_wallet_id": self.identity_key, "sell_percent": percent}
        )
        if operation.succeeded:
            await self._refresh_after_spend()
        else:
            self._failed(operation)
        return AllocationResult(operation=operation)

    async def refresh_tokens(self) -> list[TokenRecord]:
        tokens = await self._store.read_tokens(self.identity_key)
        if not self._reconciler.closed and self._reconciler.merge_tokens(tokens):
            self._dispatcher.publish({"tokens"})
        return self._reconciler.tokens

    # -----------------
    # Balances
    # -----------------

    async def transfer_to_owner(self, amount: Decimal) -> AllocationResult:
        account = self._reconciler.account
        if account is None:
            raise ProvisioningError("No primary account to transfer from")
        if amount <= 0:
            raise ProvisioningError("Transfer amount must be positive")
        if amount > account.primary.balance_major:
            raise ProvisioningError(
                f"Insufficient balance: {account.primary.balance_major} available, {amount} requested"
            )

        operation = await self._submitter.submit(
            OperationKind.TRANSFER_TO_OWNER, {"user_wallet_id": self.identity_key, "amount_sol": str(amount)}
        )
        if operation.succeeded:
            await self._refresh_after_spend()
        else:
            self._failed(operation)
        return AllocationResult(operation=operation)

    async def verify_balance(self) -> AllocationResult:
        operation = await self._submitter.submit(OperationKind.VERIFY_BALANCE, {"user_wallet_id": self.identity_key})
        if not operation.succeeded or operation.result is None:
            self._failed(operation)
            return AllocationResult(operation=operation)

        self._merge_optimistic(AccountPatch.from_job_response, operation)
        await self._state_machine.refresh_quietly()
        return AllocationResult(operation=operation)

    async def verify_secondary_balance(self) -> AllocationResult:
        if not self._state_machine.secondary_ready:
            raise ProvisioningError(
                user_message(ErrorCategory.RESOURCE_NOT_READY), category=ErrorCategory.RESOURCE_NOT_READY
            )

        operation = await self._submitter.submit(
            OperationKind.VERIFY_SECONDARY_BALANCE, {"user_wallet_id": self.identity_key}
        )
        if not operation.succeeded or operation.result is None:
            self._failed(operation)
            return AllocationResult(operation=operation)

        patch = self._merge_optimistic(AccountPatch.from_secondary_balance_response, operation)
        observed = patch.observed_fields() if patch is not None else {}
        if "secondary_balance_major" in observed or "secondary_balance_minor" in observed:
            try:
                await self._store.write_balances(
                    self.identity_key,
                    secondary_major=patch.secondary_balance_major,
                    secondary_minor=patch.secondary_balance_minor,
                )
            except RecordStoreError:
                logger.warning("Could not persist secondary balance for %s", self.identity_key)
        await self._state_machine.refresh_quietly()
        return AllocationResult(operation=operation)

    def _merge_optimistic(
        self, build: Callable[[dict[str, Any]], AccountPatch], operation: Operation
    ) -> Optional[AccountPatch]:
        try:
            patch = build(operation.result or {})
        except ValidationError:
            logger.warning("%s returned an unreadable payload", operation.kind.value)
            return None
        if self._reconciler.closed:
            return patch
        changed = self._reconciler.merge_account(patch, source=MergeSource.OPTIMISTIC)
        if changed:
            self._dispatcher.publish(changed)
        return patch

    async def _refresh_after_spend(self) -> None:
        await self._state_machine.refresh_quietly()
        try:
            await self.refresh_bundles()
        except RecordStoreError:
            logger.warning("Bundle refresh for %s failed", self.identity_key)

    async def close(self) -> None:
        self._unsubscribe()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._deferred.clear()
        self._unresolved_bundles.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._bundle_poller.aclose()
