from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from provisioner.models.operations import Operation, OperationKind, new_idempotency_key
from provisioner.services.config import ProvisioningConfig
from provisioner.services.errors import ErrorCategory, OperationError, TransportFailure
from provisioner.services.remote_job_client import (
    CREATE_BUNDLE_ENDPOINT,
    CREATE_PRIMARY_ENDPOINT,
    CREATE_RESOURCE_ENDPOINT,
    SELL_RESOURCE_ENDPOINT,
    TRANSFER_TO_OWNER_ENDPOINT,
    VERIFY_BALANCE_ENDPOINT,
    VERIFY_SECONDARY_BALANCE_ENDPOINT,
    RemoteJobClient,
    RemoteJobError,
)


logger = logging.getLogger(__name__)


ENDPOINTS: dict[OperationKind, str] = {
    OperationKind.CREATE_PRIMARY: CREATE_PRIMARY_ENDPOINT,
    OperationKind.CREATE_BUNDLE: CREATE_BUNDLE_ENDPOINT,
    OperationKind.CREATE_RESOURCE: CREATE_RESOURCE_ENDPOINT,
    OperationKind.VERIFY_BALANCE: VERIFY_BALANCE_ENDPOINT,
    OperationKind.VERIFY_SECONDARY_BALANCE: VERIFY_SECONDARY_BALANCE_ENDPOINT,
    OperationKind.SELL_RESOURCE: SELL_RESOURCE_ENDPOINT,
    OperationKind.TRANSFER_TO_OWNER: TRANSFER_TO_OWNER_ENDPOINT,
}

# Kinds whose server-side duration grows with the requested workload.
WORKLOAD_SCALED_KINDS = frozenset({OperationKind.CREATE_BUNDLE})
LONG_RUNNING_KINDS = frozenset({OperationKind.CREATE_RESOURCE})

IDEMPOTENCY_KEY_FIELD = "idempotency_key"


class OperationSubmitter:
    """Sends logical operations to the job service under an idempotency key.

    The key is minted once per logical request and travels with every resend
    of that request. A timed-out request is reported as an unknown outcome and
    is never resent here: callers poll the store to learn how it ended.
    Transient network failures are retried with the same key, which the job
    service treats as the same logical request.
    """

    def __init__(self, client: RemoteJobClient, config: ProvisioningConfig) -> None:
        self._client = client
        self._config = config
        self._in_flight: dict[str, asyncio.Task[Operation]] = {}

    @property
    def config(self) -> ProvisioningConfig:
        return self._config

    def timeout_for(self, kind: OperationKind, workload: int = 1) -> float:
        floor = self._client.config.timeout_seconds
        if kind in WORKLOAD_SCALED_KINDS:
            return max(floor, max(workload, 1) * self._config.per_unit_estimate_seconds)
        if kind in LONG_RUNNING_KINDS:
            return max(floor, self._client.config.long_timeout_seconds)
        return floor

    def is_in_flight(self, idempotency_key: str) -> bool:
        return idempotency_key in self._in_flight

    async def submit(
        self,
        kind: OperationKind,
        payload: dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
        workload: int = 1,
    ) -> Operation:
        """Submit one logical operation and return it in a terminal state.

        A second submit with a key that is already in flight does not reach the
        network; it waits for the first one and gets the same ``Operation``.
        """

        key = idempotency_key or new_idempotency_key()
        existing = self._in_flight.get(key)
        if existing is not None:
            logger.info("Operation %s already in flight (key=%s); joining it", kind.value, key)
            return await asyncio.shield(existing)

        operation = Operation(
            kind=kind,
            payload=dict(payload),
            timeout_seconds=self.timeout_for(kind, workload),
            idempotency_key=key,
        )
        return await self._track(operation)

    async def resubmit(self, operation: Operation) -> Operation:
        """Resend the same logical request under its original key."""

        existing = self._in_flight.get(operation.idempotency_key)
        if existing is not None:
            return await asyncio.shield(existing)

        resent = Operation(
            kind=operation.kind,
            payload=dict(operation.payload),
            timeout_seconds=operation.timeout_seconds,
            idempotency_key=operation.idempotency_key,
        )
        return await self._track(resent)

    async def _track(self, operation: Operation) -> Operation:
        task = asyncio.create_task(self._send(operation), name=f"submit-{operation.kind.value}")
        self._in_flight[operation.idempotency_key] = task
        # A cancelled caller leaves the request running; the task removes
        # itself from the in-flight map when it ends.
        return await asyncio.shield(task)

    async def _send(self, operation: Operation) -> Operation:
        endpoint = ENDPOINTS[operation.kind]
        body = {**operation.payload, IDEMPOTENCY_KEY_FIELD: operation.idempotency_key}

        try:
            while True:
                operation.attempts += 1
                try:
                    result = await self._client.submit(endpoint, body, timeout_seconds=operation.timeout_seconds)
                except RemoteJobError as exc:
                    error = self.categorize(exc)
                    if error.category is ErrorCategory.TRANSIENT_NETWORK and (
                        operation.attempts <= self._config.transient_retries
                    ):
                        delay = self._config.transient_backoff_seconds * operation.attempts
                        logger.info(
                            "Retrying %s after transient failure (key=%s attempt=%d delay=%.1fs)",
                            operation.kind.value,
                            operation.idempotency_key,
                            operation.attempts,
                            delay,
                        )
                        await asyncio.sleep(delay)
                        continue

                    operation.fail(error)
                    logger.info(
                        "Operation %s %s (key=%s category=%s code=%s)",
                        operation.kind.value,
                        operation.status.value,
                        operation.idempotency_key,
                        error.category.value,
                        error.code,
                    )
                    return operation

                operation.succeed(result)
                logger.info("Operation %s succeeded (key=%s)", operation.kind.value, operation.idempotency_key)
                return operation
        finally:
            if self._in_flight.get(operation.idempotency_key) is asyncio.current_task():
                del self._in_flight[operation.idempotency_key]

    def categorize(self, exc: RemoteJobError) -> OperationError:
        if exc.failure is TransportFailure.TIMEOUT:
            return OperationError(ErrorCategory.TIMEOUT_UNKNOWN_OUTCOME, code="TIMEOUT", message=exc.message)
        if exc.failure is TransportFailure.TRANSIENT_NETWORK:
            return OperationError(ErrorCategory.TRANSIENT_NETWORK, code=exc.code, message=exc.message)
        if exc.failure is TransportFailure.CROSS_ORIGIN_DENIED:
            return OperationError(ErrorCategory.PERMANENT_CONFIG, code="CROSS_ORIGIN_DENIED", message=exc.message)
        if exc.code in self._config.not_ready_codes:
            return OperationError(ErrorCategory.RESOURCE_NOT_READY, code=exc.code, message=exc.message)
        return OperationError(ErrorCategory.SERVER_REJECTED_VALIDATION, code=exc.code, message=exc.message)
