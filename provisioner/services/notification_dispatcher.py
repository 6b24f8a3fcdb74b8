from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from provisioner.models.accounts import AccountRecord, ResourceBundle
from provisioner.models.notifications import NotificationEvent, NotificationType
from provisioner.models.operations import OperationKind
from provisioner.services.errors import ErrorCategory
from provisioner.services.state_reconciler import StateReconciler


logger = logging.getLogger(__name__)


@dataclass
class UICallbacks:
    """Hooks the UI layer registers to hear about session changes."""

    on_account_ready: Optional[Callable[[AccountRecord], None]] = None
    on_bundle_created: Optional[Callable[[ResourceBundle], None]] = None
    on_operation_failed: Optional[Callable[[OperationKind, ErrorCategory, Optional[str], str], None]] = None
    on_balance_changed: Optional[Callable[[AccountRecord], None]] = None


EventHandler = Callable[[NotificationEvent], None]

BALANCE_FIELDS = frozenset(
    {"primary_balance_major", "primary_balance_minor", "secondary_balance_major", "secondary_balance_minor"}
)


class NotificationDispatcher:
    """Routes inbound events through the reconciler, then out to listeners.

    Events arrive pushed (stream or webhook) or are synthesized locally after a
    store read or job response changed state. Delivery is at-least-once:
    duplicates are harmless because the reconciler's merge is idempotent, and
    listeners only hear about merges that changed something.
    """

    def __init__(self, reconciler: StateReconciler, callbacks: Optional[UICallbacks] = None) -> None:
        self._reconciler = reconciler
        self._callbacks = callbacks or UICallbacks()
        self._subscribers: dict[NotificationType, list[EventHandler]] = defaultdict(list)
        self._reported_config_failures: set[tuple[OperationKind, Optional[str]]] = set()

    @property
    def callbacks(self) -> UICallbacks:
        return self._callbacks

    def subscribe(self, event_type: NotificationType, handler: EventHandler) -> Callable[[], None]:
        self._subscribers[event_type].append(handler)

        def _unsubscribe() -> None:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def clear(self) -> None:
        self._subscribers.clear()

    def dispatch(self, event: NotificationEvent) -> set[str]:
        """Merge one inbound event and publish whatever it changed."""

        if self._reconciler.closed:
            logger.info("Dropping %s for %s: session closed", event.type.value, event.target_identity_key)
            return set()
        if event.target_identity_key != self._reconciler.identity_key:
            logger.info(
                "Ignoring %s addressed to %s (active identity %s)",
                event.type.value,
                event.target_identity_key,
                self._reconciler.identity_key,
            )
            return set()

        changed = self._reconciler.apply_notification(event)
        if not changed:
            logger.debug("%s for %s changed nothing", event.type.value, event.target_identity_key)
            return changed

        new_bundles: list[ResourceBundle] = []
        if event.type is NotificationType.BUNDLE_CREATED and "id" in changed:
            raw_id = event.payload.get("bundler_id", event.payload.get("bundle_id", event.payload.get("id")))
            bundle = self._reconciler.bundle(str(raw_id))
            if bundle is not None:
                new_bundles.append(bundle)

        logger.info("Applied %s for %s", event.type.value, event.target_identity_key)
        self.publish(changed, new_bundles=new_bundles, source_event=event)
        return changed

    def publish(
        self,
        changed: set[str],
        *,
        new_bundles: Iterable[ResourceBundle] = (),
        source_event: Optional[NotificationEvent] = None,
    ) -> None:
        """Tell the UI and subscribers about a merge that changed session state."""

        if self._reconciler.closed:
            return

        account = self._reconciler.account
        callbacks = self._callbacks

        if "secondary_public_key" in changed and account is not None and account.secondary_ready:
            if callbacks.on_account_ready is not None:
                callbacks.on_account_ready(account)
            self._emit(
                NotificationType.SECONDARY_READY,
                {"dev_public_key": account.secondary.public_key},
                source_event,
            )

        if changed & BALANCE_FIELDS and account is not None:
            if callbacks.on_balance_changed is not None:
                callbacks.on_balance_changed(account)
            self._emit(
                NotificationType.BALANCE_UPDATED,
                {
                    "new_balance_sol": str(account.primary.balance_major),
                    "new_balance_spl": str(account.primary.balance_minor),
                },
                source_event,
            )

        for bundle in new_bundles:
            if callbacks.on_bundle_created is not None:
                callbacks.on_bundle_created(bundle)
            self._emit(
                NotificationType.BUNDLE_CREATED,
                {"bundler_id": bundle.id, "idempotency_key": bundle.idempotency_key},
                source_event,
            )

        if "tokens" in changed:
            self._emit(NotificationType.RESOURCE_CREATED, {}, source_event)

    def _emit(
        self,
        event_type: NotificationType,
        payload: dict[str, Any],
        source_event: Optional[NotificationEvent],
    ) -> None:
        handlers = list(self._subscribers.get(event_type, []))
        if not handlers:
            return

        if source_event is not None and source_event.type is event_type:
            event = source_event
        else:
            event = NotificationEvent(
                type=event_type,
                target_identity_key=self._reconciler.identity_key,
                payload=payload,
            )

        for handler in handlers:
            handler(event)

    def operation_failed(
        self,
        kind: OperationKind,
        category: ErrorCategory,
        *,
        code: Optional[str] = None,
        message: str,
    ) -> None:
        if self._reconciler.closed:
            return
        if category is ErrorCategory.PERMANENT_CONFIG:
            # Configuration problems do not go away on retry; say so once.
            key = (kind, code)
            if key in self._reported_config_failures:
                return
            self._reported_config_failures.add(key)

        logger.info("Operation %s failed (%s, code=%s)", kind.value, category.value, code)
        if self._callbacks.on_operation_failed is not None:
            self._callbacks.on_operation_failed(kind, category, code, message)
