from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from provisioner.models.accounts import AccountPatch
from provisioner.models.notifications import NotificationEvent, NotificationType
from provisioner.models.operations import OperationKind
from provisioner.services.errors import ErrorCategory
from provisioner.services.notification_dispatcher import NotificationDispatcher
from provisioner.services.state_reconciler import MergeSource, StateReconciler
from tests.fakes import UIRecorder


@pytest.fixture
def reconciler():
    r = StateReconciler("wallet-X")
    r.merge_account(
        AccountPatch(primary_public_key="primary-pk", primary_balance_major=Decimal("1")),
        source=MergeSource.STORE,
        observed_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    return r


@pytest.fixture
def ui():
    return UIRecorder()


@pytest.fixture
def dispatcher(reconciler, ui):
    return NotificationDispatcher(reconciler, ui.callbacks())


def event(event_type, target="wallet-X", **payload):
    return NotificationEvent(type=event_type, target_identity_key=target, payload=payload)


class TestDispatch:
    def test_secondary_ready(self, dispatcher, ui):
        changed = dispatcher.dispatch(event(NotificationType.SECONDARY_READY, dev_public_key="dev-pk"))

        assert "secondary_public_key" in changed
        assert [r.secondary.public_key for r in ui.account_ready] == ["dev-pk"]

    def test_duplicate_delivery_notifies_once(self, dispatcher, ui):
        ready = event(NotificationType.SECONDARY_READY, dev_public_key="dev-pk")
        dispatcher.dispatch(ready)
        dispatcher.dispatch(ready)

        assert len(ui.account_ready) == 1

    def test_other_identity_is_ignored(self, dispatcher, reconciler, ui):
        assert dispatcher.dispatch(event(NotificationType.SECONDARY_READY, "wallet-Y", dev_public_key="k")) == set()
        assert ui.account_ready == []
        assert not reconciler.account.secondary_ready

    def test_balance_update(self, dispatcher, ui):
        dispatcher.dispatch(event(NotificationType.BALANCE_UPDATED, new_balance_sol="3.25"))

        assert ui.balance_changes[0].primary.balance_major == Decimal("3.25")

    def test_bundle_created(self, dispatcher, ui):
        dispatcher.dispatch(event(NotificationType.BUNDLE_CREATED, bundler_id=9, idempotency_key="k"))

        assert [b.id for b in ui.bundles_created] == ["9"]
        assert ui.bundles_created[0].idempotency_key == "k"

    def test_dropped_after_close(self, dispatcher, reconciler, ui):
        reconciler.close()

        assert dispatcher.dispatch(event(NotificationType.SECONDARY_READY, dev_public_key="dev-pk")) == set()
        assert ui.account_ready == []


class TestSubscribers:
    def test_subscriber_gets_pushed_event(self, dispatcher):
        seen = []
        dispatcher.subscribe(NotificationType.BUNDLE_CREATED, seen.append)
        pushed = event(NotificationType.BUNDLE_CREATED, bundler_id=1)

        dispatcher.dispatch(pushed)

        assert seen == [pushed]

    def test_local_merge_is_published_as_event(self, dispatcher, reconciler):
        seen = []
        dispatcher.subscribe(NotificationType.SECONDARY_READY, seen.append)

        changed = reconciler.merge_account(AccountPatch(secondary_public_key="dev-pk"), source=MergeSource.STORE)
        dispatcher.publish(changed)

        assert [e.payload["dev_public_key"] for e in seen] == ["dev-pk"]
        assert seen[0].target_identity_key == "wallet-X"

    def test_unsubscribe(self, dispatcher):
        seen = []
        unsubscribe = dispatcher.subscribe(NotificationType.BALANCE_UPDATED, seen.append)
        unsubscribe()

        dispatcher.dispatch(event(NotificationType.BALANCE_UPDATED, new_balance_sol="2"))

        assert seen == []


class TestOperationFailed:
    def test_reports_failure(self, dispatcher, ui):
        dispatcher.operation_failed(
            OperationKind.CREATE_BUNDLE, ErrorCategory.TRANSIENT_NETWORK, message="Network error"
        )
        assert ui.failures == [(OperationKind.CREATE_BUNDLE, ErrorCategory.TRANSIENT_NETWORK, None, "Network error")]

    def test_config_failure_reported_once(self, dispatcher, ui):
        for _ in range(3):
            dispatcher.operation_failed(
                OperationKind.CREATE_PRIMARY,
                ErrorCategory.PERMANENT_CONFIG,
                code="CROSS_ORIGIN_DENIED",
                message="refused",
            )
        assert len(ui.failures) == 1
