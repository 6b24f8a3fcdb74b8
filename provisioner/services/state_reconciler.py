from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from provisioner.models.accounts import (
    AccountPatch,
    AccountRecord,
    BundlePatch,
    PrimaryAccount,
    ResourceBundle,
    SecondaryAccount,
    TokenRecord,
)
from provisioner.models.notifications import NotificationEvent, NotificationType


logger = logging.getLogger(__name__)


class MergeSource(str, Enum):
    OPTIMISTIC = "optimistic"
    STORE = "store"
    NOTIFICATION = "notification"


class ReconcilerClosedError(RuntimeError):
    pass


# Balances are only ever known for sure by the store.
STORE_AUTHORITATIVE_ACCOUNT_FIELDS = frozenset(
    {
        "primary_balance_major",
        "primary_balance_minor",
        "secondary_balance_major",
        "secondary_balance_minor",
    }
)
STORE_AUTHORITATIVE_BUNDLE_FIELDS = frozenset({"total_balance_major", "total_balance_minor"})


@dataclass(frozen=True)
class Observation:
    value: Any
    source: MergeSource
    observed_at: datetime


class FieldLedger:
    """Latest observation per field, merged with the recency rule.

    A newer-or-equal observation replaces an older one. For store-authoritative
    fields a store observation always replaces a non-store one, and a non-store
    observation only replaces a store one when it is strictly newer. Applying
    the same observation twice is a no-op the second time.
    """

    def __init__(self, authoritative: frozenset[str]) -> None:
        self._authoritative = authoritative
        self._fields: dict[str, Observation] = {}

    def get(self, name: str, default: Any = None) -> Any:
        obs = self._fields.get(name)
        return default if obs is None else obs.value

    def observation(self, name: str) -> Optional[Observation]:
        return self._fields.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._fields

    def _accepts(self, name: str, current: Optional[Observation], incoming: Observation) -> bool:
        if current is None:
            return True
        if name in self._authoritative:
            if incoming.source is MergeSource.STORE and current.source is not MergeSource.STORE:
                return True
            if incoming.source is not MergeSource.STORE and current.source is MergeSource.STORE:
                return incoming.observed_at > current.observed_at
        return incoming.observed_at >= current.observed_at

    def merge(self, values: dict[str, Any], *, source: MergeSource, observed_at: datetime) -> set[str]:
        changed: set[str] = set()
        for name, value in values.items():
            if value is None:
                continue
            current = self._fields.get(name)
            incoming = Observation(value=value, source=source, observed_at=observed_at)
            if not self._accepts(name, current, incoming):
                continue
            self._fields[name] = incoming
            if current is None or current.value != value:
                changed.add(name)
        return changed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateReconciler:
    """The one authoritative view of a session's account, bundles and tokens.

    Optimistic job responses, store reads and notifications all go through
    here; nothing else mutates session state. Derived values (secondary
    readiness) are computed from the merged fields on read.
    """

    def __init__(self, identity_key: str) -> None:
        self._identity_key = identity_key
        self._account = FieldLedger(STORE_AUTHORITATIVE_ACCOUNT_FIELDS)
        self._bundles: dict[str, FieldLedger] = {}
        self._bundle_order: list[str] = []
        self._bundle_keys: dict[str, str] = {}
        self._tokens: dict[str, TokenRecord] = {}
        self._closed = False

    @property
    def identity_key(self) -> str:
        return self._identity_key

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise ReconcilerClosedError(f"Session for {self._identity_key} has been torn down")

    # -----------------
    # Views
    # -----------------

    @property
    def account(self) -> Optional[AccountRecord]:
        primary_key = self._account.get("primary_public_key")
        if not primary_key:
            return None

        zero = Decimal("0")
        return AccountRecord(
            identity_key=self._identity_key,
            primary=PrimaryAccount(
                public_key=primary_key,
                balance_major=self._account.get("primary_balance_major", zero),
                balance_minor=self._account.get("primary_balance_minor", zero),
            ),
            secondary=SecondaryAccount(
                public_key=self._account.get("secondary_public_key"),
                eta_seconds=self._account.get("secondary_eta_seconds"),
                balance_major=self._account.get("secondary_balance_major", zero),
                balance_minor=self._account.get("secondary_balance_minor", zero),
            ),
            created_at=self._account.get("created_at"),
        )

    @property
    def bundles(self) -> list[ResourceBundle]:
        return [self._materialize_bundle(bundle_id) for bundle_id in self._bundle_order]

    def bundle(self, bundle_id: str) -> Optional[ResourceBundle]:
        if bundle_id not in self._bundles:
            return None
        return self._materialize_bundle(bundle_id)

    def bundle_for_key(self, idempotency_key: str) -> Optional[ResourceBundle]:
        bundle_id = self._bundle_keys.get(idempotency_key)
        return None if bundle_id is None else self.bundle(bundle_id)

    @property
    def tokens(self) -> list[TokenRecord]:
        return list(self._tokens.values())

    def _materialize_bundle(self, bundle_id: str) -> ResourceBundle:
        ledger = self._bundles[bundle_id]
        return ResourceBundle(
            id=bundle_id,
            owner_identity_key=ledger.get("owner_identity_key", self._identity_key),
            allocated_units=ledger.get("allocated_units", 1),
            is_active=ledger.get("is_active", True),
            total_balance_major=ledger.get("total_balance_major", Decimal("0")),
            total_balance_minor=ledger.get("total_balance_minor", Decimal("0")),
            name=ledger.get("name"),
            idempotency_key=ledger.get("idempotency_key"),
            created_at=ledger.get("created_at"),
        )

    # -----------------
    # Merges
    # -----------------

    def merge_account(
        self,
        patch: AccountPatch,
        *,
        source: MergeSource,
        observed_at: Optional[datetime] = None,
    ) -> set[str]:
        """Merge a partial account update and return the names of changed fields."""

        self._ensure_open()
        changed = self._account.merge(patch.observed_fields(), source=source, observed_at=observed_at or _utcnow())
        if changed:
            logger.debug("Account %s merged from %s: %s", self._identity_key, source.value, sorted(changed))
        return changed

    def merge_bundle(
        self,
        patch: BundlePatch,
        *,
        source: MergeSource,
        observed_at: Optional[datetime] = None,
    ) -> set[str]:
        self._ensure_open()

        key = patch.idempotency_key
        if key and key in self._bundle_keys and self._bundle_keys[key] != patch.id:
            logger.warning(
                "Ignoring bundle %s: idempotency key %s already produced bundle %s",
                patch.id,
                key,
                self._bundle_keys[key],
            )
            return set()

        ledger = self._bundles.get(patch.id)
        created = ledger is None
        if ledger is None:
            ledger = FieldLedger(STORE_AUTHORITATIVE_BUNDLE_FIELDS)
            self._bundles[patch.id] = ledger
            self._bundle_order.insert(0, patch.id)

        changed = ledger.merge(patch.observed_fields(), source=source, observed_at=observed_at or _utcnow())
        if key:
            self._bundle_keys.setdefault(key, patch.id)
        if created:
            changed.add("id")
        return changed

    def merge_bundles(
        self,
        bundles: Iterable[ResourceBundle],
        *,
        source: MergeSource,
        observed_at: Optional[datetime] = None,
    ) -> list[ResourceBundle]:
        """Merge a batch (typically a store read) and return the bundles that are new."""

        stamp = observed_at or _utcnow()
        new_bundles: list[ResourceBundle] = []
        # Oldest first so that newest ends up at the front of the ordering.
        for bundle in reversed(list(bundles)):
            changed = self.merge_bundle(BundlePatch.from_bundle(bundle), source=source, observed_at=stamp)
            if "id" in changed:
                new_bundles.append(self._materialize_bundle(bundle.id))
        return new_bundles

    def merge_token(self, token: TokenRecord) -> bool:
        self._ensure_open()
        existing = self._tokens.get(token.merge_key)
        if existing is not None and existing == token:
            return False
        self._tokens[token.merge_key] = token
        return True

    def merge_tokens(self, tokens: Iterable[TokenRecord]) -> list[TokenRecord]:
        return [token for token in tokens if self.merge_token(token)]

    def apply_notification(self, event: NotificationEvent) -> set[str]:
        """Merge a notification. Applying the same event twice changes nothing."""

        self._ensure_open()
        if event.target_identity_key != self._identity_key:
            return set()

        payload = event.payload
        stamp = event.received_at

        try:
            if event.type is NotificationType.SECONDARY_READY:
                patch = AccountPatch.model_validate(
                    {
                        "secondary_public_key": payload.get("dev_public_key") or payload.get("secondary_public_key"),
                        "primary_public_key": payload.get("in_app_public_key") or payload.get("distributor_public_key"),
                    }
                )
                return self.merge_account(patch, source=MergeSource.NOTIFICATION, observed_at=stamp)

            if event.type is NotificationType.BALANCE_UPDATED:
                patch = AccountPatch.model_validate(
                    {
                        "primary_balance_major": payload.get("new_balance_sol", payload.get("primary_balance_major")),
                        "primary_balance_minor": payload.get("new_balance_spl", payload.get("primary_balance_minor")),
                        "secondary_balance_major": payload.get("dev_balance_sol"),
                        "secondary_balance_minor": payload.get("dev_balance_spl"),
                    }
                )
                return self.merge_account(patch, source=MergeSource.NOTIFICATION, observed_at=stamp)

            if event.type is NotificationType.BUNDLE_CREATED:
                patch = BundlePatch.from_job_response(
                    payload,
                    owner_identity_key=self._identity_key,
                    units=payload.get("allocated_units"),
                )
                return self.merge_bundle(patch, source=MergeSource.NOTIFICATION, observed_at=stamp)

            if event.type is NotificationType.RESOURCE_CREATED:
                token = TokenRecord.model_validate(
                    {
                        "owner_identity_key": self._identity_key,
                        "name": payload.get("token_name") or payload.get("name"),
                        "symbol": payload.get("symbol") or "",
                        "contract_address": payload.get("contract_address"),
                        "image_url": payload.get("image_url"),
                    }
                )
                return {"tokens"} if self.merge_token(token) else set()
        except (ValidationError, ValueError) as exc:
            logger.warning("Dropping malformed %s notification for %s: %s", event.type.value, self._identity_key, exc)
            return set()

        return set()
