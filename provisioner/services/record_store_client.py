from __future__ import annotations

import json
import logging
from decimal import Decimal
from http import HTTPStatus
from typing import Any, Optional

import aiohttp
from pydantic import ValidationError

from provisioner.models.accounts import (
    AccountPatch,
    AccountRecord,
    PrimaryAccount,
    ResourceBundle,
    SecondaryAccount,
    TokenRecord,
)
from provisioner.services.config import RecordStoreConfig


logger = logging.getLogger(__name__)


class RecordStoreError(RuntimeError):
    pass


class RecordStoreClient:
    """Keyed reads and writes against the eventually-consistent record store.

    Reads are not read-after-write consistent: a read that follows a successful
    write may return stale or missing rows for a while. Nothing in this client
    hides that; callers reconcile.
    """

    def __init__(self, config: RecordStoreConfig, *, session: aiohttp.ClientSession) -> None:
        self._config = config
        self._session = session

    def _headers(self, *, prefer: Optional[str] = None) -> dict[str, str]:
        headers = {
            "apikey": self._config.api_key,
            "Authorization": f"Bearer {self._config.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        *,
        method: str,
        table: str,
        params: dict[str, str],
        body: Optional[dict[str, Any]] = None,
        prefer: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        url = f"{self._config.rest_url}/{table}"
        timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)

        try:
            async with self._session.request(
                method,
                url,
                params=params,
                json=body,
                headers=self._headers(prefer=prefer),
                timeout=timeout,
            ) as resp:
                status = resp.status
                payload = await resp.read()
        except Exception as exc:
            logger.exception("Record store request failed (method=%s table=%s)", method, table)
            raise RecordStoreError(f"Record store request failed (table={table})") from exc

        if status not in (HTTPStatus.OK, HTTPStatus.CREATED, HTTPStatus.NO_CONTENT):
            try:
                details = payload.decode("utf-8") if payload else ""
            except UnicodeDecodeError:
                details = ""
            raise RecordStoreError(f"Record store request failed (table={table}) HTTP {status} {details}".strip())

        if not payload:
            return []
        try:
            parsed = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RecordStoreError(f"Record store returned a non-JSON body (table={table})") from exc

        if isinstance(parsed, dict):
            return [parsed]
        if not isinstance(parsed, list):
            raise RecordStoreError(f"Unexpected record store payload (table={table})")
        return [row for row in parsed if isinstance(row, dict)]

    @staticmethod
    def _eq(value: Any) -> str:
        return f"eq.{value}"

    async def read_account(self, identity_key: str) -> Optional[AccountRecord]:
        """Return the account row for an identity, or None if none is visible yet."""

        rows = await self._request(
            method="GET",
            table=self._config.accounts_table,
            params={"select": "*", "user_wallet_id": self._eq(identity_key), "limit": "1"},
        )
        if not rows:
            return None

        try:
            patch = AccountPatch.from_store_row(rows[0])
        except ValidationError as exc:
            raise RecordStoreError(f"Invalid account row for {identity_key}") from exc

        # A row without a primary key is not a materialized account yet.
        if not patch.primary_public_key:
            return None

        return AccountRecord(
            identity_key=identity_key,
            primary=PrimaryAccount(
                public_key=patch.primary_public_key,
                balance_major=patch.primary_balance_major or Decimal("0"),
                balance_minor=patch.primary_balance_minor or Decimal("0"),
            ),
            secondary=SecondaryAccount(
                public_key=patch.secondary_public_key,
                eta_seconds=patch.secondary_eta_seconds,
                balance_major=patch.secondary_balance_major or Decimal("0"),
                balance_minor=patch.secondary_balance_minor or Decimal("0"),
            ),
            created_at=patch.created_at,
        )

    async def read_bundles(self, identity_key: str) -> list[ResourceBundle]:
        rows = await self._request(
            method="GET",
            table=self._config.bundles_table,
            params={"select": "*", "user_wallet_id": self._eq(identity_key), "order": "id.desc"},
        )
        try:
            return [ResourceBundle.from_store_row(row) for row in rows]
        except ValidationError as exc:
            raise RecordStoreError(f"Invalid bundle row for {identity_key}") from exc

    async def read_tokens(self, identity_key: str) -> list[TokenRecord]:
        rows = await self._request(
            method="GET",
            table=self._config.tokens_table,
            params={"select": "*", "user_wallet_id": self._eq(identity_key), "order": "id.desc"},
        )
        try:
            return [TokenRecord.from_store_row(row) for row in rows]
        except ValidationError as exc:
            raise RecordStoreError(f"Invalid token row for {identity_key}") from exc

    async def write_balances(
        self,
        identity_key: str,
        *,
        primary_major: Optional[Decimal] = None,
        primary_minor: Optional[Decimal] = None,
        secondary_major: Optional[Decimal] = None,
        secondary_minor: Optional[Decimal] = None,
    ) -> None:
        """Persist balances. Success does not mean the next read will show them."""

        columns = {
            "distributor_balance_sol": primary_major,
            "distributor_balance_spl": primary_minor,
            "dev_balance_sol": secondary_major,
            "dev_balance_spl": secondary_minor,
        }
        body = {k: str(v) for k, v in columns.items() if v is not None}
        if not body:
            raise ValueError("At least one balance must be provided")

        await self._request(
            method="PATCH",
            table=self._config.accounts_table,
            params={"user_wallet_id": self._eq(identity_key)},
            body=body,
            prefer="return=minimal",
        )

    async def update_bundle_status(self, bundle_id: str, *, is_active: bool) -> Optional[ResourceBundle]:
        rows = await self._request(
            method="PATCH",
            table=self._config.bundles_table,
            params={"id": self._eq(bundle_id)},
            body={"is_active": is_active},
            prefer="return=representation",
        )
        if not rows:
            return None
        try:
            return ResourceBundle.from_store_row(rows[0])
        except ValidationError as exc:
            raise RecordStoreError(f"Invalid bundle row for id={bundle_id}") from exc

    async def insert_token(self, token: TokenRecord) -> TokenRecord:
        rows = await self._request(
            method="POST",
            table=self._config.tokens_table,
            params={},
            body=token.to_store_row(),
            prefer="return=representation",
        )
        if not rows:
            return token
        try:
            return TokenRecord.from_store_row(rows[0])
        except ValidationError as exc:
            raise RecordStoreError("Invalid token row returned from insert") from exc
