"""Tests for RecordStoreClient against a local PostgREST-shaped server."""

from contextlib import asynccontextmanager
from decimal import Decimal

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from provisioner.models.accounts import TokenRecord
from provisioner.services.config import RecordStoreConfig
from provisioner.services.record_store_client import RecordStoreClient, RecordStoreError


@asynccontextmanager
async def record_store(handler):
    app = web.Application()
    app.router.add_route("*", "/rest/v1/{table}", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        url = str(server.make_url("/")).rstrip("/")
        async with aiohttp.ClientSession() as session:
            yield RecordStoreClient(RecordStoreConfig(url=url, api_key="anon-key"), session=session)
    finally:
        await server.close()


USER_ROW = {
    "user_wallet_id": "wallet-X",
    "distributor_public_key": "primary-pk",
    "distributor_balance_sol": "4.5",
    "distributor_balance_spl": "0",
    "dev_public_key": None,
    "dev_wallet_ready_in_seconds": 90,
    "created_at": "2024-05-01T12:00:00+00:00",
}


class TestReadAccount:
    @pytest.mark.asyncio
    async def test_maps_row_and_sends_auth_headers(self):
        seen = {}

        async def handler(request):
            seen["table"] = request.match_info["table"]
            seen["query"] = dict(request.query)
            seen["apikey"] = request.headers.get("apikey")
            seen["auth"] = request.headers.get("Authorization")
            return web.json_response([USER_ROW])

        async with record_store(handler) as store:
            record = await store.read_account("wallet-X")

        assert seen["table"] == "users"
        assert seen["query"]["user_wallet_id"] == "eq.wallet-X"
        assert seen["apikey"] == "anon-key"
        assert seen["auth"] == "Bearer anon-key"

        assert record is not None
        assert record.primary.public_key == "primary-pk"
        assert record.primary.balance_major == Decimal("4.5")
        assert record.secondary.public_key is None
        assert record.secondary.eta_seconds == 90
        assert not record.secondary_ready

    @pytest.mark.asyncio
    async def test_no_row_yet(self):
        async def handler(request):
            return web.json_response([])

        async with record_store(handler) as store:
            assert await store.read_account("wallet-X") is None

    @pytest.mark.asyncio
    async def test_row_without_primary_is_not_an_account(self):
        async def handler(request):
            return web.json_response([{"user_wallet_id": "wallet-X", "distributor_public_key": None}])

        async with record_store(handler) as store:
            assert await store.read_account("wallet-X") is None

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        async def handler(request):
            return web.Response(text="boom", status=500)

        async with record_store(handler) as store:
            with pytest.raises(RecordStoreError, match="HTTP 500"):
                await store.read_account("wallet-X")

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self):
        async def handler(request):
            return web.Response(text="not json", status=200)

        async with record_store(handler) as store:
            with pytest.raises(RecordStoreError):
                await store.read_account("wallet-X")


class TestBundles:
    @pytest.mark.asyncio
    async def test_read_bundles_newest_first(self):
        seen = {}

        async def handler(request):
            seen["order"] = request.query.get("order")
            return web.json_response(
                [
                    {"id": 12, "user_wallet_id": "wallet-X", "bundler_balance": 3, "is_active": True},
                    {"id": 11, "user_wallet_id": "wallet-X", "bundler_balance": 1, "is_active": False},
                ]
            )

        async with record_store(handler) as store:
            bundles = await store.read_bundles("wallet-X")

        assert seen["order"] == "id.desc"
        assert [b.id for b in bundles] == ["12", "11"]
        assert bundles[0].allocated_units == 3
        assert bundles[1].is_active is False

    @pytest.mark.asyncio
    async def test_update_bundle_status(self):
        seen = {}

        async def handler(request):
            seen["method"] = request.method
            seen["body"] = await request.json()
            seen["prefer"] = request.headers.get("Prefer")
            return web.json_response([{"id": 5, "user_wallet_id": "wallet-X", "is_active": False}])

        async with record_store(handler) as store:
            bundle = await store.update_bundle_status("5", is_active=False)

        assert seen["method"] == "PATCH"
        assert seen["body"] == {"is_active": False}
        assert seen["prefer"] == "return=representation"
        assert bundle is not None and bundle.is_active is False


class TestWrites:
    @pytest.mark.asyncio
    async def test_write_balances_sends_only_given_columns(self):
        seen = {}

        async def handler(request):
            seen["method"] = request.method
            seen["body"] = await request.json()
            return web.Response(status=204)

        async with record_store(handler) as store:
            await store.write_balances("wallet-X", secondary_major=Decimal("0.25"))

        assert seen["method"] == "PATCH"
        assert seen["body"] == {"dev_balance_sol": "0.25"}

    @pytest.mark.asyncio
    async def test_write_balances_requires_a_value(self):
        async def handler(request):
            return web.Response(status=204)

        async with record_store(handler) as store:
            with pytest.raises(ValueError):
                await store.write_balances("wallet-X")

    @pytest.mark.asyncio
    async def test_insert_token_returns_stored_row(self):
        async def handler(request):
            body = await request.json()
            return web.json_response([{**body, "id": 3}], status=201)

        token = TokenRecord(owner_identity_key="wallet-X", name="Moon", symbol="MOON", contract_address="mint-1")
        async with record_store(handler) as store:
            stored = await store.insert_token(token)

        assert stored.id == "3"
        assert stored.contract_address == "mint-1"
        assert stored.owner_identity_key == "wallet-X"
