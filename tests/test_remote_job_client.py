"""Tests for RemoteJobClient against a local aiohttp server."""

import asyncio
from contextlib import asynccontextmanager

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from provisioner.services.config import RemoteJobConfig
from provisioner.services.errors import TransportFailure
from provisioner.services.remote_job_client import (
    CREATE_BUNDLE_ENDPOINT,
    RemoteJobClient,
    RemoteJobError,
)


@asynccontextmanager
async def job_service(handler, *, origin=None):
    app = web.Application()
    app.router.add_route("POST", "/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        base_url = str(server.make_url("/")).rstrip("/")
        async with aiohttp.ClientSession() as session:
            yield RemoteJobClient(RemoteJobConfig(base_url=base_url, origin=origin), session=session)
    finally:
        await server.close()


class TestSuccess:
    @pytest.mark.asyncio
    async def test_returns_structured_payload(self):
        seen = {}

        async def handler(request):
            seen["path"] = request.path
            seen["body"] = await request.json()
            return web.json_response({"bundler_id": 7, "total_balance_sol": "3"})

        async with job_service(handler) as client:
            result = await client.submit(
                CREATE_BUNDLE_ENDPOINT,
                {"user_wallet_id": "wallet-X", "bundler_balance": 3},
                timeout_seconds=5,
            )

        assert result == {"bundler_id": 7, "total_balance_sol": "3"}
        assert seen["path"] == CREATE_BUNDLE_ENDPOINT
        assert seen["body"] == {"user_wallet_id": "wallet-X", "bundler_balance": 3}

    @pytest.mark.asyncio
    async def test_sends_origin_header_when_configured(self):
        seen = {}

        async def handler(request):
            seen["origin"] = request.headers.get("Origin")
            return web.json_response({"ok": True})

        async with job_service(handler, origin="https://app.example.com") as client:
            await client.submit("api/orchestrator/create-bundler", {}, timeout_seconds=5)

        assert seen["origin"] == "https://app.example.com"


class TestClassification:
    @pytest.mark.asyncio
    async def test_nested_error_body_is_server_rejected_with_code(self):
        async def handler(request):
            return web.json_response(
                {"error": {"code": "DEV_WALLET_NOT_READY", "message": "Developer wallet not ready"}},
                status=400,
            )

        async with job_service(handler) as client:
            with pytest.raises(RemoteJobError) as excinfo:
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=5)

        assert excinfo.value.failure is TransportFailure.SERVER_REJECTED
        assert excinfo.value.code == "DEV_WALLET_NOT_READY"
        assert excinfo.value.message == "Developer wallet not ready"
        assert excinfo.value.status == 400

    @pytest.mark.asyncio
    async def test_flat_error_code_body(self):
        async def handler(request):
            return web.json_response({"errorCode": "INSUFFICIENT_BALANCE", "message": "Not enough SOL"}, status=409)

        async with job_service(handler) as client:
            with pytest.raises(RemoteJobError) as excinfo:
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=5)

        assert excinfo.value.failure is TransportFailure.SERVER_REJECTED
        assert excinfo.value.code == "INSUFFICIENT_BALANCE"

    @pytest.mark.asyncio
    async def test_structured_5xx_is_still_a_rejection(self):
        async def handler(request):
            return web.json_response({"error": "User already has an in-app wallet"}, status=500)

        async with job_service(handler) as client:
            with pytest.raises(RemoteJobError) as excinfo:
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=5)

        assert excinfo.value.failure is TransportFailure.SERVER_REJECTED
        assert excinfo.value.code == "UNKNOWN"
        assert "already has an in-app wallet" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_unstructured_403_is_cross_origin_denial(self):
        async def handler(request):
            return web.Response(text="Forbidden", status=403)

        async with job_service(handler) as client:
            with pytest.raises(RemoteJobError) as excinfo:
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=5)

        assert excinfo.value.failure is TransportFailure.CROSS_ORIGIN_DENIED

    @pytest.mark.asyncio
    async def test_unstructured_5xx_is_transient(self):
        async def handler(request):
            return web.Response(text="Bad gateway", status=502)

        async with job_service(handler) as client:
            with pytest.raises(RemoteJobError) as excinfo:
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=5)

        assert excinfo.value.failure is TransportFailure.TRANSIENT_NETWORK
        assert excinfo.value.status == 502

    @pytest.mark.asyncio
    async def test_unstructured_4xx_is_rejected_with_status_code(self):
        async def handler(request):
            return web.Response(status=404)

        async with job_service(handler) as client:
            with pytest.raises(RemoteJobError) as excinfo:
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=5)

        assert excinfo.value.failure is TransportFailure.SERVER_REJECTED
        assert excinfo.value.code == "HTTP_404"

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_rejected(self):
        async def handler(request):
            return web.Response(text="<html>ok</html>", status=200)

        async with job_service(handler) as client:
            with pytest.raises(RemoteJobError) as excinfo:
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=5)

        assert excinfo.value.failure is TransportFailure.SERVER_REJECTED
        assert excinfo.value.code == "INVALID_RESPONSE"

    @pytest.mark.asyncio
    async def test_slow_response_times_out(self):
        async def handler(request):
            await asyncio.sleep(2)
            return web.json_response({"ok": True})

        async with job_service(handler) as client:
            with pytest.raises(RemoteJobError) as excinfo:
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=0.1)

        assert excinfo.value.failure is TransportFailure.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_refused_is_transient(self):
        async def handler(request):
            return web.json_response({})

        app = web.Application()
        app.router.add_route("POST", "/{tail:.*}", handler)
        server = TestServer(app)
        await server.start_server()
        base_url = str(server.make_url("/")).rstrip("/")
        await server.close()

        async with aiohttp.ClientSession() as session:
            client = RemoteJobClient(RemoteJobConfig(base_url=base_url), session=session)
            with pytest.raises(RemoteJobError) as excinfo:
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=5)

        assert excinfo.value.failure is TransportFailure.TRANSIENT_NETWORK


class TestNoInternalRetry:
    @pytest.mark.asyncio
    async def test_transient_failure_is_sent_once(self):
        calls = 0

        async def handler(request):
            nonlocal calls
            calls += 1
            return web.Response(text="unavailable", status=503)

        async with job_service(handler) as client:
            with pytest.raises(RemoteJobError):
                await client.submit(CREATE_BUNDLE_ENDPOINT, {}, timeout_seconds=5)

        assert calls == 1
