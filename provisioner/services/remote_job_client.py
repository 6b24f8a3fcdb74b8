from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import Any, Optional

import aiohttp

from provisioner.services.config import RemoteJobConfig
from provisioner.services.errors import TransportFailure


logger = logging.getLogger(__name__)


CREATE_PRIMARY_ENDPOINT = "/api/orchestrator/create-wallet-in-app"
VERIFY_BALANCE_ENDPOINT = "/api/orchestrator/verify-in-app-sol-balance"
VERIFY_SECONDARY_BALANCE_ENDPOINT = "/api/orchestrator/verify-dev-wallet-balance"
CREATE_BUNDLE_ENDPOINT = "/api/orchestrator/create-bundler"
CREATE_RESOURCE_ENDPOINT = "/api/orchestrator/create-and-buy-token-pumpFun"
SELL_RESOURCE_ENDPOINT = "/api/orchestrator/sell-created-token"
TRANSFER_TO_OWNER_ENDPOINT = "/api/orchestrator/transfer-to-owner-wallet"


class RemoteJobError(RuntimeError):
    """A job request that did not produce a structured success payload."""

    def __init__(
        self,
        failure: TransportFailure,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.failure = failure
        self.code = code
        self.message = message
        self.status = status


class RemoteJobClient:
    """Timeout-bounded JSON requests against the remote job service.

    Every call either returns the decoded success payload or raises a
    ``RemoteJobError`` carrying a transport-level classification. There is no
    retry here; callers own the retry policy.
    """

    def __init__(self, config: RemoteJobConfig, *, session: aiohttp.ClientSession) -> None:
        self._config = config
        self._session = session

    @property
    def config(self) -> RemoteJobConfig:
        return self._config

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._config.origin:
            headers["Origin"] = self._config.origin
        return headers

    async def submit(self, endpoint: str, payload: dict[str, Any], *, timeout_seconds: float) -> dict[str, Any]:
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        url = f"{self._config.base_url}{endpoint}"

        # The total timeout is the request's cancellation signal: it fires at
        # exactly timeout_seconds regardless of which phase the request is in.
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)

        try:
            async with self._session.post(url, json=payload, headers=self._headers(), timeout=timeout) as resp:
                status = resp.status
                body = await resp.read()
        except asyncio.TimeoutError as exc:
            logger.warning("Job request timed out after %.1fs (endpoint=%s)", timeout_seconds, endpoint)
            raise RemoteJobError(
                TransportFailure.TIMEOUT, f"Request timed out after {timeout_seconds:g}s"
            ) from exc
        except aiohttp.ClientError as exc:
            logger.warning("Job request failed at transport level (endpoint=%s): %s", endpoint, exc)
            raise RemoteJobError(TransportFailure.TRANSIENT_NETWORK, "Network request failed") from exc

        return self._classify(endpoint=endpoint, status=status, body=body)

    @staticmethod
    def _decode(body: bytes) -> Any:
        if not body:
            return None
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None

    @staticmethod
    def _structured_error(parsed: Any) -> Optional[tuple[str, str]]:
        if not isinstance(parsed, dict):
            return None

        # {"error": {"code": "...", "message": "..."}}
        nested = parsed.get("error")
        if isinstance(nested, dict) and (nested.get("code") or nested.get("message")):
            return (str(nested.get("code") or "UNKNOWN"), str(nested.get("message") or ""))

        # {"errorCode": "...", "message": "..."}
        code = parsed.get("errorCode") or parsed.get("error_code") or parsed.get("code")
        if code:
            return (str(code), str(parsed.get("message") or ""))

        # {"error": "..."} with no code
        if isinstance(nested, str) and nested:
            return ("UNKNOWN", nested)
        return None

    def _classify(self, *, endpoint: str, status: int, body: bytes) -> dict[str, Any]:
        parsed = self._decode(body)

        if HTTPStatus.OK <= status < HTTPStatus.MULTIPLE_CHOICES:
            if isinstance(parsed, dict):
                return parsed
            raise RemoteJobError(
                TransportFailure.SERVER_REJECTED,
                "Job service returned a non-JSON success body",
                code="INVALID_RESPONSE",
                status=status,
            )

        structured = self._structured_error(parsed)
        if structured is not None:
            code, message = structured
            logger.info("Job service rejected request (endpoint=%s code=%s status=%d)", endpoint, code, status)
            raise RemoteJobError(TransportFailure.SERVER_REJECTED, message or code, code=code, status=status)

        if status == HTTPStatus.FORBIDDEN:
            # Rejected by the origin gate in front of the service, not by the service itself.
            raise RemoteJobError(
                TransportFailure.CROSS_ORIGIN_DENIED, "Request origin was not allowed", status=status
            )

        if status >= HTTPStatus.INTERNAL_SERVER_ERROR:
            raise RemoteJobError(
                TransportFailure.TRANSIENT_NETWORK, f"Job service unavailable (HTTP {status})", status=status
            )

        raise RemoteJobError(
            TransportFailure.SERVER_REJECTED,
            f"Job service rejected request (HTTP {status})",
            code=f"HTTP_{status}",
            status=status,
        )
