from __future__ import annotations

import os
from dataclasses import dataclass
from typing import ClassVar, Optional


@dataclass(frozen=True)
class RemoteJobConfig:
    """Runtime configuration for the remote job (orchestrator) service.

    `base_url` should include the scheme, e.g. "https://orchestrator.example.com".
    """

    base_url: str
    _DEFAULT_TIMEOUT_SECONDS: ClassVar[float] = 30.0
    _DEFAULT_LONG_TIMEOUT_SECONDS: ClassVar[float] = 120.0
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS
    long_timeout_seconds: float = _DEFAULT_LONG_TIMEOUT_SECONDS
    origin: Optional[str] = None
    notifications_path: str = "/api/notifications/stream"

    @staticmethod
    def _float_from_env(name: str, default: float) -> float:
        raw = os.getenv(name)
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid {name}; must be a number") from exc

    @staticmethod
    def from_env() -> "RemoteJobConfig":
        base_url = os.getenv("ORCHESTRATOR_BASE_URL")
        if not base_url:
            raise ValueError("Missing required environment variable: ORCHESTRATOR_BASE_URL")

        return RemoteJobConfig(
            base_url=base_url.rstrip("/"),
            timeout_seconds=RemoteJobConfig._float_from_env(
                "ORCHESTRATOR_TIMEOUT_SECONDS", RemoteJobConfig._DEFAULT_TIMEOUT_SECONDS
            ),
            long_timeout_seconds=RemoteJobConfig._float_from_env(
                "ORCHESTRATOR_LONG_TIMEOUT_SECONDS", RemoteJobConfig._DEFAULT_LONG_TIMEOUT_SECONDS
            ),
            origin=os.getenv("ORCHESTRATOR_ORIGIN") or None,
        )
