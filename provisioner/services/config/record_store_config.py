from __future__ import annotations

import os
from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class RecordStoreConfig:
    """Connection settings for the Supabase (PostgREST) record store."""

    url: str
    api_key: str
    _DEFAULT_TIMEOUT_SECONDS: ClassVar[float] = 15.0
    _PLACEHOLDER_URL: ClassVar[str] = "https://your-project-id.supabase.co"
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS
    accounts_table: str = "users"
    bundles_table: str = "bundlers"
    tokens_table: str = "tokens"

    @property
    def rest_url(self) -> str:
        return f"{self.url}/rest/v1"

    @staticmethod
    def from_env() -> "RecordStoreConfig":
        url = os.getenv("SUPABASE_URL")
        if not url:
            raise ValueError("Missing required environment variable: SUPABASE_URL")
        if url.rstrip("/") == RecordStoreConfig._PLACEHOLDER_URL:
            raise ValueError("SUPABASE_URL still holds the placeholder project URL")

        api_key = os.getenv("SUPABASE_ANON_KEY")
        if not api_key:
            raise ValueError("Missing required environment variable: SUPABASE_ANON_KEY")

        timeout_raw = os.getenv("SUPABASE_TIMEOUT_SECONDS")
        timeout_seconds = RecordStoreConfig._DEFAULT_TIMEOUT_SECONDS
        if timeout_raw:
            try:
                timeout_seconds = float(timeout_raw)
            except ValueError as exc:
                raise ValueError("Invalid SUPABASE_TIMEOUT_SECONDS; must be a number") from exc

        return RecordStoreConfig(url=url.rstrip("/"), api_key=api_key, timeout_seconds=timeout_seconds)
