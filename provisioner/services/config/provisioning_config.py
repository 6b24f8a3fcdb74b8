from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}; must be a number") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}; must be an integer") from exc


def _env_codes(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(code.strip() for code in raw.split(",") if code.strip())


@dataclass(frozen=True)
class ProvisioningConfig:
    """Workflow tuning: polling cadence, timeout scaling and retry policy.

    This is service wiring/runtime configuration, not an API schema.
    """

    # Secondary accounts take one to two minutes; polling faster than this
    # only hammers the store.
    secondary_poll_floor_seconds: float = 20.0
    bundle_poll_interval_seconds: float = 10.0
    bundle_poll_deadline_seconds: float = 240.0
    # Each allocated unit is one sequential sub-step on the job service.
    per_unit_estimate_seconds: float = 150.0
    transient_retries: int = 2
    transient_backoff_seconds: float = 1.0
    not_ready_codes: tuple[str, ...] = ("DEV_WALLET_NOT_READY", "SECONDARY_NOT_READY")
    already_provisioned_codes: tuple[str, ...] = ("ALREADY_EXISTS", "WALLET_ALREADY_EXISTS")
    min_secondary_balance_major: Decimal = Decimal("0.1")
    notifications_stream_enabled: bool = False

    @staticmethod
    def from_env() -> "ProvisioningConfig":
        defaults = ProvisioningConfig()

        min_balance_raw = os.getenv("PROVISIONING_MIN_SECONDARY_BALANCE")
        min_balance = defaults.min_secondary_balance_major
        if min_balance_raw:
            try:
                min_balance = Decimal(min_balance_raw)
            except InvalidOperation as exc:
                raise ValueError("Invalid PROVISIONING_MIN_SECONDARY_BALANCE; must be a number") from exc

        return ProvisioningConfig(
            secondary_poll_floor_seconds=_env_float(
                "PROVISIONING_SECONDARY_POLL_FLOOR_SECONDS", defaults.secondary_poll_floor_seconds
            ),
            bundle_poll_interval_seconds=_env_float(
                "PROVISIONING_BUNDLE_POLL_INTERVAL_SECONDS", defaults.bundle_poll_interval_seconds
            ),
            bundle_poll_deadline_seconds=_env_float(
                "PROVISIONING_BUNDLE_POLL_DEADLINE_SECONDS", defaults.bundle_poll_deadline_seconds
            ),
            per_unit_estimate_seconds=_env_float(
                "PROVISIONING_PER_UNIT_ESTIMATE_SECONDS", defaults.per_unit_estimate_seconds
            ),
            transient_retries=_env_int("PROVISIONING_TRANSIENT_RETRIES", defaults.transient_retries),
            transient_backoff_seconds=_env_float(
                "PROVISIONING_TRANSIENT_BACKOFF_SECONDS", defaults.transient_backoff_seconds
            ),
            not_ready_codes=_env_codes("PROVISIONING_NOT_READY_CODES", defaults.not_ready_codes),
            already_provisioned_codes=_env_codes(
                "PROVISIONING_ALREADY_PROVISIONED_CODES", defaults.already_provisioned_codes
            ),
            min_secondary_balance_major=min_balance,
            notifications_stream_enabled=os.getenv("PROVISIONING_NOTIFICATIONS_STREAM", "false").lower()
            in ("1", "true", "yes"),
        )
