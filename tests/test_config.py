from decimal import Decimal

import pytest

from provisioner.services.config import ProvisioningConfig, RecordStoreConfig, RemoteJobConfig


class TestRemoteJobConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("ORCHESTRATOR_BASE_URL", "https://jobs.example.com/")
        monkeypatch.setenv("ORCHESTRATOR_TIMEOUT_SECONDS", "45")
        monkeypatch.setenv("ORCHESTRATOR_ORIGIN", "https://app.example.com")

        config = RemoteJobConfig.from_env()

        assert config.base_url == "https://jobs.example.com"
        assert config.timeout_seconds == 45.0
        assert config.long_timeout_seconds == 120.0
        assert config.origin == "https://app.example.com"

    def test_missing_base_url(self, monkeypatch):
        monkeypatch.delenv("ORCHESTRATOR_BASE_URL", raising=False)
        with pytest.raises(ValueError, match="ORCHESTRATOR_BASE_URL"):
            RemoteJobConfig.from_env()

    def test_invalid_timeout(self, monkeypatch):
        monkeypatch.setenv("ORCHESTRATOR_BASE_URL", "https://jobs.example.com")
        monkeypatch.setenv("ORCHESTRATOR_TIMEOUT_SECONDS", "soon")
        with pytest.raises(ValueError, match="ORCHESTRATOR_TIMEOUT_SECONDS"):
            RemoteJobConfig.from_env()


class TestRecordStoreConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://abc.supabase.co/")
        monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
        monkeypatch.delenv("SUPABASE_TIMEOUT_SECONDS", raising=False)

        config = RecordStoreConfig.from_env()

        assert config.rest_url == "https://abc.supabase.co/rest/v1"
        assert config.timeout_seconds == 15.0

    def test_placeholder_url_rejected(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://your-project-id.supabase.co")
        monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
        with pytest.raises(ValueError, match="placeholder"):
            RecordStoreConfig.from_env()

    def test_missing_key(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://abc.supabase.co")
        monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)
        with pytest.raises(ValueError, match="SUPABASE_ANON_KEY"):
            RecordStoreConfig.from_env()


class TestProvisioningConfig:
    def test_defaults(self, monkeypatch):
        for name in (
            "PROVISIONING_SECONDARY_POLL_FLOOR_SECONDS",
            "PROVISIONING_PER_UNIT_ESTIMATE_SECONDS",
            "PROVISIONING_MIN_SECONDARY_BALANCE",
            "PROVISIONING_NOT_READY_CODES",
            "PROVISIONING_NOTIFICATIONS_STREAM",
        ):
            monkeypatch.delenv(name, raising=False)

        config = ProvisioningConfig.from_env()

        assert config.secondary_poll_floor_seconds == 20.0
        assert config.per_unit_estimate_seconds == 150.0
        assert config.min_secondary_balance_major == Decimal("0.1")
        assert "DEV_WALLET_NOT_READY" in config.not_ready_codes
        assert config.notifications_stream_enabled is False

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("PROVISIONING_SECONDARY_POLL_FLOOR_SECONDS", "5")
        monkeypatch.setenv("PROVISIONING_MIN_SECONDARY_BALANCE", "0.25")
        monkeypatch.setenv("PROVISIONING_NOT_READY_CODES", "A, B,")
        monkeypatch.setenv("PROVISIONING_NOTIFICATIONS_STREAM", "true")

        config = ProvisioningConfig.from_env()

        assert config.secondary_poll_floor_seconds == 5.0
        assert config.min_secondary_balance_major == Decimal("0.25")
        assert config.not_ready_codes == ("A", "B")
        assert config.notifications_stream_enabled is True

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("PROVISIONING_TRANSIENT_RETRIES", "two")
        with pytest.raises(ValueError, match="PROVISIONING_TRANSIENT_RETRIES"):
            ProvisioningConfig.from_env()
