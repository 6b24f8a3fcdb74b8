"""Shared pytest fixtures for provisioner tests."""

import pytest
import pytest_asyncio

from provisioner.services.config import ProvisioningConfig
from provisioner.services.session import ProvisioningSession
from tests.fakes import FakeJobClient, FakeStore, UIRecorder


@pytest.fixture
def config():
    """Workflow config with intervals short enough for tests."""
    return ProvisioningConfig(
        secondary_poll_floor_seconds=0.01,
        bundle_poll_interval_seconds=0.01,
        bundle_poll_deadline_seconds=2.0,
        per_unit_estimate_seconds=150.0,
        transient_retries=2,
        transient_backoff_seconds=0.0,
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def jobs():
    return FakeJobClient()


@pytest.fixture
def ui():
    return UIRecorder()


@pytest.fixture
def make_session(jobs, store, config, ui):
    """Factory for a ProvisioningSession wired to the fakes."""

    def _make(identity_key: str = "wallet-X", **overrides) -> ProvisioningSession:
        return ProvisioningSession(
            identity_key,
            job_client=jobs,
            store=store,
            config=overrides.get("config", config),
            callbacks=ui.callbacks(),
        )

    return _make


@pytest_asyncio.fixture
async def session(make_session):
    """An unopened session for wallet-X, torn down after the test."""
    s = make_session()
    yield s
    await s.close()
