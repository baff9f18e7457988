"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import FakeClock  # noqa: E402

# Variables read by config loaders; cleared so the host environment never leaks in
CONFIG_ENV_VARS = (
    "AUTO_APPROVE",
    "BLOCK_ON_UNKNOWN",
    "MAX_CONCURRENCY",
    "MAX_NODES_PER_RUN",
    "MAX_APPLY_RETRIES",
    "RETRY_BACKOFF_BASE_SECONDS",
    "PROVIDER_CALL_TIMEOUT",
    "CONVERGENCE_TIMEOUT",
    "CONVERGENCE_INTERVAL",
    "DELETION_TIMEOUT",
    "DELETION_INTERVAL",
    "TEARDOWN_CONFIRM_TOKEN",
    "AZURE_SUBSCRIPTION_ID",
    "AZURE_CREDENTIAL_MODE",
    "AZURE_API_VERSION",
    "AZURE_CLIENT_ID",
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
    "DEPLOYMENT_TIMEOUT",
    "ENABLE_DEFAULT_NORMALIZATION_RULES",
    "LOG_NORMALIZATIONS",
    "NORMALIZATION_RULES_FILE",
    "ADDITIONAL_HIGH_RISK_KINDS",
    "EXCLUDED_RISK_KINDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove configuration variables from the environment."""
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith(("CONVERGENCE_TIMEOUT_", "CONVERGENCE_INTERVAL_")):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
