"""Configuration management with validation.

Safety limits are enforced at configuration load time so a run starts in
a safe mode by default: deletion gated, Unknown state blocking, strictly
sequential apply, bounded retries and bounded waits.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from .graph import ConvergencePolicy, ResourceKind


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


class CredentialMode(str, Enum):
    """How the Azure provider obtains a token credential."""

    MANAGED_IDENTITY = "managed_identity"
    CLI = "cli"
    DEFAULT = "default"


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 1
MAX_CONCURRENCY_LIMIT = 16

DEFAULT_MAX_NODES_PER_RUN = 100
MAX_NODES_PER_RUN_LIMIT = 800  # ARM limit per deployment

MAX_APPLY_RETRIES = 3
MAX_APPLY_RETRIES_LIMIT = 10
RETRY_BACKOFF_BASE_SECONDS = 5.0

DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS = 300.0
DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS = 1800

DEFAULT_API_VERSION = "2023-09-01"

# Convergence defaults: private DNS visibility after endpoint creation,
# RBAC propagation after role assignment, resource group deletion.
DEFAULT_CONVERGENCE = ConvergencePolicy(timeout_seconds=300, interval_seconds=10)
DNS_CONVERGENCE = ConvergencePolicy(timeout_seconds=150, interval_seconds=15)
RBAC_CONVERGENCE = ConvergencePolicy(timeout_seconds=120, interval_seconds=10)
DELETION_CONVERGENCE = ConvergencePolicy(timeout_seconds=300, interval_seconds=10)

DEFAULT_KIND_CONVERGENCE: Mapping[ResourceKind, ConvergencePolicy] = MappingProxyType(
    {
        ResourceKind.DNS: DNS_CONVERGENCE,
        ResourceKind.ENDPOINT: DNS_CONVERGENCE,
        ResourceKind.ROLE_BINDING: RBAC_CONVERGENCE,
        ResourceKind.IDENTITY: RBAC_CONVERGENCE,
    }
)

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_API_VERSION_PATTERN = r"^\d{4}-\d{2}-\d{2}(-preview)?$"


def _env_suffix(kind: ResourceKind) -> str:
    """ResourceKind.ROLE_BINDING -> "ROLE_BINDING"."""
    return kind.name


def get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def get_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be a number: {value}") from e


def get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class WorkflowConfig:
    """Orchestration settings.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Behavior
    auto_approve: bool = False
    block_on_unknown: bool = True
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    # Safety limits
    max_nodes_per_run: int = DEFAULT_MAX_NODES_PER_RUN
    max_apply_retries: int = MAX_APPLY_RETRIES
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    provider_call_timeout_seconds: float = DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS

    # Convergence
    default_convergence: ConvergencePolicy = DEFAULT_CONVERGENCE
    deletion_convergence: ConvergencePolicy = DELETION_CONVERGENCE
    kind_convergence: Mapping[ResourceKind, ConvergencePolicy] = field(
        default_factory=lambda: DEFAULT_KIND_CONVERGENCE
    )

    # Teardown token supplied by automation
    confirm_token: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (1 <= self.max_concurrency <= MAX_CONCURRENCY_LIMIT):
            errors.append(f"MAX_CONCURRENCY must be between 1 and {MAX_CONCURRENCY_LIMIT}")

        if not (1 <= self.max_nodes_per_run <= MAX_NODES_PER_RUN_LIMIT):
            errors.append(f"MAX_NODES_PER_RUN must be between 1 and {MAX_NODES_PER_RUN_LIMIT}")

        if not (0 <= self.max_apply_retries <= MAX_APPLY_RETRIES_LIMIT):
            errors.append(f"MAX_APPLY_RETRIES must be between 0 and {MAX_APPLY_RETRIES_LIMIT}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if self.provider_call_timeout_seconds <= 0:
            errors.append("PROVIDER_CALL_TIMEOUT must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

        object.__setattr__(self, "kind_convergence", MappingProxyType(dict(self.kind_convergence)))

    def convergence_for(self, kind: ResourceKind) -> ConvergencePolicy:
        """Per-kind default poll policy for applied resources."""
        return self.kind_convergence.get(kind, self.default_convergence)

    @classmethod
    def from_env(cls) -> WorkflowConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AUTO_APPROVE: Skip the confirmation prompt (default: false)
            BLOCK_ON_UNKNOWN: Abort when current state cannot be read (default: true)
            MAX_CONCURRENCY: Sibling resources applied at once (default: 1)
            MAX_NODES_PER_RUN: Maximum resources per run (default: 100)
            MAX_APPLY_RETRIES: Retries for transient apply errors (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: Base for exponential backoff (default: 5)
            PROVIDER_CALL_TIMEOUT: Seconds per provider call (default: 300)
            TEARDOWN_CONFIRM_TOKEN: Pre-supplied teardown token

        Convergence Variables:
            CONVERGENCE_TIMEOUT / CONVERGENCE_INTERVAL: Fallback poll policy
            DELETION_TIMEOUT / DELETION_INTERVAL: Absence polling after delete
            CONVERGENCE_TIMEOUT_<KIND> / CONVERGENCE_INTERVAL_<KIND>: Per-kind
                override, e.g. CONVERGENCE_TIMEOUT_ROLE_BINDING=300
        """
        try:
            default_convergence = ConvergencePolicy(
                timeout_seconds=get_float(
                    "CONVERGENCE_TIMEOUT", DEFAULT_CONVERGENCE.timeout_seconds
                ),
                interval_seconds=get_float(
                    "CONVERGENCE_INTERVAL", DEFAULT_CONVERGENCE.interval_seconds
                ),
            )
            deletion_convergence = ConvergencePolicy(
                timeout_seconds=get_float("DELETION_TIMEOUT", DELETION_CONVERGENCE.timeout_seconds),
                interval_seconds=get_float(
                    "DELETION_INTERVAL", DELETION_CONVERGENCE.interval_seconds
                ),
            )
            kind_convergence: dict[ResourceKind, ConvergencePolicy] = {}
            for kind in ResourceKind:
                base = DEFAULT_KIND_CONVERGENCE.get(kind)
                timeout_key = f"CONVERGENCE_TIMEOUT_{_env_suffix(kind)}"
                interval_key = f"CONVERGENCE_INTERVAL_{_env_suffix(kind)}"
                if base is None and timeout_key not in os.environ and interval_key not in os.environ:
                    continue
                base = base or default_convergence
                kind_convergence[kind] = ConvergencePolicy(
                    timeout_seconds=get_float(timeout_key, base.timeout_seconds),
                    interval_seconds=get_float(interval_key, base.interval_seconds),
                )
        except ValueError as e:
            raise ConfigurationError(f"Invalid convergence policy: {e}") from e

        return cls(
            auto_approve=get_bool("AUTO_APPROVE", False),
            block_on_unknown=get_bool("BLOCK_ON_UNKNOWN", True),
            max_concurrency=get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            max_nodes_per_run=get_int("MAX_NODES_PER_RUN", DEFAULT_MAX_NODES_PER_RUN),
            max_apply_retries=get_int("MAX_APPLY_RETRIES", MAX_APPLY_RETRIES),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            provider_call_timeout_seconds=get_float(
                "PROVIDER_CALL_TIMEOUT", DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS
            ),
            default_convergence=default_convergence,
            deletion_convergence=deletion_convergence,
            kind_convergence=kind_convergence,
            confirm_token=os.environ.get("TEARDOWN_CONFIRM_TOKEN") or None,
        )


@dataclass(frozen=True)
class AzureConfig:
    """Azure provider settings."""

    subscription_id: str
    credential_mode: CredentialMode = CredentialMode.MANAGED_IDENTITY
    default_api_version: str = DEFAULT_API_VERSION
    deployment_timeout_seconds: int = DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: Inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not re.match(VALID_API_VERSION_PATTERN, self.default_api_version):
            errors.append(
                f"AZURE_API_VERSION must look like YYYY-MM-DD: {self.default_api_version}"
            )

        if self.deployment_timeout_seconds < 1:
            errors.append("DEPLOYMENT_TIMEOUT must be at least 1 second")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(
        cls,
        subscription_id: str | None = None,
        credential_mode: str | None = None,
    ) -> AzureConfig:
        """Load configuration from environment variables.

        Explicit arguments (from CLI flags) take precedence.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_CREDENTIAL_MODE: managed_identity, cli or default
                (default: managed_identity)
            AZURE_API_VERSION: Default ARM API version for resources
            DEPLOYMENT_TIMEOUT: Timeout for long-running operations in seconds
        """
        mode_value = credential_mode or os.environ.get("AZURE_CREDENTIAL_MODE") or (
            CredentialMode.MANAGED_IDENTITY.value
        )
        try:
            mode = CredentialMode(mode_value)
        except ValueError as e:
            valid = [m.value for m in CredentialMode]
            raise ConfigurationError(
                f"AZURE_CREDENTIAL_MODE must be one of {valid}: {mode_value}"
            ) from e

        return cls(
            subscription_id=subscription_id or os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            credential_mode=mode,
            default_api_version=os.environ.get("AZURE_API_VERSION", DEFAULT_API_VERSION),
            deployment_timeout_seconds=get_int(
                "DEPLOYMENT_TIMEOUT", DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
            ),
        )
