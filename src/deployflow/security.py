"""Security enforcement for secretless deployments.

This module enforces the secretless security model where:
- Credentials are token based (managed identity, Azure CLI login, or the
  default chain without client secrets)
- NO service principal secrets are allowed in the environment
- NO secrets are embedded in spec files

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET (and friends) must never be present in the environment
2. Spec files must not contain connection strings, keys or passwords
3. All authentication flows through Entra ID tokens
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, DefaultAzureCredential, ManagedIdentityCredential

from .config import CredentialMode

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

# Patterns of secret material that must never appear in a spec file
SECRET_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("storage connection string", re.compile(r"DefaultEndpointsProtocol=https;AccountName=", re.I)),
    ("storage account key", re.compile(r"AccountKey=[A-Za-z0-9+/=]{88}")),
    ("shared access signature", re.compile(r"SharedAccessSignature=sv=[0-9]{4}", re.I)),
    ("api key", re.compile(r"api[_-]?key\s*[:=]\s*['\"][A-Za-z0-9]{32,}['\"]", re.I)),
    ("password", re.compile(r"(password|passwd|pwd)\s*[:=]\s*['\"][^'\"]{8,}['\"]", re.I)),
    ("database connection string", re.compile(r"Server=[^;]+;Database=[^;]+;User Id=[^;]+;Password=", re.I)),
    ("credentials in URL", re.compile(r"(mongodb|postgres)://[^:\s]+:[^@\s]+@", re.I)),
    ("private key", re.compile(r"BEGIN (RSA |OPENSSH )?PRIVATE KEY")),
    ("AWS access key", re.compile(r"AKIA[0-9A-Z]{16}")),
    ("secret", re.compile(r"secret\s*[:=]\s*['\"][A-Za-z0-9+/=]{20,}['\"]", re.I)),
    ("token", re.compile(r"token\s*[:=]\s*['\"][A-Za-z0-9._-]{20,}['\"]", re.I)),
)

SECRETLESS_VIOLATION_MESSAGE = (
    "SECURITY VIOLATION: {detail}. Deployments are secretless: authenticate with a "
    "managed identity or an Azure CLI login and reference secrets from a key vault "
    "instead of embedding them."
)


class SecretlessViolationError(Exception):
    """Raised when the secretless model is violated.

    This is a fatal security error. The run MUST NOT proceed.
    """

    pass


@dataclass(frozen=True)
class SecretFinding:
    """A suspected secret in a scanned file."""

    source: str
    line: int
    pattern: str


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    This MUST be called before any Azure SDK usage.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(
                SECRETLESS_VIOLATION_MESSAGE.format(detail=f"{env_var} is set")
            )

    logger.info("Secretless environment verified", extra={"security_event": "secretless_verified"})


def scan_for_secrets(content: str, source: str = "<string>") -> list[SecretFinding]:
    """Find lines that look like embedded secrets."""
    findings: list[SecretFinding] = []
    for line_number, line in enumerate(content.splitlines(), start=1):
        for name, pattern in SECRET_PATTERNS:
            if pattern.search(line):
                findings.append(SecretFinding(source=source, line=line_number, pattern=name))
                break
    return findings


def enforce_no_embedded_secrets(spec_path: Path) -> None:
    """Refuse spec files that embed secrets.

    Raises:
        SecretlessViolationError: If a suspected secret is found.
    """
    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError:
        # Unreadable files are reported by the spec loader
        return

    findings = scan_for_secrets(content, str(spec_path))
    if findings:
        for finding in findings:
            logger.critical(
                "Embedded secret detected",
                extra={
                    "security_event": "secret_in_spec",
                    "source": finding.source,
                    "line": finding.line,
                    "pattern": finding.pattern,
                },
            )
        first = findings[0]
        raise SecretlessViolationError(
            SECRETLESS_VIOLATION_MESSAGE.format(
                detail=f"{first.pattern} found in {first.source} line {first.line}"
            )
        )


def get_credential(mode: CredentialMode, client_id: str | None = None) -> TokenCredential:
    """Get a token credential after verifying the secretless model.

    This is the ONLY way to obtain credentials in this codebase.

    Args:
        mode: Credential source.
        client_id: Optional client ID of a user-assigned managed identity.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    match mode:
        case CredentialMode.MANAGED_IDENTITY:
            if client_id:
                logger.info(
                    "Using user-assigned managed identity",
                    extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
                )
                return ManagedIdentityCredential(client_id=client_id)
            logger.info("Using system-assigned managed identity")
            return ManagedIdentityCredential()
        case CredentialMode.CLI:
            logger.info("Using Azure CLI credential")
            return AzureCliCredential()
        case _:
            logger.info("Using default credential chain")
            return DefaultAzureCredential(
                managed_identity_client_id=client_id,
                exclude_interactive_browser_credential=True,
            )
