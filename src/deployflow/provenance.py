"""Run provenance tracking for audit and compliance.

Every plan, deploy, verify and teardown run emits one structured record
that answers:
- "What changed, and when?"
- "Which spec (content hash) and which commit drove the change?"
- "Which version of the tool was running?"

The record goes to the structured logger, so it lands wherever the JSON
log stream is shipped.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
DEPLOYFLOW_VERSION = os.environ.get("DEPLOYFLOW_VERSION", "dev")


def hash_file(path: Path) -> str:
    """SHA-256 of a file's content, empty string if unreadable."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


@dataclass
class RunProvenance:
    """Complete provenance record for a single run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Tool identity
    command: str = ""
    version: str = DEPLOYFLOW_VERSION

    # Git source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""

    # Input
    spec_name: str = ""
    spec_file_hash: str = ""
    subscription_id: str = ""

    # Outcome
    state: str = ""
    status: str = ""
    applied: int = 0
    failed: int = 0
    deleted: int = 0
    not_attempted: int = 0
    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def record_result(self, result: Any) -> None:
        """Copy counts and outcome from a DeploymentResult or TeardownResult."""
        self.state = result.state.value
        self.status = result.report.status.value
        self.applied = len(getattr(result, "applied", ()))
        self.failed = len(result.failed)
        self.deleted = len(getattr(result, "deleted", ()))
        self.not_attempted = len(result.not_attempted)
        if result.error is not None:
            self.error = str(result.error)
            self.error_type = type(result.error).__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Creates and logs provenance records."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._git_repo = os.environ.get("GIT_REPO", "")

    def create_provenance(
        self,
        command: str,
        *,
        spec_name: str = "",
        spec_path: Path | None = None,
        subscription_id: str = "",
    ) -> RunProvenance:
        return RunProvenance(
            command=command,
            version=DEPLOYFLOW_VERSION,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            spec_name=spec_name,
            spec_file_hash=hash_file(spec_path) if spec_path else "",
            subscription_id=subscription_id,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        The flattened fields allow queries like "every teardown of spec X"
        or "which commit caused this failed deploy".
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.status == "fail":
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                "command": provenance.command,
                "spec_name": provenance.spec_name,
                "state": provenance.state,
                "applied": provenance.applied,
                "failed": provenance.failed,
                "git_commit": provenance.git_commit_sha,
                "deployflow_version": provenance.version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
