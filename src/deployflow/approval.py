"""Risk assessment and confirmation gates.

This module decides how dangerous a planned change is and whether a
human has agreed to it:
1. Risk level per planned change (high/medium/low) from resource kind
   and change type
2. Confirmation gates consulted between preview and apply

DESIGN PHILOSOPHY:
- Gates are pure decision points. They never call the provider.
- Destructive runs need a typed token, not a y/n keystroke
- Automation passes approval explicitly (auto-approve or the token), it
  is never inferred from a missing terminal
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import click

from .diff_engine import ChangeType, DiffResult
from .graph import ResourceKind
from .report import ValidationReport

logger = logging.getLogger(__name__)

TEARDOWN_TOKEN = "DELETE"


class RiskLevel(str, Enum):
    """Risk level of a planned change.

    LOW: Routine change. Safe to auto-apply.
    MEDIUM: Review recommended.
    HIGH: Security-sensitive or destructive.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Identity, access and secret material
HIGH_RISK_KINDS: frozenset[ResourceKind] = frozenset(
    {
        ResourceKind.ROLE_BINDING,
        ResourceKind.IDENTITY,
        ResourceKind.CREDENTIAL,
    }
)

# Shared infrastructure other resources attach to
MEDIUM_RISK_KINDS: frozenset[ResourceKind] = frozenset(
    {
        ResourceKind.RESOURCE_GROUP,
        ResourceKind.NETWORK,
        ResourceKind.SUBNET,
        ResourceKind.LINK,
        ResourceKind.DNS,
    }
)


@dataclass(frozen=True)
class ChangeRiskAssessment:
    """Risk assessment for a single planned change."""

    key: str
    kind: ResourceKind | None
    change_type: ChangeType
    risk: RiskLevel
    reasons: tuple[str, ...] = ()

    def describe(self) -> str:
        text = f"risk={self.risk.value}"
        if self.reasons:
            text += f" ({'; '.join(self.reasons)})"
        return text


@dataclass
class DeploymentRiskAssessment:
    """Aggregated risk assessment for a run."""

    changes: list[ChangeRiskAssessment] = field(default_factory=list)

    @property
    def overall(self) -> RiskLevel:
        levels = {change.risk for change in self.changes}
        if RiskLevel.HIGH in levels:
            return RiskLevel.HIGH
        if RiskLevel.MEDIUM in levels:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def count(self, level: RiskLevel) -> int:
        return sum(1 for change in self.changes if change.risk == level)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "overall": self.overall.value,
            "high": self.count(RiskLevel.HIGH),
            "medium": self.count(RiskLevel.MEDIUM),
            "low": self.count(RiskLevel.LOW),
            "high_risk_keys": [
                change.key for change in self.changes if change.risk == RiskLevel.HIGH
            ][:10],  # Cap for logging
        }


@dataclass(frozen=True)
class RiskConfig:
    """Configuration for risk assessment."""

    additional_high_risk_kinds: frozenset[ResourceKind] = field(default_factory=frozenset)
    excluded_risk_kinds: frozenset[ResourceKind] = field(default_factory=frozenset)

    @classmethod
    def from_env(cls) -> RiskConfig:
        """Load risk configuration from environment.

        Environment Variables:
            ADDITIONAL_HIGH_RISK_KINDS: Comma-separated resource kinds
            EXCLUDED_RISK_KINDS: Comma-separated kinds treated as low risk

        Unknown kind names are logged and skipped.
        """

        def get_kinds(key: str) -> frozenset[ResourceKind]:
            kinds: set[ResourceKind] = set()
            for item in os.environ.get(key, "").split(","):
                name = item.strip()
                if not name:
                    continue
                try:
                    kinds.add(ResourceKind(name))
                except ValueError:
                    logger.warning(
                        "Ignoring unknown resource kind",
                        extra={"variable": key, "kind": name},
                    )
            return frozenset(kinds)

        return cls(
            additional_high_risk_kinds=get_kinds("ADDITIONAL_HIGH_RISK_KINDS"),
            excluded_risk_kinds=get_kinds("EXCLUDED_RISK_KINDS"),
        )


class RiskAssessor:
    """Classifies planned changes by risk."""

    def __init__(self, config: RiskConfig | None = None) -> None:
        self._config = config or RiskConfig()
        self._high_risk_kinds = (
            HIGH_RISK_KINDS | self._config.additional_high_risk_kinds
        ) - self._config.excluded_risk_kinds
        self._medium_risk_kinds = MEDIUM_RISK_KINDS - self._config.excluded_risk_kinds

    def assess(self, result: DiffResult) -> ChangeRiskAssessment:
        """Assess a single diff result."""
        reasons: list[str] = []
        risk = RiskLevel.LOW

        if result.change_type == ChangeType.NO_CHANGE:
            return ChangeRiskAssessment(result.key, result.kind, result.change_type, risk)

        if result.kind in self._high_risk_kinds:
            risk = RiskLevel.HIGH
            reasons.append(f"security-sensitive kind {result.kind.value}")
        elif result.kind in self._medium_risk_kinds:
            risk = RiskLevel.MEDIUM
            reasons.append(f"shared infrastructure kind {result.kind.value}")

        match result.change_type:
            case ChangeType.DELETE:
                risk = RiskLevel.HIGH
                reasons.append("deletion")
            case ChangeType.UNKNOWN:
                if risk == RiskLevel.LOW:
                    risk = RiskLevel.MEDIUM
                reasons.append("current state unknown")

        return ChangeRiskAssessment(
            key=result.key,
            kind=result.kind,
            change_type=result.change_type,
            risk=risk,
            reasons=tuple(reasons),
        )

    def assess_all(self, results: list[DiffResult]) -> DeploymentRiskAssessment:
        """Assess every result of a diff."""
        assessment = DeploymentRiskAssessment(changes=[self.assess(r) for r in results])
        logger.info("Risk assessment", extra=assessment.to_dict())
        return assessment


@runtime_checkable
class ConfirmationGate(Protocol):
    """Decides whether a previewed run may proceed."""

    def confirm(self, report: ValidationReport) -> bool:
        ...


class AutoApproveGate:
    """Approves every run. For automation that has reviewed the plan elsewhere."""

    def confirm(self, report: ValidationReport) -> bool:
        logger.info("Auto-approved", extra={"report_status": report.status.value})
        return True


def echo_plan(report: ValidationReport) -> None:
    """Print the entries recorded so far to stderr, before asking for confirmation."""
    click.echo(f"Planned {report.title}:", err=True)
    for entry in report.entries:
        click.echo(f"  [{entry.severity.value}] {entry.subject}: {entry.message}", err=True)


class InteractiveGate:
    """Shows the plan and asks a yes/no question. Default answer is no."""

    def __init__(
        self,
        prompt: str = "Proceed with these changes?",
        confirm_fn: Callable[..., bool] = click.confirm,
    ) -> None:
        self._prompt = prompt
        self._confirm_fn = confirm_fn

    def confirm(self, report: ValidationReport) -> bool:
        echo_plan(report)
        try:
            approved = bool(self._confirm_fn(self._prompt, default=False, err=True))
        except click.Abort:
            approved = False
        logger.info("Interactive confirmation", extra={"approved": approved})
        return approved


class TokenGate:
    """Requires an exact, case-sensitive token.

    The token comes from a source callable, so the same gate serves both
    a terminal prompt and a pre-supplied value for automation.
    """

    def __init__(
        self,
        token_source: Callable[[], str | None],
        expected: str = TEARDOWN_TOKEN,
        *,
        show_plan: bool = False,
    ) -> None:
        if not expected:
            raise ValueError("expected token cannot be empty")
        self._token_source = token_source
        self._expected = expected
        self._show_plan = show_plan

    @classmethod
    def from_value(cls, token: str | None, expected: str = TEARDOWN_TOKEN) -> TokenGate:
        """Gate over a token supplied up front (flag or environment)."""
        return cls(lambda: token, expected)

    @classmethod
    def prompt(cls, expected: str = TEARDOWN_TOKEN) -> TokenGate:
        """Gate that shows the plan and asks for the token on the terminal."""

        def ask() -> str | None:
            try:
                return click.prompt(
                    f"Type {expected} to confirm", default="", show_default=False, err=True
                )
            except click.Abort:
                return None

        return cls(ask, expected, show_plan=True)

    def confirm(self, report: ValidationReport) -> bool:
        if self._show_plan:
            echo_plan(report)
        supplied = self._token_source()
        approved = supplied == self._expected
        if not approved:
            logger.warning("Confirmation token mismatch, nothing will be changed")
        return approved
