"""Pydantic models for deployment spec files with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to a ResourceGraph and workflow inputs
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .diff_normalizer import NormalizationRule, NormalizationType
from .graph import ConvergencePolicy, ResourceGraph, ResourceKind, ResourceNode
from .provider import ABSENT, Provider
from .workflow import Precondition

MAX_RESOURCES_PER_SPEC = 800
VALID_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,62}[a-z0-9]$"


class ConvergenceSpec(BaseModel):
    """Per-resource poll policy override."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    timeout_seconds: float = Field(alias="timeoutSeconds", gt=0, le=3600)
    interval_seconds: float = Field(alias="intervalSeconds", ge=0, le=600)

    def to_policy(self) -> ConvergencePolicy:
        return ConvergencePolicy(
            timeout_seconds=self.timeout_seconds,
            interval_seconds=self.interval_seconds,
        )


class ResourceSpec(BaseModel):
    """A declared resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    key: Annotated[str, Field(min_length=1, max_length=1024)]
    kind: ResourceKind
    spec: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    asynchronous: bool = False
    convergence: ConvergenceSpec | None = None

    # Adapter hints, never diffed
    # Example:
    #   metadata:
    #     apiVersion: "2023-11-01"
    #     dnsName: kv-prod.vault.azure.net
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        duplicates = sorted({key for key in v if v.count(key) > 1})
        if duplicates:
            raise ValueError(f"duplicate dependencies: {duplicates}")
        return v

    @model_validator(mode="after")
    def validate_no_self_dependency(self) -> ResourceSpec:
        if self.key in self.depends_on:
            raise ValueError(f"resource '{self.key}' cannot depend on itself")
        return self

    def to_node(self) -> ResourceNode:
        return ResourceNode(
            key=self.key,
            kind=self.kind,
            spec=self.spec,
            depends_on=tuple(self.depends_on),
            asynchronous=self.asynchronous,
            convergence=self.convergence.to_policy() if self.convergence else None,
            metadata=self.metadata,
        )


class NormalizationRuleSpec(BaseModel):
    """A custom normalization rule declared in the spec file."""

    model_config = {"extra": "ignore"}

    kind: str = "*"
    path: Annotated[str, Field(min_length=1)]
    type: NormalizationType
    default: Any = None
    reason: str = ""

    def to_rule(self) -> NormalizationRule:
        params = {"default": self.default} if "default" in self.model_fields_set else {}
        return NormalizationRule(
            kind=self.kind,
            path_pattern=self.path,
            normalization_type=self.type,
            params=params,
            reason=self.reason,
        )


class PreconditionRequirement(str, Enum):
    """What a precondition requires of a resource."""

    EXISTS = "exists"
    ABSENT = "absent"


class PreconditionSpec(BaseModel):
    """A live-state check that must hold before anything is changed.

    Typical use: the resource group, virtual network and subnet a
    deployment attaches to already exist, or a globally unique name is
    still free.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    key: Annotated[str, Field(min_length=1)]
    requires: PreconditionRequirement = PreconditionRequirement.EXISTS
    warn_only: bool = Field(False, alias="warnOnly")

    def to_precondition(self, provider: Provider) -> Precondition:
        key = self.key
        want_present = self.requires == PreconditionRequirement.EXISTS

        def check() -> bool:
            return (provider.observe(key) is not ABSENT) == want_present

        return Precondition(
            name=self.name,
            check=check,
            warn_only=self.warn_only,
            description=f"'{key}' {'exists' if want_present else 'is absent'}",
        )


class DeploymentSpec(BaseModel):
    """A deployment spec file.

    Resources may be listed in any order. Cycles are reported when the
    graph is ordered, not at load time.
    """

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(pattern=VALID_NAME_PATTERN)]
    resources: Annotated[list[ResourceSpec], Field(max_length=MAX_RESOURCES_PER_SPEC)]
    prune: list[str] = Field(default_factory=list)
    preconditions: list[PreconditionSpec] = Field(default_factory=list)
    normalization: list[NormalizationRuleSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_references(self) -> DeploymentSpec:
        keys = [resource.key for resource in self.resources]
        duplicates = sorted({key for key in keys if keys.count(key) > 1})
        if duplicates:
            raise ValueError(f"duplicate resource keys: {duplicates}")

        declared = set(keys)
        for resource in self.resources:
            unknown = [dep for dep in resource.depends_on if dep not in declared]
            if unknown:
                raise ValueError(f"resource '{resource.key}' depends on undeclared {unknown}")

        pruned_declared = [key for key in self.prune if key in declared]
        if pruned_declared:
            raise ValueError(f"prune lists declared resources: {pruned_declared}")
        return self

    def to_graph(self) -> ResourceGraph:
        """Build the resource graph (order independent)."""
        return ResourceGraph.from_nodes(
            (resource.to_node() for resource in self.resources), strict=False
        )

    def normalization_rules(self) -> list[NormalizationRule]:
        return [rule.to_rule() for rule in self.normalization]

    def to_preconditions(self, provider: Provider) -> list[Precondition]:
        return [precondition.to_precondition(provider) for precondition in self.preconditions]
