"""Diff normalization rules for drift detection.

Providers report values that differ syntactically from the declared spec
while meaning the same thing. Without normalization every redeploy would
show spurious Modify results and the post-apply idempotency assertion
would fail.

COMMON FALSE POSITIVES HANDLED:
1. Empty array [] vs null vs missing property
2. String "true" vs boolean true, "100" vs 100
3. Default values the provider fills in
4. Case differences in enums and locations ("Enabled" vs "enabled")
5. Trailing slashes in URLs, whitespace in multi-line strings
6. Array ordering for unordered collections (address prefixes, DNS servers)
7. Provider-assigned fields (timestamps, etags, provisioning state) which
   are IGNORED outright and never count as drift

Rules match on resource kind (glob) and dotted field path, where "*"
matches one path segment and "**" matches any number of segments.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

MAX_RULES_FILE_SIZE_BYTES = 256 * 1024


class NormalizationError(Exception):
    """Raised when normalization rules configuration is invalid."""

    pass


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Provider-assigned value: never compared
    IGNORE = "ignore"

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    CASE_INSENSITIVE = "case_insensitive"

    # Trailing slashes, scheme case
    URL_NORMALIZE = "url_normalize"

    WHITESPACE_NORMALIZE = "whitespace_normalize"

    ARRAY_UNORDERED = "array_unordered"

    # Missing value equals a known provider default
    DEFAULT_VALUE = "default_value"


def path_matches(path: str, pattern: str) -> bool:
    """Match a dotted path against a segment glob pattern."""
    return _match_parts(path.lower().split("."), pattern.lower().split("."))


def _match_parts(path_parts: list[str], pattern_parts: list[str]) -> bool:
    if not pattern_parts:
        return not path_parts
    if pattern_parts[0] == "**":
        if len(pattern_parts) == 1:
            return True
        return any(
            _match_parts(path_parts[i:], pattern_parts[1:]) for i in range(len(path_parts) + 1)
        )
    if not path_parts:
        return False
    if pattern_parts[0] == "*" or fnmatch.fnmatchcase(path_parts[0], pattern_parts[0]):
        return _match_parts(path_parts[1:], pattern_parts[1:])
    return False


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match (glob, "*" for all).
        path_pattern: Dotted field path pattern.
        normalization_type: Normalization to apply.
        params: Extra parameters (e.g. {"default": False}).
        reason: Human-readable explanation for audit logs.
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        if self.kind != "*" and not fnmatch.fnmatchcase(kind.lower(), self.kind.lower()):
            return False
        return path_matches(path, self.path_pattern)


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    # Provider-assigned fields
    NormalizationRule(
        kind="*",
        path_pattern="id",
        normalization_type=NormalizationType.IGNORE,
        reason="Resource IDs are assigned by the provider",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.provisioningState",
        normalization_type=NormalizationType.IGNORE,
        reason="Provisioning state is reported by the provider",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.etag",
        normalization_type=NormalizationType.IGNORE,
        reason="ETags change on every write",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.resourceGuid",
        normalization_type=NormalizationType.IGNORE,
        reason="Resource GUIDs are assigned by the provider",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="systemData.**",
        normalization_type=NormalizationType.IGNORE,
        reason="System metadata (creation and modification timestamps)",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.*Timestamp",
        normalization_type=NormalizationType.IGNORE,
        reason="Timestamps are assigned by the provider",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.timeCreated",
        normalization_type=NormalizationType.IGNORE,
        reason="Creation timestamps are assigned by the provider",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.changedTime",
        normalization_type=NormalizationType.IGNORE,
        reason="Modification timestamps are assigned by the provider",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.created*",
        normalization_type=NormalizationType.IGNORE,
        reason="Creation timestamps are assigned by the provider",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.lastModified*",
        normalization_type=NormalizationType.IGNORE,
        reason="Modification timestamps are assigned by the provider",
    ),
    # Empty equivalence
    NormalizationRule(
        kind="*",
        path_pattern="tags",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty tags object equals null/missing",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.dnsServers",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty DNS servers equals provider DNS",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.ipConfigurations",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty IP configurations equals null",
    ),
    # Booleans
    NormalizationRule(
        kind="*",
        path_pattern="**.enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean flags may be string or bool",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.enable*",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean feature toggles may be string or bool",
    ),
    # Case
    NormalizationRule(
        kind="*",
        path_pattern="location",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Locations are reported in lowercase",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.sku.name",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.sku.tier",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU tiers may have case variations",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.publicNetworkAccess",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Public network access enum case varies",
    ),
    # Defaults
    NormalizationRule(
        kind="Network",
        path_pattern="properties.enableDdosProtection",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": False},
        reason="DDoS protection defaults to false",
    ),
    NormalizationRule(
        kind="ComputeOrStorage",
        path_pattern="properties.minimumTlsVersion",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "TLS1_2"},
        reason="Minimum TLS defaults to 1.2",
    ),
    # Unordered collections
    NormalizationRule(
        kind="*",
        path_pattern="**.addressPrefixes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Address prefix order doesn't matter",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.dnsServers",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="DNS server order is not significant",
    ),
]


class DiffNormalizer:
    """Normalizes desired/observed values to detect semantic equivalence."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    @property
    def rules(self) -> tuple[NormalizationRule, ...]:
        return tuple(self._rules)

    def ignore_reason(self, kind: str, path: str) -> str | None:
        """Return the reason a path is ignored, or None if it is compared."""
        for rule in self._rules:
            if rule.normalization_type == NormalizationType.IGNORE and rule.matches(kind, path):
                return rule.reason or "Provider-assigned field"
        return None

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Apply every matching (non-ignore) rule in order."""
        normalized = value
        for rule in self._rules:
            if rule.normalization_type != NormalizationType.IGNORE and rule.matches(kind, path):
                normalized = self._apply(normalized, rule)
        return normalized

    def are_equivalent(
        self,
        desired: Any,
        observed: Any,
        kind: str,
        path: str,
    ) -> tuple[bool, str | None]:
        """Check whether two values are semantically equivalent.

        Returns:
            Tuple of (are_equivalent, reason_if_normalized). The reason is
            None when the values were equal without normalization.
        """
        if desired == observed:
            return True, None
        if self.normalize_value(desired, kind, path) == self.normalize_value(observed, kind, path):
            return True, self._reason(kind, path)
        return False, None

    def _reason(self, kind: str, path: str) -> str:
        for rule in self._rules:
            if rule.matches(kind, path):
                return rule.reason or f"Normalized via {rule.normalization_type.value}"
        return "Values are semantically equivalent after normalization"

    def _apply(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return _normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return _normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return _normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.URL_NORMALIZE:
                return _normalize_url(value)
            case NormalizationType.WHITESPACE_NORMALIZE:
                return _normalize_whitespace(value)
            case NormalizationType.ARRAY_UNORDERED:
                return _normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return rule.params.get("default") if value is None else value
            case _:
                return value


def _normalize_empty(value: Any) -> Any:
    if isinstance(value, str | list | tuple | dict) and len(value) == 0:
        return None
    return value


def _normalize_boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.lower()
        if lowered in ("true", "yes", "1", "on", "enabled"):
            return True
        if lowered in ("false", "no", "0", "off", "disabled"):
            return False
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    return value


def _normalize_numeric_string(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return value
    return value


def _normalize_url(value: Any) -> Any:
    if isinstance(value, str) and "://" in value:
        scheme, rest = value.split("://", 1)
        return f"{scheme.lower()}://{rest}".rstrip("/")
    return value


def _normalize_whitespace(value: Any) -> Any:
    if isinstance(value, str):
        lines = value.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        return "\n".join(" ".join(line.split()) for line in lines).strip()
    return value


def _normalize_array_order(value: Any) -> Any:
    if isinstance(value, list | tuple):
        return tuple(sorted(value, key=lambda item: repr(item)))
    return value


def rule_from_dict(data: dict[str, Any]) -> NormalizationRule:
    """Build a rule from a mapping (YAML or spec file).

    Raises:
        NormalizationError: If the mapping is invalid.
    """
    try:
        normalization_type = NormalizationType(data["type"])
    except KeyError as e:
        raise NormalizationError(f"Normalization rule missing 'type': {data}") from e
    except ValueError as e:
        valid = [t.value for t in NormalizationType]
        raise NormalizationError(
            f"Unknown normalization type '{data['type']}', expected one of {valid}"
        ) from e

    path = data.get("path")
    if not path or not isinstance(path, str):
        raise NormalizationError(f"Normalization rule missing 'path': {data}")

    params = {"default": data["default"]} if "default" in data else {}
    return NormalizationRule(
        kind=str(data.get("kind", "*")),
        path_pattern=path,
        normalization_type=normalization_type,
        params=params,
        reason=str(data.get("reason", "")),
    )


def load_rules_file(path: Path) -> list[NormalizationRule]:
    """Load custom normalization rules from a YAML file.

    Format:
        rules:
          - kind: Endpoint
            path: properties.customDnsConfigs
            type: ignore
            reason: Populated by the provider after creation

    Raises:
        NormalizationError: If the file is missing, too large or invalid.
    """
    if not path.exists():
        raise NormalizationError(f"Normalization rules file not found: {path}")
    if path.stat().st_size > MAX_RULES_FILE_SIZE_BYTES:
        raise NormalizationError(
            f"Normalization rules file exceeds {MAX_RULES_FILE_SIZE_BYTES} bytes: {path}"
        )
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise NormalizationError(f"Invalid YAML in {path}: {e}") from e

    raw_rules = data.get("rules", []) if isinstance(data, dict) else None
    if not isinstance(raw_rules, list):
        raise NormalizationError(f"'rules' must be a list in {path}")
    return [rule_from_dict(item) for item in raw_rules]


@dataclass
class NormalizationConfig:
    """Configuration for diff normalization."""

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True
    log_normalizations: bool = True

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Load configuration from environment.

        Environment Variables:
            ENABLE_DEFAULT_NORMALIZATION_RULES: If "false", disable defaults
            LOG_NORMALIZATIONS: If "false", don't log normalizations
            NORMALIZATION_RULES_FILE: Optional YAML file with custom rules
        """
        rules_file = os.environ.get("NORMALIZATION_RULES_FILE")
        rules = load_rules_file(Path(rules_file)) if rules_file else []
        return cls(
            rules=rules,
            enable_default_rules=os.environ.get(
                "ENABLE_DEFAULT_NORMALIZATION_RULES", "true"
            ).lower() in ("true", "1", "yes"),
            log_normalizations=os.environ.get("LOG_NORMALIZATIONS", "true").lower()
            in ("true", "1", "yes"),
        )

    def build(self) -> DiffNormalizer:
        return DiffNormalizer(rules=self.rules, enable_default_rules=self.enable_default_rules)
