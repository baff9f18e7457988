"""Tests for diff normalization rules engine."""

from __future__ import annotations

from pathlib import Path

import pytest

from deployflow.diff_normalizer import (
    DEFAULT_NORMALIZATION_RULES,
    DiffNormalizer,
    NormalizationConfig,
    NormalizationError,
    NormalizationRule,
    NormalizationType,
    load_rules_file,
    path_matches,
    rule_from_dict,
)


class TestPathMatches:
    """Tests for dotted path glob matching."""

    @pytest.mark.parametrize(
        ("path", "pattern", "expected"),
        [
            ("location", "location", True),
            ("properties.enabled", "**.enabled", True),
            ("enabled", "**.enabled", True),
            ("properties.features.logging.enabled", "**.enabled", True),
            ("properties.name", "**.enabled", False),
            ("properties.sku.name", "*.sku.name", True),
            ("a.properties.sku.name", "*.sku.name", False),
            ("systemData.createdBy", "systemData.**", True),
            ("properties.EnableDdosProtection", "**.enable*", True),
            ("Properties.ProvisioningState", "**.provisioningState", True),
        ],
    )
    def test_patterns(self, path: str, pattern: str, expected: bool) -> None:
        """Test segment globbing is case-insensitive."""
        assert path_matches(path, pattern) is expected


class TestNormalizationRule:
    """Tests for NormalizationRule matching."""

    def test_matches_any_kind(self) -> None:
        """Test wildcard kind matching."""
        rule = NormalizationRule(
            kind="*",
            path_pattern="tags",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )
        assert rule.matches("Network", "tags") is True
        assert rule.matches("Dns", "tags") is True

    def test_matches_exact_kind(self) -> None:
        """Test a rule scoped to one kind."""
        rule = NormalizationRule(
            kind="Network",
            path_pattern="properties.enableDdosProtection",
            normalization_type=NormalizationType.DEFAULT_VALUE,
            params={"default": False},
        )
        assert rule.matches("Network", "properties.enableDdosProtection") is True
        assert rule.matches("network", "properties.enableDdosProtection") is True
        assert rule.matches("Subnet", "properties.enableDdosProtection") is False


class TestDiffNormalizer:
    """Tests for DiffNormalizer."""

    @pytest.fixture
    def normalizer(self) -> DiffNormalizer:
        """Create a normalizer with default rules."""
        return DiffNormalizer(enable_default_rules=True)

    def test_default_rules_loaded(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.rules == tuple(DEFAULT_NORMALIZATION_RULES)

    def test_no_default_rules(self) -> None:
        assert DiffNormalizer(enable_default_rules=False).rules == ()

    @pytest.mark.parametrize(
        "path",
        [
            "id",
            "etag",
            "properties.provisioningState",
            "properties.resourceGuid",
            "systemData.createdAt",
            "properties.timeCreated",
            "properties.lastModifiedTime",
        ],
    )
    def test_provider_assigned_fields_ignored(self, normalizer: DiffNormalizer, path: str) -> None:
        """Test computed fields are excluded from comparison."""
        assert normalizer.ignore_reason("Network", path) is not None

    def test_timeouts_are_not_ignored(self, normalizer: DiffNormalizer) -> None:
        """Test configuration fields that merely contain 'Time' are still compared."""
        assert normalizer.ignore_reason("Endpoint", "properties.idleTimeoutInMinutes") is None

    def test_empty_equivalence(self, normalizer: DiffNormalizer) -> None:
        """Test {} and missing tags are equivalent."""
        equivalent, reason = normalizer.are_equivalent({}, None, "ResourceGroup", "tags")
        assert equivalent is True
        assert reason

    def test_boolean_string(self, normalizer: DiffNormalizer) -> None:
        """Test "true" and True are equivalent for enable flags."""
        assert normalizer.normalize_value("true", "Network", "properties.enabled") is True
        assert normalizer.normalize_value("Disabled", "Network", "properties.enabled") is False
        equivalent, _ = normalizer.are_equivalent(
            "True", True, "Credential", "properties.enableRbacAuthorization"
        )
        assert equivalent is True

    def test_case_insensitive_location(self, normalizer: DiffNormalizer) -> None:
        equivalent, _ = normalizer.are_equivalent("WestEurope", "westeurope", "Network", "location")
        assert equivalent is True

    def test_case_matters_elsewhere(self, normalizer: DiffNormalizer) -> None:
        """Test values without a case rule keep case sensitivity."""
        equivalent, _ = normalizer.are_equivalent(
            "Standard", "standard", "Network", "properties.someMode"
        )
        assert equivalent is False

    def test_provider_default(self, normalizer: DiffNormalizer) -> None:
        """Test a declared value equal to the provider default matches a missing one."""
        equivalent, _ = normalizer.are_equivalent(
            False, None, "Network", "properties.enableDdosProtection"
        )
        assert equivalent is True

        equivalent, _ = normalizer.are_equivalent(
            "TLS1_2", None, "ComputeOrStorage", "properties.minimumTlsVersion"
        )
        assert equivalent is True

    def test_unordered_address_prefixes(self, normalizer: DiffNormalizer) -> None:
        equivalent, _ = normalizer.are_equivalent(
            ["10.0.0.0/16", "10.1.0.0/16"],
            ["10.1.0.0/16", "10.0.0.0/16"],
            "Network",
            "properties.addressSpace.addressPrefixes",
        )
        assert equivalent is True

    def test_equal_values_have_no_reason(self, normalizer: DiffNormalizer) -> None:
        """Test identical values are not counted as normalized."""
        assert normalizer.are_equivalent("a", "a", "Dns", "properties.ttl") == (True, None)

    def test_different_values(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent(3600, 300, "Dns", "properties.ttl") == (False, None)

    def test_custom_rule(self) -> None:
        """Test custom rules extend the defaults."""
        normalizer = DiffNormalizer(
            rules=[
                NormalizationRule(
                    kind="Dns",
                    path_pattern="properties.ttl",
                    normalization_type=NormalizationType.NUMERIC_STRING,
                    reason="TTL may be returned as a string",
                )
            ]
        )
        assert normalizer.are_equivalent(3600, "3600", "Dns", "properties.ttl") == (
            True,
            "TTL may be returned as a string",
        )

    @pytest.mark.parametrize(
        ("normalization_type", "desired", "observed"),
        [
            (NormalizationType.URL_NORMALIZE, "HTTPS://example.com/", "https://example.com"),
            (NormalizationType.WHITESPACE_NORMALIZE, "a  b\r\n c ", "a b\nc"),
            (NormalizationType.NUMERIC_STRING, "1.5", 1.5),
        ],
    )
    def test_other_normalizations(
        self, normalization_type: NormalizationType, desired: object, observed: object
    ) -> None:
        normalizer = DiffNormalizer(
            rules=[NormalizationRule("*", "properties.value", normalization_type)],
            enable_default_rules=False,
        )
        equivalent, _ = normalizer.are_equivalent(desired, observed, "Link", "properties.value")
        assert equivalent is True


class TestRuleLoading:
    """Tests for custom rule loading."""

    def test_rule_from_dict(self) -> None:
        rule = rule_from_dict(
            {"kind": "Endpoint", "path": "properties.customDnsConfigs", "type": "ignore"}
        )
        assert rule.kind == "Endpoint"
        assert rule.normalization_type == NormalizationType.IGNORE
        assert rule.params == {}

    def test_rule_from_dict_default(self) -> None:
        rule = rule_from_dict({"path": "properties.x", "type": "default_value", "default": 0})
        assert rule.kind == "*"
        assert rule.params == {"default": 0}

    def test_rule_from_dict_unknown_type(self) -> None:
        with pytest.raises(NormalizationError, match="Unknown normalization type"):
            rule_from_dict({"path": "x", "type": "fuzzy"})

    def test_rule_from_dict_missing_path(self) -> None:
        with pytest.raises(NormalizationError, match="missing 'path'"):
            rule_from_dict({"type": "ignore"})

    def test_load_rules_file(self, tmp_path: Path) -> None:
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text(
            "rules:\n"
            "  - kind: Endpoint\n"
            "    path: properties.customDnsConfigs\n"
            "    type: ignore\n"
            "    reason: Populated after creation\n"
        )
        rules = load_rules_file(rules_file)
        assert len(rules) == 1
        assert rules[0].reason == "Populated after creation"

    def test_load_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(NormalizationError, match="not found"):
            load_rules_file(tmp_path / "missing.yaml")

    def test_load_invalid_rules(self, tmp_path: Path) -> None:
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text("rules: not-a-list\n")
        with pytest.raises(NormalizationError, match="must be a list"):
            load_rules_file(rules_file)


class TestNormalizationConfig:
    """Tests for NormalizationConfig."""

    def test_from_env_defaults(self) -> None:
        config = NormalizationConfig.from_env()
        assert config.enable_default_rules is True
        assert config.log_normalizations is True
        assert config.rules == []

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text("rules:\n  - path: properties.x\n    type: ignore\n")
        monkeypatch.setenv("ENABLE_DEFAULT_NORMALIZATION_RULES", "false")
        monkeypatch.setenv("LOG_NORMALIZATIONS", "false")
        monkeypatch.setenv("NORMALIZATION_RULES_FILE", str(rules_file))

        config = NormalizationConfig.from_env()
        normalizer = config.build()

        assert config.log_normalizations is False
        assert len(normalizer.rules) == 1
        assert normalizer.ignore_reason("Dns", "properties.x") is not None
