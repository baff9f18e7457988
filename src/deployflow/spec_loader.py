"""Spec file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

Spec files may reference environment variables as ${NAME} inside string
values (resource keys usually embed the subscription ID). An undefined
variable is a load error, never an empty string.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import DeploymentSpec

logger = logging.getLogger(__name__)

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file

_VARIABLE_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def substitute_variables(value: Any, env: Mapping[str, str]) -> Any:
    """Replace ${NAME} references in every string of a parsed YAML tree.

    Raises:
        SpecLoadError: If a referenced variable is not defined.
    """
    if isinstance(value, str):

        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in env:
                raise SpecLoadError(f"Undefined variable ${{{name}}} in spec")
            return env[name]

        return _VARIABLE_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {key: substitute_variables(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_variables(item, env) for item in value]
    return value


def load_spec(spec_path: Path, env: Mapping[str, str] | None = None) -> DeploymentSpec:
    """Load and validate a deployment spec from YAML.

    Args:
        spec_path: Path to the spec file.
        env: Variables for ${NAME} substitution. Defaults to os.environ.

    Returns:
        Validated spec instance.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    spec = parse_spec(content, source=str(spec_path), env=env)
    logger.info(
        "Loaded spec '%s' from %s",
        spec.name,
        spec_path,
        extra={"resources": len(spec.resources), "prune": len(spec.prune)},
    )
    return spec


def parse_spec(
    content: str,
    *,
    source: str = "<string>",
    env: Mapping[str, str] | None = None,
) -> DeploymentSpec:
    """Parse and validate spec YAML text.

    Raises:
        SpecLoadError: If the YAML is invalid or fails validation.
    """
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {source}")

    # Support both flat format and Kubernetes-style wrapper
    # If the file has apiVersion/kind/spec, extract the spec section
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        # The wrapper's metadata.name names the deployment when spec omits it
        metadata = raw_data.get("metadata")
        if "name" not in spec_data and isinstance(metadata, dict) and "name" in metadata:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    spec_data = substitute_variables(spec_data, os.environ if env is None else env)

    try:
        return DeploymentSpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e
