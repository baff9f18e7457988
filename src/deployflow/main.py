"""Run orchestration for the deployflow CLI.

Wires configuration, credentials, the Azure provider and the workflows
together for one command (plan, deploy, verify, teardown) and maps
failures to exit codes:

- 0: report passed (possibly with warnings)
- 1: report failed, configuration or spec error, unexpected error
- 2: security violation (credential secrets in the environment or
     secrets embedded in the spec)

SECRETLESS ARCHITECTURE:
Credentials come from security.get_credential only. The environment and
the spec file are checked before any Azure SDK client is built.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import signal
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .approval import ConfirmationGate
from .azure_provider import AzureResourceProvider
from .config import AzureConfig, ConfigurationError, WorkflowConfig
from .diff_engine import DiffEngine
from .diff_normalizer import (
    DiffNormalizer,
    NormalizationConfig,
    NormalizationError,
    NormalizationRule,
)
from .graph import ResourceGraph
from .provenance import get_provenance_logger
from .provider import Provider
from .security import SecretlessViolationError, enforce_no_embedded_secrets, get_credential
from .spec_loader import SpecLoadError, load_spec
from .teardown import TeardownResult, TeardownWorkflow
from .workflow import DeploymentResult, DeploymentWorkflow

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_SECURITY_VIOLATION = 2

ProviderFactory = Callable[[ResourceGraph, AzureConfig], Provider]
RunResult = DeploymentResult | TeardownResult

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

_log_handler: logging.Handler | None = None


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: str = "json", level: int = logging.INFO) -> None:
    """Configure logging to stderr; stdout carries the report.

    Args:
        log_format: "json" for structured output, "text" for humans.
        level: Root log level.
    """
    global _log_handler

    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    if _log_handler is not None:
        root_logger.removeHandler(_log_handler)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    _log_handler = handler

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class Command(str, Enum):
    """CLI commands."""

    PLAN = "plan"
    DEPLOY = "deploy"
    VERIFY = "verify"
    TEARDOWN = "teardown"


@dataclass(frozen=True)
class RunOptions:
    """Inputs of one command, as given on the command line.

    Unset values fall back to environment configuration.
    """

    command: Command
    spec_path: Path
    subscription_id: str | None = None
    credential_mode: str | None = None
    auto_approve: bool = False
    prune: tuple[str, ...] = field(default_factory=tuple)
    allow_delete: bool = False
    max_concurrency: int | None = None
    confirm_token: str | None = None
    purge: bool = False


def azure_provider_factory(graph: ResourceGraph, azure_config: AzureConfig) -> Provider:
    """Build the ARM provider with a secretless credential."""
    credential = get_credential(azure_config.credential_mode, os.environ.get("AZURE_CLIENT_ID"))
    return AzureResourceProvider.for_graph(graph, azure_config, credential)


def build_workflow_config(options: RunOptions) -> WorkflowConfig:
    """Environment configuration with command-line overrides applied.

    Raises:
        ConfigurationError: If the combined configuration is invalid.
    """
    config = WorkflowConfig.from_env()
    overrides: dict[str, object] = {}
    if options.auto_approve:
        overrides["auto_approve"] = True
    if options.max_concurrency is not None:
        overrides["max_concurrency"] = options.max_concurrency
    if options.confirm_token is not None:
        overrides["confirm_token"] = options.confirm_token
    # replace() re-runs validation
    return dataclasses.replace(config, **overrides) if overrides else config


def build_diff_engine(
    spec_rules: list[NormalizationRule], normalization: NormalizationConfig, config: WorkflowConfig
) -> DiffEngine:
    """Diff engine with spec-declared rules ahead of environment rules."""
    normalizer = DiffNormalizer(
        rules=[*spec_rules, *normalization.rules],
        enable_default_rules=normalization.enable_default_rules,
    )
    return DiffEngine(
        normalizer,
        observe_timeout_seconds=config.provider_call_timeout_seconds,
        log_normalizations=normalization.log_normalizations,
    )


async def execute(
    options: RunOptions,
    *,
    provider_factory: ProviderFactory | None = None,
    gate: ConfirmationGate | None = None,
    cancel_event: asyncio.Event | None = None,
) -> RunResult:
    """Run one command to completion.

    Raises:
        SecretlessViolationError: If secrets are found.
        ConfigurationError: If configuration is invalid.
        SpecLoadError: If the spec cannot be loaded.
        NormalizationError: If a normalization rules file is invalid.
    """
    started = time.monotonic()
    enforce_no_embedded_secrets(options.spec_path)

    workflow_config = build_workflow_config(options)
    spec = load_spec(options.spec_path)
    graph = spec.to_graph()
    azure_config = AzureConfig.from_env(options.subscription_id, options.credential_mode)
    normalization = NormalizationConfig.from_env()

    provenance_logger = get_provenance_logger()
    provenance = provenance_logger.create_provenance(
        options.command.value,
        spec_name=spec.name,
        spec_path=options.spec_path,
        subscription_id=azure_config.subscription_id,
    )

    factory = provider_factory or azure_provider_factory
    provider = factory(graph, azure_config)

    logger.info(
        "Running command",
        extra={
            "command": options.command.value,
            "spec_name": spec.name,
            "resources": len(graph),
            "subscription_id": azure_config.subscription_id,
        },
    )

    result: RunResult
    if options.command == Command.TEARDOWN:
        teardown = TeardownWorkflow(provider, config=workflow_config, gate=gate)
        result = await teardown.run(graph, cancel_event=cancel_event, purge=options.purge)
    else:
        workflow = DeploymentWorkflow(
            provider,
            config=workflow_config,
            gate=gate,
            diff_engine=build_diff_engine(
                spec.normalization_rules(), normalization, workflow_config
            ),
        )
        prune = [*spec.prune, *options.prune]
        match options.command:
            case Command.PLAN:
                result = await workflow.plan(
                    graph,
                    preconditions=spec.to_preconditions(provider),
                    prune=prune,
                    allow_delete=options.allow_delete,
                )
            case Command.VERIFY:
                result = await workflow.verify(graph, prune=prune)
            case _:
                result = await workflow.run(
                    graph,
                    preconditions=spec.to_preconditions(provider),
                    prune=prune,
                    allow_delete=options.allow_delete,
                    cancel_event=cancel_event,
                )

    provenance.record_result(result)
    provenance.duration_seconds = round(time.monotonic() - started, 3)
    provenance_logger.log_provenance(provenance)
    return result


async def _execute_with_signals(
    options: RunOptions,
    provider_factory: ProviderFactory | None,
    gate: ConfirmationGate | None,
) -> RunResult:
    """Execute with SIGINT/SIGTERM mapped to cooperative cancellation."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.warning("Received signal, cancelling at next safe point", extra={"signal": sig.name})
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or unsupported platform
            logger.debug("Signal handler not installed", extra={"signal": sig.name})

    try:
        return await execute(
            options, provider_factory=provider_factory, gate=gate, cancel_event=cancel_event
        )
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@dataclass
class RunOutcome:
    """Exit code plus either the run result or the reason it never started."""

    exit_code: int
    result: RunResult | None = None
    error: str | None = None


def run(
    options: RunOptions,
    *,
    provider_factory: ProviderFactory | None = None,
    gate: ConfirmationGate | None = None,
) -> RunOutcome:
    """Run a command and map its outcome to an exit code."""
    try:
        result = asyncio.run(_execute_with_signals(options, provider_factory, gate))
    except SecretlessViolationError as e:
        # SECURITY: fatal, never proceed
        logger.critical("Security violation", extra={"error": str(e)})
        return RunOutcome(EXIT_SECURITY_VIOLATION, error=str(e))
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return RunOutcome(EXIT_ERROR, error=str(e))
    except SpecLoadError as e:
        logger.error(
            "Spec loading failed", extra={"error": str(e), "spec_path": str(options.spec_path)}
        )
        return RunOutcome(EXIT_ERROR, error=str(e))
    except NormalizationError as e:
        logger.error("Invalid normalization rules", extra={"error": str(e)})
        return RunOutcome(EXIT_ERROR, error=str(e))
    except Exception as e:
        logger.exception("Run failed unexpectedly", extra={"error": str(e)})
        return RunOutcome(EXIT_ERROR, error=f"{type(e).__name__}: {e}")
    return RunOutcome(result.exit_code, result=result)
