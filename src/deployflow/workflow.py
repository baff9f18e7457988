"""Deployment workflow.

A deployment run is a state machine:

    Validating -> Previewing -> AwaitingConfirmation -> Applying
        -> Converging -> PostValidating -> Done

with Aborted reachable from every non-terminal state. Applying and
Converging alternate: every asynchronous resource is polled to readiness
before any later resource is started, so a dependent is never applied
while its dependency is still propagating.

DESIGN PHILOSOPHY:
- Nothing is mutated before validation and preview pass
- Deletion happens only for keys the caller names in `prune`, and only
  with `allow_delete`
- Failures never raise to the caller. The run ends Aborted, the error is
  recorded on the result and a Fail entry names the resource key
- No automatic rollback. Applied resources stay in place and a rerun
  converges them (apply is idempotent)

SECURITY:
- Every provider call and every wait is bounded by a timeout
- Node count per run is capped (MAX_NODES_PER_RUN)
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .approval import (
    AutoApproveGate,
    ConfirmationGate,
    InteractiveGate,
    RiskAssessor,
)
from .config import WorkflowConfig
from .diff_engine import ChangeType, DiffEngine, DiffResult
from .errors import (
    ApplyFailed,
    Cancelled,
    ConvergenceTimedOut,
    PostValidationFailed,
    PreconditionFailed,
    WorkflowError,
    describe,
)
from .graph import CycleDetectedError, ResourceGraph, ResourceNode
from .poller import (
    ConvergencePoller,
    PollCancelledError,
    PollFatalError,
    PollTimedOutError,
)
from .provider import ABSENT, Provider, ProviderError
from .report import ValidationReport

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Jitter is a fraction of the backoff delay, added on top
RETRY_JITTER_FRACTION = 0.25


class WorkflowState(str, Enum):
    """States of a workflow run."""

    VALIDATING = "Validating"
    PREVIEWING = "Previewing"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    APPLYING = "Applying"
    CONVERGING = "Converging"
    POST_VALIDATING = "PostValidating"
    DONE = "Done"
    ABORTED = "Aborted"


TERMINAL_STATES = frozenset({WorkflowState.DONE, WorkflowState.ABORTED})


@dataclass(frozen=True)
class Precondition:
    """A side-effect-free check run before anything is changed.

    Attributes:
        name: Subject of the report entry.
        check: Returns True if the precondition holds. Raising counts as a
            failure.
        warn_only: Record a Warn instead of a Fail when the check is False.
        description: Message recorded when the check passes.
    """

    name: str
    check: Callable[[], bool]
    warn_only: bool = False
    description: str = ""


@dataclass
class DeploymentResult:
    """Outcome of a deployment run."""

    state: WorkflowState
    report: ValidationReport
    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    not_attempted: list[str] = field(default_factory=list)
    converged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    diff: list[DiffResult] = field(default_factory=list)
    error: WorkflowError | None = None
    history: list[WorkflowState] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return self.report.exit_code

    @property
    def success(self) -> bool:
        return self.state == WorkflowState.DONE and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "state": self.state.value,
            "success": self.success,
            "exit_code": self.exit_code,
            "applied": self.applied,
            "failed": self.failed,
            "not_attempted": self.not_attempted,
            "converged": self.converged,
            "deleted": self.deleted,
            "error": describe(self.error) if self.error else None,
            "history": [state.value for state in self.history],
            "diff": [result.to_dict() for result in self.diff],
            "report": self.report.to_dict(),
        }


class RunContext:
    """Mutable state of one run: report, state history, cancellation."""

    def __init__(self, title: str, cancel_event: asyncio.Event | None) -> None:
        self.report = ValidationReport(title=title)
        self.history: list[WorkflowState] = []
        self.cancel_event = cancel_event
        self.error: WorkflowError | None = None

    @property
    def state(self) -> WorkflowState | None:
        return self.history[-1] if self.history else None

    def check_cancel(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Cancelled(f"Run cancelled during {self.state.value if self.state else 'start'}")

    def transition(self, state: WorkflowState) -> None:
        """Enter a state. Cancellation is observed at every non-terminal entry."""
        if state not in TERMINAL_STATES:
            self.check_cancel()
        if self.state != state:
            logger.info(
                "Workflow state transition",
                extra={
                    "from_state": self.state.value if self.state else None,
                    "to_state": state.value,
                },
            )
            self.history.append(state)

    def abort(self, error: WorkflowError) -> None:
        self.error = error
        logger.error(
            "Workflow aborted",
            extra={
                "state": self.state.value if self.state else None,
                "error_type": type(error).__name__,
                "key": error.key,
                "error": describe(error),
            },
        )
        self.report.fail(error.key or "workflow", f"Aborted: {describe(error)}")
        self.history.append(WorkflowState.ABORTED)


class WorkflowBase:
    """Shared plumbing for deployment and teardown runs."""

    def __init__(
        self,
        provider: Provider,
        *,
        config: WorkflowConfig | None = None,
        poller: ConvergencePoller | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self._provider = provider
        self._config = config or WorkflowConfig()
        self._poller = poller or ConvergencePoller()
        self._sleep = sleep
        self._jitter = jitter

    async def _call(self, key: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a synchronous provider call off the event loop with a timeout.

        Raises:
            ProviderError: On provider failure. Timeouts are transient,
                unexpected exceptions are wrapped as non-transient.
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.provider_call_timeout_seconds
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, fn, *args), timeout=timeout)
        except ProviderError:
            raise
        except TimeoutError as e:
            raise ProviderError(
                f"Provider call timed out after {timeout}s", key=key, transient=True
            ) from e
        except Exception as e:
            raise ProviderError(f"{type(e).__name__}: {e}", key=key) from e

    async def _call_with_retry(
        self,
        key: str,
        action: str,
        fn: Callable[..., Any],
        *args: Any,
    ) -> None:
        """Call the provider, retrying transient errors with exponential backoff.

        Raises:
            ApplyFailed: On a non-transient error or when retries run out.
        """
        attempt = 0
        while True:
            try:
                await self._call(key, fn, *args)
                return
            except ProviderError as e:
                if not e.transient or attempt >= self._config.max_apply_retries:
                    logger.error(
                        f"{action.capitalize()} failed",
                        extra={
                            "key": key,
                            "attempts": attempt + 1,
                            "transient": e.transient,
                            "error": str(e),
                        },
                    )
                    raise ApplyFailed(
                        f"{action.capitalize()} failed for '{key}' after {attempt + 1} attempt(s)",
                        key=key,
                        provider_error=e,
                    ) from e

                delay = self._config.retry_backoff_base_seconds * (2**attempt)
                delay += delay * RETRY_JITTER_FRACTION * self._jitter()
                attempt += 1
                logger.warning(
                    f"{action.capitalize()} failed transiently, retrying",
                    extra={
                        "key": key,
                        "attempt": attempt,
                        "max_retries": self._config.max_apply_retries,
                        "backoff_seconds": delay,
                        "error": str(e),
                    },
                )
                await self._sleep(delay)

    async def _poll(
        self,
        run: RunContext,
        key: str,
        check: Callable[[], bool],
        timeout: float,
        interval: float,
        what: str,
    ) -> int:
        """Poll a readiness check, translating poll errors to workflow errors.

        Returns:
            Attempts made.
        """
        try:
            outcome = await self._poller.poll_until(
                check,
                timeout,
                interval,
                cancel_event=run.cancel_event,
                subject=key,
            )
        except PollTimedOutError as e:
            raise ConvergenceTimedOut(
                f"'{key}' not {what} within {timeout}s ({e.attempts} attempts)",
                key=key,
                attempts=e.attempts,
            ) from e
        except PollFatalError as e:
            raise ApplyFailed(
                f"Readiness check for '{key}' failed",
                key=key,
                provider_error=e.__cause__ or e,
            ) from e
        except PollCancelledError as e:
            raise Cancelled(f"Run cancelled while waiting for '{key}'", key=key) from e
        return outcome.attempts

    async def _wait_absent(self, run: RunContext, key: str) -> int:
        policy = self._config.deletion_convergence

        def is_absent() -> bool:
            return self._provider.observe(key) is ABSENT

        return await self._poll(
            run, key, is_absent, policy.timeout_seconds, policy.interval_seconds, "deleted"
        )


class DeploymentWorkflow(WorkflowBase):
    """Computes, confirms and applies changes to a resource graph.

    Args:
        provider: Injected cloud provider.
        config: Workflow settings. Defaults to WorkflowConfig().
        gate: Confirmation gate. Defaults to AutoApproveGate when
            `config.auto_approve` is set, else InteractiveGate.
        diff_engine: Diff engine. Defaults to one with default normalization.
        poller: Convergence poller.
        risk_assessor: Risk classification for preview entries.
        sleep: Coroutine used for retry backoff.
        jitter: Returns a float in [0, 1) used to jitter backoff.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        config: WorkflowConfig | None = None,
        gate: ConfirmationGate | None = None,
        diff_engine: DiffEngine | None = None,
        poller: ConvergencePoller | None = None,
        risk_assessor: RiskAssessor | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        super().__init__(provider, config=config, poller=poller, sleep=sleep, jitter=jitter)
        if gate is None:
            gate = AutoApproveGate() if self._config.auto_approve else InteractiveGate()
        self._gate = gate
        self._diff_engine = diff_engine or DiffEngine(
            observe_timeout_seconds=self._config.provider_call_timeout_seconds
        )
        self._risk = risk_assessor or RiskAssessor()

    async def run(
        self,
        graph: ResourceGraph,
        *,
        preconditions: Sequence[Precondition] = (),
        prune: Iterable[str] = (),
        allow_delete: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> DeploymentResult:
        """Run a full deployment.

        Args:
            graph: Resources to converge.
            preconditions: Checks that must hold before anything changes.
            prune: Keys to delete. Only deleted with `allow_delete`.
            allow_delete: Permit deletion of pruned keys.
            cancel_event: Set to stop the run at the next safe point.

        Returns:
            DeploymentResult. Never raises workflow errors.
        """
        prune_keys = list(dict.fromkeys(prune))
        run = RunContext(title="deploy", cancel_event=cancel_event)
        result = DeploymentResult(state=WorkflowState.VALIDATING, report=run.report)
        logger.info(
            "Starting deployment",
            extra={"resources": len(graph), "prune": len(prune_keys), "allow_delete": allow_delete},
        )

        try:
            order = await self._validate(run, graph, preconditions)
            result.diff = await self._preview(run, graph, prune_keys, allow_delete)

            if all(r.change_type == ChangeType.NO_CHANGE for r in result.diff):
                run.report.passed("plan", "No changes required")
            else:
                self._confirm(run)
                await self._apply(run, graph, order, result)

            await self._post_validate(run, graph, prune_keys)
            run.transition(WorkflowState.DONE)
        except WorkflowError as e:
            run.abort(e)

        return self._finish(run, result)

    async def plan(
        self,
        graph: ResourceGraph,
        *,
        preconditions: Sequence[Precondition] = (),
        prune: Iterable[str] = (),
        allow_delete: bool = False,
    ) -> DeploymentResult:
        """Validate and preview only. Nothing is changed."""
        run = RunContext(title="plan", cancel_event=None)
        result = DeploymentResult(state=WorkflowState.VALIDATING, report=run.report)
        try:
            await self._validate(run, graph, preconditions)
            result.diff = await self._preview(run, graph, list(dict.fromkeys(prune)), allow_delete)
            run.transition(WorkflowState.DONE)
        except WorkflowError as e:
            run.abort(e)
        return self._finish(run, result)

    async def verify(self, graph: ResourceGraph, *, prune: Iterable[str] = ()) -> DeploymentResult:
        """Assert idempotency: every resource must already be in sync."""
        run = RunContext(title="verify", cancel_event=None)
        result = DeploymentResult(state=WorkflowState.POST_VALIDATING, report=run.report)
        try:
            result.diff = await self._post_validate(run, graph, list(dict.fromkeys(prune)))
            run.transition(WorkflowState.DONE)
        except PostValidationFailed as e:
            result.diff = e.results
            run.abort(e)
        except WorkflowError as e:
            run.abort(e)
        return self._finish(run, result, pending=False)

    def _finish(
        self, run: RunContext, result: DeploymentResult, *, pending: bool = True
    ) -> DeploymentResult:
        result.state = run.state or WorkflowState.ABORTED
        result.history = list(run.history)
        result.error = run.error

        touched = set(result.applied) | set(result.failed) | set(result.deleted)
        result.not_attempted = [
            r.key
            for r in result.diff
            if r.change_type != ChangeType.NO_CHANGE and r.key not in touched
        ]
        if result.state == WorkflowState.DONE or not pending:
            # Runs that ended Done or never apply leave no pending work
            result.not_attempted = []

        run.report.finalize()
        logger.info(
            "Deployment finished",
            extra={
                "state": result.state.value,
                "status": run.report.status.value,
                "applied": len(result.applied),
                "failed": len(result.failed),
                "not_attempted": len(result.not_attempted),
            },
        )
        return result

    async def _validate(
        self,
        run: RunContext,
        graph: ResourceGraph,
        preconditions: Sequence[Precondition],
    ) -> list[ResourceNode]:
        run.transition(WorkflowState.VALIDATING)
        report = run.report

        try:
            order = graph.topological_order()
        except CycleDetectedError as e:
            report.fail("graph", str(e))
            raise PreconditionFailed(
                f"Dependency cycle between {e.keys}", key=e.keys[0] if e.keys else None
            ) from e
        report.passed("graph", f"{len(order)} resource(s) in dependency order")

        if len(order) > self._config.max_nodes_per_run:
            report.fail(
                "graph",
                f"{len(order)} resources exceed the limit of {self._config.max_nodes_per_run}",
            )
            raise PreconditionFailed("Too many resources for a single run")

        failures = 0
        for precondition in preconditions:
            try:
                ok = await self._call(precondition.name, precondition.check)
            except ProviderError as e:
                report.fail(precondition.name, f"Check raised: {e}")
                failures += 1
                continue
            if ok:
                report.passed(precondition.name, precondition.description or "Precondition met")
            elif precondition.warn_only:
                report.warn(precondition.name, "Precondition not met (warning only)")
            else:
                report.fail(precondition.name, "Precondition not met")
                failures += 1

        if failures:
            raise PreconditionFailed(f"{failures} precondition(s) failed")
        return order

    async def _preview(
        self,
        run: RunContext,
        graph: ResourceGraph,
        prune: list[str],
        allow_delete: bool,
    ) -> list[DiffResult]:
        run.transition(WorkflowState.PREVIEWING)
        report = run.report
        results = await self._diff_engine.diff(graph, self._provider.observe, prune)
        assessment = self._risk.assess_all(results)

        blocking = 0
        for diff_result, risk in zip(results, assessment.changes, strict=True):
            message = f"{diff_result.change_type.value}: {diff_result.summary} [{risk.describe()}]"
            match diff_result.change_type:
                case ChangeType.DELETE:
                    if allow_delete:
                        report.warn(diff_result.key, message)
                    else:
                        report.fail(diff_result.key, f"{message}; deletion not allowed")
                        blocking += 1
                case ChangeType.UNKNOWN:
                    if self._config.block_on_unknown:
                        report.fail(diff_result.key, message)
                        blocking += 1
                    else:
                        report.warn(diff_result.key, message)
                case _:
                    report.passed(diff_result.key, message)

        if blocking:
            raise PreconditionFailed(f"{blocking} planned change(s) blocked")
        return results

    def _confirm(self, run: RunContext) -> None:
        run.transition(WorkflowState.AWAITING_CONFIRMATION)
        if not self._gate.confirm(run.report):
            raise Cancelled("Deployment declined at confirmation")
        run.report.passed("confirmation", "Changes approved")

    async def _apply(
        self,
        run: RunContext,
        graph: ResourceGraph,
        order: list[ResourceNode],
        result: DeploymentResult,
    ) -> None:
        run.transition(WorkflowState.APPLYING)
        planned = {r.key: r for r in result.diff}

        def needs_apply(node: ResourceNode) -> bool:
            change = planned[node.key].change_type
            # Unknown only reaches here when it does not block; apply is create-or-update
            return change in (ChangeType.CREATE, ChangeType.MODIFY, ChangeType.UNKNOWN)

        if self._config.max_concurrency > 1:
            semaphore = asyncio.Semaphore(self._config.max_concurrency)
            for level in graph.levels():
                run.check_cancel()
                pending = [node for node in level if needs_apply(node)]
                if not pending:
                    continue
                outcomes = await asyncio.gather(
                    *(self._apply_bounded(run, node, result, semaphore) for node in pending),
                    return_exceptions=True,
                )
                errors = [o for o in outcomes if isinstance(o, BaseException)]
                if errors:
                    raise errors[0]
        else:
            for node in order:
                if not needs_apply(node):
                    continue
                run.check_cancel()
                await self._apply_node(run, node, result)

        deletions = [r.key for r in result.diff if r.change_type == ChangeType.DELETE]
        for key in deletions:
            run.check_cancel()
            await self._delete_pruned(run, key, result)

    async def _apply_bounded(
        self,
        run: RunContext,
        node: ResourceNode,
        result: DeploymentResult,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if result.failed:
                # A sibling failed; in-flight work finishes but nothing new starts
                return
            run.check_cancel()
            await self._apply_node(run, node, result)

    async def _apply_node(
        self,
        run: RunContext,
        node: ResourceNode,
        result: DeploymentResult,
    ) -> None:
        logger.info("Applying resource", extra={"key": node.key, "kind": node.kind.value})
        try:
            await self._call_with_retry(node.key, "apply", self._provider.apply, node)
        except ApplyFailed:
            result.failed.append(node.key)
            raise
        result.applied.append(node.key)
        run.report.passed(node.key, "Applied")

        if not node.asynchronous:
            return

        run.transition(WorkflowState.CONVERGING)
        policy = node.convergence or self._config.convergence_for(node.kind)
        try:
            attempts = await self._poll(
                run,
                node.key,
                lambda: self._provider.check_converged(node),
                policy.timeout_seconds,
                policy.interval_seconds,
                "converged",
            )
        except (ConvergenceTimedOut, ApplyFailed):
            result.failed.append(node.key)
            raise
        result.converged.append(node.key)
        run.report.passed(node.key, f"Converged after {attempts} check(s)")
        run.transition(WorkflowState.APPLYING)

    async def _delete_pruned(self, run: RunContext, key: str, result: DeploymentResult) -> None:
        logger.warning("Deleting pruned resource", extra={"key": key})
        try:
            await self._call_with_retry(key, "delete", self._provider.delete, key)
            run.transition(WorkflowState.CONVERGING)
            attempts = await self._wait_absent(run, key)
        except (ApplyFailed, ConvergenceTimedOut):
            result.failed.append(key)
            raise
        result.deleted.append(key)
        run.report.passed(key, f"Deleted (absent after {attempts} check(s))")
        run.transition(WorkflowState.APPLYING)

    async def _post_validate(
        self,
        run: RunContext,
        graph: ResourceGraph,
        prune: list[str],
    ) -> list[DiffResult]:
        run.transition(WorkflowState.POST_VALIDATING)
        results = await self._diff_engine.diff(graph, self._provider.observe, prune)
        drifting = [r for r in results if r.change_type != ChangeType.NO_CHANGE]
        for drift in drifting:
            run.report.fail(
                drift.key, f"Not in desired state: {drift.change_type.value}: {drift.summary}"
            )
        if drifting:
            raise PostValidationFailed(
                f"{len(drifting)} resource(s) not in desired state",
                drifting_keys=[r.key for r in drifting],
                results=results,
            )
        run.report.passed("post-validation", f"All {len(results)} resource(s) in desired state")
        return results
