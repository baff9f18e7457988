"""Teardown workflow.

Destroys a deployed graph in reverse dependency order:
1. Discover which declared resources are still live (absent ones are
   skipped) and which undeclared links hang off container resources
2. Require a typed confirmation token (DELETE)
3. Delete dependents before their dependencies. Before a container
   (network, resource group) is deleted, every link attached to it is
   deleted and confirmed gone, even though the container delete would
   cascade. Hub-side peerings and zone links otherwise outlive the
   container and block its deletion.
4. Poll until the resource is absent for resource groups, links,
   asynchronous resources and any resource whose dependencies are still
   to be deleted
5. Optionally purge soft-deleted credential stores

Teardown is safe to rerun: everything already gone is skipped.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .approval import ConfirmationGate, TokenGate
from .config import WorkflowConfig
from .errors import Cancelled, PreconditionFailed, WorkflowError, describe
from .graph import CONTAINER_KINDS, CycleDetectedError, ResourceGraph, ResourceKind, ResourceNode
from .poller import ConvergencePoller
from .provider import ABSENT, Provider, ProviderError, list_links, supports_purge
from .report import ValidationReport
from .workflow import RunContext, WorkflowBase, WorkflowState

logger = logging.getLogger(__name__)


@dataclass
class TeardownResult:
    """Outcome of a teardown run."""

    state: WorkflowState
    report: ValidationReport
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    not_attempted: list[str] = field(default_factory=list)
    purged: list[str] = field(default_factory=list)
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
            "deleted": self.deleted,
            "skipped": self.skipped,
            "failed": self.failed,
            "not_attempted": self.not_attempted,
            "purged": self.purged,
            "error": describe(self.error) if self.error else None,
            "history": [state.value for state in self.history],
            "report": self.report.to_dict(),
        }


@dataclass
class _Inventory:
    """Live state discovered before anything is deleted."""

    order: list[ResourceNode]
    present: set[str]
    links: dict[str, list[str]]

    @property
    def targets(self) -> list[str]:
        """Every key that will be deleted, in deletion order."""
        keys: list[str] = []
        for node in self.order:
            keys.extend(self.links.get(node.key, []))
            if node.key in self.present:
                keys.append(node.key)
        return keys


class TeardownWorkflow(WorkflowBase):
    """Deletes a resource graph in reverse dependency order.

    Args:
        provider: Injected cloud provider.
        config: Workflow settings. Defaults to WorkflowConfig().
        gate: Confirmation gate. Defaults to a TokenGate over
            `config.confirm_token` when set, else a terminal prompt.
        poller: Convergence poller used for absence polling.
        sleep: Coroutine used for retry backoff.
        jitter: Returns a float in [0, 1) used to jitter backoff.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        config: WorkflowConfig | None = None,
        gate: ConfirmationGate | None = None,
        poller: ConvergencePoller | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        super().__init__(provider, config=config, poller=poller, sleep=sleep, jitter=jitter)
        if gate is None:
            if self._config.confirm_token is not None:
                gate = TokenGate.from_value(self._config.confirm_token)
            else:
                gate = TokenGate.prompt()
        self._gate = gate

    async def run(
        self,
        graph: ResourceGraph,
        *,
        cancel_event: asyncio.Event | None = None,
        purge: bool = False,
    ) -> TeardownResult:
        """Tear down every live resource in the graph.

        Args:
            graph: Resources to delete.
            cancel_event: Set to stop the run at the next safe point.
            purge: Permanently remove soft-deleted credential stores.

        Returns:
            TeardownResult. Never raises workflow errors.
        """
        run = RunContext(title="teardown", cancel_event=cancel_event)
        result = TeardownResult(state=WorkflowState.VALIDATING, report=run.report)
        inventory: _Inventory | None = None
        logger.info("Starting teardown", extra={"resources": len(graph), "purge": purge})

        try:
            inventory = await self._discover(run, graph, result)
            if not inventory.targets:
                run.report.passed("teardown", "Nothing to delete")
            else:
                self._confirm(run, len(inventory.targets))
                await self._delete_all(run, graph, inventory, purge, result)
            run.transition(WorkflowState.DONE)
        except WorkflowError as e:
            run.abort(e)

        result.state = run.state or WorkflowState.ABORTED
        result.history = list(run.history)
        result.error = run.error
        if inventory is not None and result.state == WorkflowState.ABORTED:
            done = set(result.deleted) | set(result.failed)
            result.not_attempted = [key for key in inventory.targets if key not in done]

        run.report.finalize()
        logger.info(
            "Teardown finished",
            extra={
                "state": result.state.value,
                "status": run.report.status.value,
                "deleted": len(result.deleted),
                "skipped": len(result.skipped),
                "failed": len(result.failed),
            },
        )
        return result

    async def _discover(
        self,
        run: RunContext,
        graph: ResourceGraph,
        result: TeardownResult,
    ) -> _Inventory:
        run.transition(WorkflowState.VALIDATING)
        report = run.report

        try:
            order = graph.reverse_order()
        except CycleDetectedError as e:
            report.fail("graph", str(e))
            raise PreconditionFailed(
                f"Dependency cycle between {e.keys}", key=e.keys[0] if e.keys else None
            ) from e

        present: set[str] = set()
        links: dict[str, list[str]] = {}
        for node in order:
            run.check_cancel()
            try:
                observed = await self._call(node.key, self._provider.observe, node.key)
            except ProviderError as e:
                report.fail(node.key, f"Could not observe current state: {e}")
                raise PreconditionFailed(
                    f"Cannot observe '{node.key}'", key=node.key, provider_error=e
                ) from e

            if observed is ABSENT:
                result.skipped.append(node.key)
                report.passed(node.key, "Already absent, skipped")
                continue

            present.add(node.key)
            report.passed(node.key, f"Planned: Delete ({node.kind.value})")

            if node.kind in CONTAINER_KINDS:
                try:
                    live_links = await self._call(
                        node.key, list_links, self._provider, node.key
                    )
                except ProviderError as e:
                    report.fail(node.key, f"Could not list attached links: {e}")
                    raise PreconditionFailed(
                        f"Cannot list links of '{node.key}'", key=node.key, provider_error=e
                    ) from e
                undeclared = [key for key in live_links if key not in graph]
                if undeclared:
                    links[node.key] = undeclared
                    report.passed(
                        node.key, f"Planned: Delete {len(undeclared)} attached link(s) first"
                    )

        return _Inventory(order=order, present=present, links=links)

    def _confirm(self, run: RunContext, count: int) -> None:
        run.transition(WorkflowState.AWAITING_CONFIRMATION)
        if not self._gate.confirm(run.report):
            raise Cancelled("Teardown not confirmed, nothing was deleted")
        run.report.passed("confirmation", f"Deletion of {count} resource(s) confirmed")

    async def _delete_all(
        self,
        run: RunContext,
        graph: ResourceGraph,
        inventory: _Inventory,
        purge: bool,
        result: TeardownResult,
    ) -> None:
        run.transition(WorkflowState.APPLYING)
        if purge and not supports_purge(self._provider):
            run.report.warn(
                "purge", "Provider does not support purge; soft-deleted resources remain"
            )

        for node in inventory.order:
            run.check_cancel()

            if node.kind in CONTAINER_KINDS:
                await self._delete_links(run, graph, node, inventory, result)

            if node.key not in inventory.present or node.key in result.deleted:
                continue

            polled = self._must_wait_absent(node, inventory, result)
            await self._delete_one(run, node.key, polled, result)

            if purge and node.kind == ResourceKind.CREDENTIAL and supports_purge(self._provider):
                try:
                    if not polled:
                        run.transition(WorkflowState.CONVERGING)
                        await self._wait_absent(run, node.key)
                        run.transition(WorkflowState.APPLYING)
                    purge_fn = getattr(self._provider, "purge")
                    await self._call_with_retry(node.key, "purge", purge_fn, node.key)
                except WorkflowError as e:
                    if not isinstance(e, Cancelled):
                        result.failed.append(node.key)
                    raise
                result.purged.append(node.key)
                run.report.passed(node.key, "Purged")

    @staticmethod
    def _must_wait_absent(
        node: ResourceNode, inventory: _Inventory, result: TeardownResult
    ) -> bool:
        """Whether a deletion must be confirmed before teardown moves on.

        Resource groups, links and asynchronous resources are always
        confirmed. Any other resource is confirmed while one of its
        dependencies is still waiting to be deleted.
        """
        if node.asynchronous or node.kind in (ResourceKind.LINK, ResourceKind.RESOURCE_GROUP):
            return True
        return any(
            dependency in inventory.present and dependency not in result.deleted
            for dependency in node.depends_on
        )

    async def _delete_links(
        self,
        run: RunContext,
        graph: ResourceGraph,
        container: ResourceNode,
        inventory: _Inventory,
        result: TeardownResult,
    ) -> None:
        """Delete every link attached to a container and confirm each is gone."""
        declared = [
            dependent.key
            for dependent in graph.dependents_of(container.key)
            if dependent.kind == ResourceKind.LINK
        ]
        for key in [*inventory.links.get(container.key, []), *declared]:
            if key in result.deleted or (key in graph and key not in inventory.present):
                continue
            run.check_cancel()
            await self._delete_one(run, key, True, result)

    async def _delete_one(
        self,
        run: RunContext,
        key: str,
        wait_absent: bool,
        result: TeardownResult,
    ) -> None:
        logger.warning("Deleting resource", extra={"key": key, "wait_absent": wait_absent})
        try:
            await self._call_with_retry(key, "delete", self._provider.delete, key)
            if wait_absent:
                run.transition(WorkflowState.CONVERGING)
                attempts = await self._wait_absent(run, key)
                run.transition(WorkflowState.APPLYING)
        except WorkflowError as e:
            if not isinstance(e, Cancelled):
                result.failed.append(key)
            raise
        result.deleted.append(key)
        if wait_absent:
            run.report.passed(key, f"Deleted (absent after {attempts} check(s))")
        else:
            run.report.passed(key, "Delete requested")
