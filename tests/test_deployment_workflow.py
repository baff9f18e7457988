"""Tests for the deployment workflow.

All tests run against InMemoryProvider with a fake clock, so convergence
waits and retry backoff cost no real time.
"""

from __future__ import annotations

import asyncio

import pytest
from azure_mock import FakeClock, InMemoryProvider, forbidden, throttled

from deployflow.config import WorkflowConfig
from deployflow.diff_engine import ChangeType
from deployflow.errors import (
    ApplyFailed,
    Cancelled,
    ConvergenceTimedOut,
    PostValidationFailed,
    PreconditionFailed,
)
from deployflow.graph import ConvergencePolicy, ResourceGraph, ResourceKind, ResourceNode
from deployflow.poller import ConvergencePoller
from deployflow.report import Severity, ValidationReport
from deployflow.workflow import DeploymentWorkflow, Precondition, WorkflowState


class RecordingGate:
    """Confirmation gate returning a fixed answer and counting calls."""

    def __init__(self, approve: bool = True) -> None:
        self.approve = approve
        self.calls = 0

    def confirm(self, report: ValidationReport) -> bool:
        self.calls += 1
        return self.approve


class BackoffRecorder:
    """Stands in for asyncio.sleep in retry backoff."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def spoke_graph() -> ResourceGraph:
    """rg -> vnet -> subnet -> pe (async) -> dns."""
    return ResourceGraph.from_nodes(
        [
            ResourceNode(
                key="rg", kind=ResourceKind.RESOURCE_GROUP, spec={"location": "westeurope"}
            ),
            ResourceNode(
                key="vnet",
                kind=ResourceKind.NETWORK,
                spec={
                    "location": "westeurope",
                    "properties": {"addressSpace": {"addressPrefixes": ["10.0.0.0/16"]}},
                },
                depends_on=("rg",),
            ),
            ResourceNode(
                key="subnet",
                kind=ResourceKind.SUBNET,
                spec={"properties": {"addressPrefix": "10.0.1.0/24"}},
                depends_on=("vnet",),
            ),
            ResourceNode(
                key="pe",
                kind=ResourceKind.ENDPOINT,
                spec={"location": "westeurope", "properties": {"subnet": "subnet"}},
                depends_on=("subnet",),
                asynchronous=True,
            ),
            ResourceNode(
                key="dns",
                kind=ResourceKind.DNS,
                spec={"properties": {"ttl": 3600}},
                depends_on=("pe",),
            ),
        ]
    )


def simple_graph(*keys: str) -> ResourceGraph:
    return ResourceGraph.from_nodes(
        [ResourceNode(key=key, kind=ResourceKind.COMPUTE_OR_STORAGE, spec={"name": key}) for key in keys]
    )


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
def gate() -> RecordingGate:
    return RecordingGate()


@pytest.fixture
def backoff() -> BackoffRecorder:
    return BackoffRecorder()


@pytest.fixture
def make_workflow(
    provider: InMemoryProvider,
    gate: RecordingGate,
    backoff: BackoffRecorder,
    fake_clock: FakeClock,
):
    """Factory for workflows wired to the fake clock."""

    def factory(**overrides) -> DeploymentWorkflow:
        config = overrides.pop("config", WorkflowConfig())
        return DeploymentWorkflow(
            overrides.pop("provider", provider),
            config=config,
            gate=overrides.pop("gate", gate),
            poller=overrides.pop(
                "poller", ConvergencePoller(clock=fake_clock, sleep=fake_clock.sleep)
            ),
            sleep=backoff,
            jitter=lambda: 0.0,
        )

    return factory


class TestFreshDeployment:
    """Tests for applying a graph to an empty environment."""

    @pytest.mark.asyncio
    async def test_applies_in_dependency_order(
        self, make_workflow, provider: InMemoryProvider, gate: RecordingGate
    ) -> None:
        """Test every resource is created in topological order and the run passes."""
        result = await make_workflow().run(spoke_graph())

        assert result.state == WorkflowState.DONE
        assert result.success
        assert result.exit_code == 0
        assert result.applied == ["rg", "vnet", "subnet", "pe", "dns"]
        assert provider.keys_called("apply") == ["rg", "vnet", "subnet", "pe", "dns"]
        assert result.failed == []
        assert result.not_attempted == []
        assert gate.calls == 1
        assert all(r.change_type == ChangeType.CREATE for r in result.diff)

    @pytest.mark.asyncio
    async def test_dependent_waits_for_convergence(
        self, make_workflow, provider: InMemoryProvider, fake_clock: FakeClock
    ) -> None:
        """Test the DNS record is not applied until the endpoint reports ready."""
        provider.convergence_lag["pe"] = 3

        result = await make_workflow().run(spoke_graph())

        assert result.state == WorkflowState.DONE
        assert result.converged == ["pe"]
        # Endpoint default policy: every 15s
        assert fake_clock.sleeps == [15, 15, 15]
        last_check = max(i for i, call in enumerate(provider.calls) if call == ("check", "pe"))
        assert provider.calls.index(("apply", "dns")) > last_check
        assert any(
            e.subject == "pe" and e.message == "Converged after 4 check(s)"
            for e in result.report.entries
        )

    @pytest.mark.asyncio
    async def test_state_history(self, make_workflow) -> None:
        result = await make_workflow().run(spoke_graph())

        assert result.history == [
            WorkflowState.VALIDATING,
            WorkflowState.PREVIEWING,
            WorkflowState.AWAITING_CONFIRMATION,
            WorkflowState.APPLYING,
            WorkflowState.CONVERGING,
            WorkflowState.APPLYING,
            WorkflowState.POST_VALIDATING,
            WorkflowState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_synchronous_nodes_are_not_polled(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        await make_workflow().run(simple_graph("a", "b"))
        assert provider.keys_called("check") == []

    @pytest.mark.asyncio
    async def test_node_convergence_override(
        self, make_workflow, provider: InMemoryProvider, fake_clock: FakeClock
    ) -> None:
        """Test a node's own policy takes precedence over the kind default."""
        graph = ResourceGraph.from_nodes(
            [
                ResourceNode(
                    key="role",
                    kind=ResourceKind.ROLE_BINDING,
                    asynchronous=True,
                    convergence=ConvergencePolicy(timeout_seconds=30, interval_seconds=10),
                )
            ]
        )
        provider.convergence_lag["role"] = 100

        result = await make_workflow().run(graph)

        assert isinstance(result.error, ConvergenceTimedOut)
        assert result.error.attempts == 4
        assert fake_clock.now == 30


class TestIdempotency:
    """Tests for re-running an already converged deployment."""

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(
        self, make_workflow, provider: InMemoryProvider, gate: RecordingGate
    ) -> None:
        """Test a rerun diffs NoChange everywhere and makes no mutating call."""
        graph = spoke_graph()
        first = await make_workflow().run(graph)
        assert first.success
        applies = len(provider.keys_called("apply"))

        second = await make_workflow().run(graph)

        assert second.state == WorkflowState.DONE
        assert second.applied == []
        assert len(provider.keys_called("apply")) == applies
        assert all(r.change_type == ChangeType.NO_CHANGE for r in second.diff)
        assert gate.calls == 1
        assert any(e.subject == "plan" for e in second.report.entries)

    @pytest.mark.asyncio
    async def test_modify_reapplies_only_drifted(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        graph = simple_graph("a", "b")
        await make_workflow().run(graph)
        provider.resources["b"]["name"] = "changed"

        result = await make_workflow().run(graph)

        assert result.success
        assert result.applied == ["b"]
        assert [r.change_type for r in result.diff] == [ChangeType.NO_CHANGE, ChangeType.MODIFY]

    @pytest.mark.asyncio
    async def test_undeclared_resources_untouched(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        """Test a live resource missing from the graph is never deleted."""
        provider.resources["orphan"] = {"name": "orphan"}

        result = await make_workflow().run(simple_graph("a"))

        assert result.success
        assert provider.keys_called("delete") == []
        assert "orphan" in provider.resources


class TestApplyFailures:
    """Tests for provider failures during apply."""

    @pytest.mark.asyncio
    async def test_rejected_apply_aborts(self, make_workflow, provider: InMemoryProvider) -> None:
        """Test a failed apply stops the run and leaves later resources untouched."""
        provider.apply_errors["subnet"].append(forbidden("subnet"))

        result = await make_workflow().run(spoke_graph())

        assert result.state == WorkflowState.ABORTED
        assert isinstance(result.error, ApplyFailed)
        assert result.error.key == "subnet"
        assert result.applied == ["rg", "vnet"]
        assert result.failed == ["subnet"]
        assert result.not_attempted == ["pe", "dns"]
        assert result.exit_code == 1
        [failure] = result.report.failures()
        assert failure.subject == "subnet"
        assert "403 AuthorizationFailed" in failure.message

    @pytest.mark.asyncio
    async def test_no_rollback(self, make_workflow, provider: InMemoryProvider) -> None:
        """Test applied resources stay in place after a later failure."""
        provider.apply_errors["pe"].append(forbidden("pe"))

        await make_workflow().run(spoke_graph())

        assert provider.keys_called("delete") == []
        assert {"rg", "vnet", "subnet"} <= set(provider.resources)

    @pytest.mark.asyncio
    async def test_transient_error_retried(
        self, make_workflow, provider: InMemoryProvider, backoff: BackoffRecorder
    ) -> None:
        """Test throttling is retried with exponential backoff."""
        provider.apply_errors["vnet"].extend([throttled("vnet"), throttled("vnet")])

        result = await make_workflow().run(spoke_graph())

        assert result.success
        assert provider.keys_called("apply").count("vnet") == 3
        assert backoff.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_workflow, provider: InMemoryProvider) -> None:
        provider.apply_errors["a"].extend([throttled("a")] * 3)

        result = await make_workflow(config=WorkflowConfig(max_apply_retries=1)).run(
            simple_graph("a")
        )

        assert isinstance(result.error, ApplyFailed)
        assert "after 2 attempt(s)" in str(result.error)
        assert provider.keys_called("apply") == ["a", "a"]

    @pytest.mark.asyncio
    async def test_convergence_timeout(
        self, make_workflow, provider: InMemoryProvider, fake_clock: FakeClock
    ) -> None:
        """Test an endpoint that never becomes ready fails with the attempts made."""
        provider.convergence_lag["pe"] = 1000

        result = await make_workflow().run(spoke_graph())

        assert result.state == WorkflowState.ABORTED
        assert isinstance(result.error, ConvergenceTimedOut)
        assert result.error.key == "pe"
        assert result.error.attempts == 11
        assert fake_clock.now == 150
        assert result.failed == ["pe"]
        assert result.not_attempted == ["dns"]

    @pytest.mark.asyncio
    async def test_post_validation_detects_drift(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        """Test a resource the provider reports differently after apply fails the run."""
        provider.computed_fields["vnet"] = {"location": "northeurope"}

        result = await make_workflow().run(spoke_graph())

        assert result.state == WorkflowState.ABORTED
        assert isinstance(result.error, PostValidationFailed)
        assert result.error.drifting_keys == ["vnet"]
        assert len(result.applied) == 5


class TestUnknownState:
    """Tests for transient observation failures during preview."""

    @pytest.mark.asyncio
    async def test_unknown_blocks_by_default(
        self, make_workflow, provider: InMemoryProvider, gate: RecordingGate
    ) -> None:
        provider.observe_errors["vnet"].append(throttled("vnet"))

        result = await make_workflow().run(spoke_graph())

        assert isinstance(result.error, PreconditionFailed)
        assert provider.keys_called("apply") == []
        assert gate.calls == 0
        assert any(e.subject == "vnet" and e.severity == Severity.FAIL for e in result.report.entries)

    @pytest.mark.asyncio
    async def test_unknown_applied_when_not_blocking(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        """Test Unknown is re-applied (create-or-update) when configured not to block."""
        provider.resources["a"] = {"name": "a"}
        provider.observe_errors["a"].append(throttled("a"))

        result = await make_workflow(config=WorkflowConfig(block_on_unknown=False)).run(
            simple_graph("a")
        )

        assert result.state == WorkflowState.DONE
        assert result.report.status == Severity.WARN
        assert result.applied == ["a"]


class TestPrune:
    """Tests for explicit deletion."""

    @pytest.mark.asyncio
    async def test_delete_requires_allow_delete(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        provider.resources["old"] = {"name": "old"}

        result = await make_workflow().run(simple_graph("a"), prune=["old"])

        assert isinstance(result.error, PreconditionFailed)
        assert provider.keys_called("delete") == []
        assert provider.keys_called("apply") == []
        assert any("deletion not allowed" in e.message for e in result.report.entries)

    @pytest.mark.asyncio
    async def test_delete_waits_for_absence(
        self, make_workflow, provider: InMemoryProvider, fake_clock: FakeClock
    ) -> None:
        """Test a pruned resource is deleted after applies and polled until absent."""
        provider.resources["old"] = {"name": "old"}
        provider.deletion_lag["old"] = 2

        result = await make_workflow().run(simple_graph("a"), prune=["old"], allow_delete=True)

        assert result.state == WorkflowState.DONE
        assert result.deleted == ["old"]
        assert "old" not in provider.resources
        assert provider.calls.index(("apply", "a")) < provider.calls.index(("delete", "old"))
        assert fake_clock.sleeps == [10, 10]
        assert result.report.status == Severity.WARN

    @pytest.mark.asyncio
    async def test_prune_of_absent_key_is_noop(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        result = await make_workflow().run(simple_graph("a"), prune=["gone"], allow_delete=True)

        assert result.success
        assert provider.keys_called("delete") == []


class TestValidation:
    """Tests for the Validating state."""

    @pytest.mark.asyncio
    async def test_failed_precondition_prevents_any_call(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        """Test nothing is observed or changed when a precondition fails."""
        result = await make_workflow().run(
            spoke_graph(), preconditions=[Precondition("quota", lambda: False)]
        )

        assert isinstance(result.error, PreconditionFailed)
        assert provider.calls == []
        assert result.not_attempted == []

    @pytest.mark.asyncio
    async def test_warn_only_precondition(self, make_workflow) -> None:
        result = await make_workflow().run(
            simple_graph("a"),
            preconditions=[
                Precondition("dns", lambda: False, warn_only=True),
                Precondition("identity", lambda: True, description="Identity exists"),
            ],
        )

        assert result.state == WorkflowState.DONE
        assert result.report.status == Severity.WARN
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_raising_precondition_fails(self, make_workflow) -> None:
        def check() -> bool:
            raise RuntimeError("lookup failed")

        result = await make_workflow().run(
            simple_graph("a"), preconditions=[Precondition("probe", check)]
        )

        assert isinstance(result.error, PreconditionFailed)
        assert any("lookup failed" in e.message for e in result.report.failures())

    @pytest.mark.asyncio
    async def test_cycle_rejected(self, make_workflow, provider: InMemoryProvider) -> None:
        graph = ResourceGraph.from_nodes(
            [
                ResourceNode(key="x", kind=ResourceKind.LINK, depends_on=("y",)),
                ResourceNode(key="y", kind=ResourceKind.LINK, depends_on=("x",)),
            ],
            strict=False,
        )

        result = await make_workflow().run(graph)

        assert isinstance(result.error, PreconditionFailed)
        assert provider.calls == []
        assert any(e.subject == "graph" and "Circular" in e.message for e in result.report.entries)

    @pytest.mark.asyncio
    async def test_node_limit(self, make_workflow) -> None:
        result = await make_workflow(config=WorkflowConfig(max_nodes_per_run=2)).run(
            simple_graph("a", "b", "c")
        )
        assert isinstance(result.error, PreconditionFailed)


class TestConfirmationAndCancellation:
    """Tests for declining and cancelling runs."""

    @pytest.mark.asyncio
    async def test_declined_confirmation(self, make_workflow, provider: InMemoryProvider) -> None:
        """Test a declined gate aborts with nothing applied."""
        result = await make_workflow(gate=RecordingGate(approve=False)).run(spoke_graph())

        assert result.state == WorkflowState.ABORTED
        assert isinstance(result.error, Cancelled)
        assert provider.keys_called("apply") == []
        assert result.not_attempted == ["rg", "vnet", "subnet", "pe", "dns"]

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, make_workflow, provider: InMemoryProvider) -> None:
        cancel = asyncio.Event()
        cancel.set()

        result = await make_workflow().run(spoke_graph(), cancel_event=cancel)

        assert isinstance(result.error, Cancelled)
        assert result.history == [WorkflowState.ABORTED]
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_cancel_after_confirmation(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        """Test a signal arriving during confirmation stops the run before apply."""
        cancel = asyncio.Event()

        class CancellingGate:
            def confirm(self, report: ValidationReport) -> bool:
                cancel.set()
                return True

        result = await make_workflow(gate=CancellingGate()).run(spoke_graph(), cancel_event=cancel)

        assert isinstance(result.error, Cancelled)
        assert provider.keys_called("apply") == []

    @pytest.mark.asyncio
    async def test_cancel_during_convergence(
        self, make_workflow, provider: InMemoryProvider, fake_clock: FakeClock
    ) -> None:
        """Test cancellation is observed between convergence checks."""
        cancel = asyncio.Event()
        provider.convergence_lag["pe"] = 5

        async def sleep_then_cancel(seconds: float) -> None:
            await fake_clock.sleep(seconds)
            cancel.set()

        workflow = make_workflow(poller=ConvergencePoller(clock=fake_clock, sleep=sleep_then_cancel))
        result = await workflow.run(spoke_graph(), cancel_event=cancel)

        assert isinstance(result.error, Cancelled)
        assert result.error.key == "pe"
        assert provider.keys_called("check") == ["pe"]
        assert "dns" not in provider.keys_called("apply")
        assert result.not_attempted == ["dns"]


class TestConcurrentApply:
    """Tests for bounded sibling concurrency."""

    @staticmethod
    def fan_graph() -> ResourceGraph:
        return ResourceGraph.from_nodes(
            [
                ResourceNode(key="rg", kind=ResourceKind.RESOURCE_GROUP),
                ResourceNode(key="a", kind=ResourceKind.COMPUTE_OR_STORAGE, depends_on=("rg",)),
                ResourceNode(key="b", kind=ResourceKind.COMPUTE_OR_STORAGE, depends_on=("rg",)),
                ResourceNode(key="c", kind=ResourceKind.COMPUTE_OR_STORAGE, depends_on=("rg",)),
                ResourceNode(
                    key="d", kind=ResourceKind.COMPUTE_OR_STORAGE, depends_on=("a", "b", "c")
                ),
            ]
        )

    @pytest.mark.asyncio
    async def test_levels_applied_in_order(self, make_workflow, provider: InMemoryProvider) -> None:
        """Test siblings may run together but never before their dependencies."""
        result = await make_workflow(config=WorkflowConfig(max_concurrency=4)).run(
            self.fan_graph()
        )

        applies = provider.keys_called("apply")
        assert result.success
        assert applies[0] == "rg"
        assert applies[-1] == "d"
        assert sorted(applies[1:4]) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_sibling_failure_stops_next_level(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        provider.apply_errors["b"].append(forbidden("b"))

        result = await make_workflow(config=WorkflowConfig(max_concurrency=4)).run(
            self.fan_graph()
        )

        assert result.state == WorkflowState.ABORTED
        assert "b" in result.failed
        assert "d" not in provider.keys_called("apply")
        assert "d" in result.not_attempted


class TestPlanAndVerify:
    """Tests for plan-only and verify-only runs."""

    @pytest.mark.asyncio
    async def test_plan_changes_nothing(
        self, make_workflow, provider: InMemoryProvider, gate: RecordingGate
    ) -> None:
        provider.resources["rg"] = {"location": "westeurope"}

        result = await make_workflow().plan(spoke_graph())

        assert result.state == WorkflowState.DONE
        assert result.report.title == "plan"
        assert {op for op, _ in provider.calls} == {"observe"}
        assert gate.calls == 0
        assert [r.change_type for r in result.diff] == [
            ChangeType.NO_CHANGE,
            *([ChangeType.CREATE] * 4),
        ]
        assert result.not_attempted == []

    @pytest.mark.asyncio
    async def test_plan_blocked_delete(self, make_workflow, provider: InMemoryProvider) -> None:
        provider.resources["old"] = {}
        result = await make_workflow().plan(simple_graph("a"), prune=["old"])
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_verify_in_sync(self, make_workflow) -> None:
        workflow = make_workflow()
        await workflow.run(spoke_graph())

        result = await workflow.verify(spoke_graph())

        assert result.success
        assert result.report.title == "verify"

    @pytest.mark.asyncio
    async def test_verify_detects_drift(self, make_workflow, provider: InMemoryProvider) -> None:
        result = await make_workflow().verify(simple_graph("a"))

        assert result.exit_code == 1
        assert isinstance(result.error, PostValidationFailed)
        assert provider.keys_called("apply") == []

    @pytest.mark.asyncio
    async def test_verify_keeps_drift_in_result(
        self, make_workflow, provider: InMemoryProvider
    ) -> None:
        """Test a failed verify still carries the diff that found the drift."""
        provider.resources["a"] = {"name": "a"}
        provider.resources["b"] = {"name": "changed"}

        result = await make_workflow().verify(simple_graph("a", "b"))

        assert result.state == WorkflowState.ABORTED
        assert result.error.drifting_keys == ["b"]
        assert [r.change_type for r in result.diff] == [ChangeType.NO_CHANGE, ChangeType.MODIFY]
        assert result.not_attempted == []
        assert result.to_dict()["diff"][1]["change_type"] == "Modify"

    @pytest.mark.asyncio
    async def test_to_dict(self, make_workflow) -> None:
        result = await make_workflow().run(simple_graph("a"))

        data = result.to_dict()

        assert data["state"] == "Done"
        assert data["success"] is True
        assert data["applied"] == ["a"]
        assert data["diff"][0]["change_type"] == "Create"
        assert data["report"]["status"] == "pass"
