"""
Unit tests for the sandbox orchestrator.

The isolation runtime is replaced by StubRuntime from conftest.
"""

import asyncio

import pytest

from modguard.config import GuardConfig
from modguard.errors import IsolationRuntimeUnavailableError, SandboxBusyError
from modguard.sandbox import DEFAULT_SCENARIOS, SandboxOrchestrator


def config(**overrides):
    return GuardConfig(enable_audit_log=False, **overrides)


class TestEnvironment:
    """Tests for environment and scenario construction."""

    def test_environment_within_caps(self, stub_runtime, submission):
        orchestrator = SandboxOrchestrator(stub_runtime, config(cpu_limit=0.25))

        env = orchestrator.create_environment(submission)

        assert env.resource_limits.cpu == 0.25
        assert env.resource_limits.memory <= 512 * 1024 * 1024
        assert env.resource_limits.disk <= 1024 * 1024 * 1024
        assert env.module_url == submission.entry_url
        assert env.runtime == "stub"

    def test_scenario_battery_order(self, stub_runtime):
        scenarios = SandboxOrchestrator(stub_runtime, config()).create_scenarios()

        assert [s.id for s in scenarios] == [
            "normal_operation", "error_handling", "network_security", "performance_test",
        ]
        assert [s.timeout for s in scenarios] == [60_000, 30_000, 45_000, 90_000]
        assert scenarios == list(DEFAULT_SCENARIOS)


class TestSandboxRun:
    """Tests for SandboxOrchestrator.run."""

    @pytest.mark.asyncio
    async def test_successful_run(self, stub_runtime, submission):
        orchestrator = SandboxOrchestrator(stub_runtime, config())

        result = await orchestrator.run(submission)

        assert result.status == "completed"
        assert result.test_id.startswith("sbx_")
        assert result.started_at is not None
        assert result.completed_at is not None
        assert result.results.security_violations == []
        assert len(result.results.network_traffic) == 1
        assert result.results.scenario_outcomes[0].status == "passed"

        metrics = result.results.performance_metrics
        assert metrics.cpu_usage == 20.0
        assert metrics.memory_usage == 48 * 1024 * 1024
        assert metrics.network_requests == 1
        assert metrics.execution_time >= 0

    @pytest.mark.asyncio
    async def test_container_spec(self, stub_runtime, submission):
        """The probe gets the entry URL through its environment and the configured caps."""
        orchestrator = SandboxOrchestrator(stub_runtime, config(memory_limit_bytes=256 * 1024 * 1024))

        await orchestrator.run(submission)

        spec = stub_runtime.specs[0]
        assert spec.environment["MODGUARD_ENTRY_URL"] == submission.entry_url
        assert spec.memory_bytes == 256 * 1024 * 1024
        assert spec.cpu <= 0.5
        assert spec.labels["modguard.module_id"] == submission.id

    @pytest.mark.asyncio
    async def test_timeout(self, stub_runtime_factory, submission):
        """An environment that never finishes fails with one timeout violation."""
        runtime = stub_runtime_factory(wait_behavior="hang")
        orchestrator = SandboxOrchestrator(runtime, config())

        result = await orchestrator.run(submission, timeout_ms=50)

        assert result.status == "failed"
        timeouts = [v for v in result.results.security_violations if v.type == "timeout"]
        assert len(timeouts) == 1
        assert timeouts[0].severity == "high"
        assert timeouts[0].details["timeout"] == 50
        assert runtime.stop_calls == 1
        assert runtime.remove_calls == 1

    @pytest.mark.asyncio
    async def test_telemetry_kept_after_timeout(self, stub_runtime_factory, submission):
        runtime = stub_runtime_factory(
            wait_behavior="hang",
            log_output='NETWORK_REQUEST: {"url": "https://foo.bar/malware.exe"}',
        )

        result = await SandboxOrchestrator(runtime, config()).run(submission, timeout_ms=20)

        types = sorted(v.type for v in result.results.security_violations)
        assert types == ["suspicious_network_request", "timeout"]

    @pytest.mark.asyncio
    async def test_crash(self, stub_runtime_factory, submission):
        runtime = stub_runtime_factory(wait_behavior="raise")

        result = await SandboxOrchestrator(runtime, config()).run(submission)

        assert result.status == "failed"
        violation = result.results.security_violations[0]
        assert violation.type == "execution_error"
        assert violation.severity == "high"
        assert "browser crashed" in result.error
        assert runtime.stop_calls == 1
        assert runtime.remove_calls == 1

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_execution_error(self, stub_runtime_factory, submission):
        runtime = stub_runtime_factory(exit_code=1)

        result = await SandboxOrchestrator(runtime, config()).run(submission)

        assert result.status == "failed"
        assert result.results.security_violations[0].type == "execution_error"

    @pytest.mark.asyncio
    async def test_cleanup_order(self, stub_runtime, submission):
        """Stop comes before remove, and each happens exactly once."""
        await SandboxOrchestrator(stub_runtime, config()).run(submission)

        cleanup = [c for c in stub_runtime.calls if c in ("stop", "remove")]
        assert cleanup == ["stop", "remove"]

    @pytest.mark.asyncio
    async def test_create_failure(self, stub_runtime_factory, submission):
        runtime = stub_runtime_factory(fail_create=RuntimeError("no space left"))

        result = await SandboxOrchestrator(runtime, config()).run(submission)

        assert result.status == "failed"
        assert result.results.security_violations[0].type == "execution_error"
        assert runtime.stop_calls == 0
        assert runtime.remove_calls == 0

    @pytest.mark.asyncio
    async def test_missing_entry_url(self, stub_runtime, make_submission):
        sub = make_submission(manifest={"frontend": {}})

        result = await SandboxOrchestrator(stub_runtime, config()).run(sub)

        assert result.status == "failed"
        assert result.results.security_violations[0].type == "execution_error"
        assert stub_runtime.calls == []

    @pytest.mark.asyncio
    async def test_runtime_unavailable_propagates(self, stub_runtime_factory, submission):
        runtime = stub_runtime_factory(wait_behavior="unavailable")
        orchestrator = SandboxOrchestrator(runtime, config())

        with pytest.raises(IsolationRuntimeUnavailableError):
            await orchestrator.run(submission)

        assert runtime.stop_calls == 1
        assert runtime.remove_calls == 1
        assert orchestrator.active_modules == []

    @pytest.mark.asyncio
    async def test_one_active_run_per_module(self, stub_runtime_factory, submission):
        runtime = stub_runtime_factory(wait_behavior="hang")
        orchestrator = SandboxOrchestrator(runtime, config())

        first = asyncio.create_task(orchestrator.run(submission, timeout_ms=200))
        await asyncio.sleep(0.01)
        assert orchestrator.active_modules == [submission.id]

        with pytest.raises(SandboxBusyError):
            await orchestrator.run(submission)

        result = await first
        assert result.status == "failed"
        assert orchestrator.active_modules == []

    @pytest.mark.asyncio
    async def test_different_modules_run_concurrently(self, stub_runtime, make_submission):
        orchestrator = SandboxOrchestrator(stub_runtime, config())

        results = await asyncio.gather(
            orchestrator.run(make_submission(id="mod-a")),
            orchestrator.run(make_submission(id="mod-b")),
        )

        assert [r.status for r in results] == ["completed", "completed"]
        assert stub_runtime.remove_calls == 2
