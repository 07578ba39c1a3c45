"""
Unit tests for ValidationManager.

Runs the whole pipeline against StubRuntime from conftest.
"""

import pytest

from modguard.config import GuardConfig
from modguard.errors import IsolationRuntimeUnavailableError, ManifestValidationError
from modguard.manager import ValidationManager, parse_submission
from modguard.security.audit import AuditEventType, AuditLogger, AuditOutput
from modguard.types import ModuleSubmission


class MemoryOutput(AuditOutput):
    def __init__(self):
        self.entries = []

    def write(self, entry):
        self.entries.append(entry)

    def close(self):
        pass


@pytest.fixture
def config():
    return GuardConfig(enable_audit_log=False)


@pytest.fixture
def manager(config, stub_runtime):
    return ValidationManager(config=config, runtime=stub_runtime)


class TestParseSubmission:
    """Tests for parse_submission."""

    def test_camel_case_keys(self, submission_data):
        sub = parse_submission(submission_data)

        assert sub.developer_id == "dev-42"
        assert sub.entry_url == "https://cdn.example.com/weather/remoteEntry.js"
        assert sub.permissions == ["read-profile", "display-widgets"]

    def test_dependency_mapping(self, submission_data):
        submission_data["manifest"]["dependencies"] = {"lodash": "4.17.15", "react": "18.2.0"}

        sub = parse_submission(submission_data)

        assert sub.manifest.dependencies == ["lodash@4.17.15", "react@18.2.0"]

    def test_missing_id(self, submission_data):
        del submission_data["id"]

        with pytest.raises(ManifestValidationError) as exc_info:
            parse_submission(submission_data)

        assert exc_info.value.module_id == "unknown"
        assert "id" in exc_info.value.reason


class TestStaticPhase:
    """Tests for ValidationManager.validate_static."""

    @pytest.mark.asyncio
    async def test_clean_module(self, manager, submission):
        result = await manager.validate_static(submission)

        assert result.is_valid
        assert result.security_score == 100
        assert result.security_status == "passed"
        assert result.validation_details.malware_scan.is_clean
        assert result.validation_details.permission_audit.risk_level == "low"

    @pytest.mark.asyncio
    async def test_two_errors_one_warning(self, manager, make_submission):
        """Two missing fields plus a shortener URL scores 50 and fails."""
        sub = make_submission(manifest={
            "author": None,
            "license": None,
            "frontend": {"entryUrl": "https://bit.ly/weather"},
        })

        result = await manager.validate_static(sub)

        assert len(result.errors) == 2
        assert len(result.warnings) == 1
        assert result.security_score == 50
        assert result.security_status == "failed"
        assert not result.is_valid

    @pytest.mark.asyncio
    async def test_http_entry_url(self, manager, make_submission):
        sub = make_submission(manifest={"frontend": {"entryUrl": "http://example.com"}})

        result = await manager.validate_static(sub)

        assert not result.is_valid
        assert any("HTTPS" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_missing_manifest(self, manager):
        result = await manager.validate_static(ModuleSubmission(id="bare"))

        assert result.errors == ["Module manifest is required"]
        assert result.security_status == "failed"
        assert result.validation_details.malware_scan is None

    @pytest.mark.asyncio
    async def test_high_risk_permissions(self, manager, make_submission):
        sub = make_submission(manifest={"permissions": ["read", "storage", "system-access"]})

        result = await manager.validate_static(sub)

        assert "High-risk permissions detected" in result.errors
        assert result.validation_details.permission_audit.rejected_permissions == ["system-access"]

    @pytest.mark.asyncio
    async def test_critical_dependency(self, manager, make_submission):
        sub = make_submission(manifest={"dependencies": ["event-stream@3.3.6"]})

        result = await manager.validate_static(sub)

        assert "1 critical vulnerabilities detected" in result.errors
        assert "1 vulnerabilities detected" in result.warnings


class TestValidate:
    """Tests for the full pipeline."""

    @pytest.mark.asyncio
    async def test_clean_module_passes(self, manager, submission, stub_runtime):
        report = await manager.validate(submission)

        assert report.overall_status == "passed"
        assert report.security_score == 100
        assert report.sandbox.status == "completed"
        assert report.enforcement.compliant
        assert stub_runtime.stop_calls == 1
        assert stub_runtime.remove_calls == 1

    @pytest.mark.asyncio
    async def test_stage_events_in_order(self, manager, submission):
        events = []
        manager.subscribe(events.append)

        await manager.validate(submission)

        assert [e.stage for e in events] == [
            "validation_started",
            "static_phase_completed",
            "sandbox_completed",
            "policy_evaluated",
            "report_ready",
        ]
        assert all(e.module_id == submission.id for e in events)
        assert events[0].payload["manifest_hash"]
        assert events[-1].payload["status"] == "passed"

    @pytest.mark.asyncio
    async def test_static_failure_skips_sandbox(self, manager, make_submission, stub_runtime):
        events = []
        manager.subscribe(events.append)
        sub = make_submission(manifest={"frontend": {"entryUrl": "http://example.com"}})

        report = await manager.validate(sub)

        assert report.overall_status == "failed"
        assert report.sandbox is None
        assert report.enforcement is None
        assert stub_runtime.calls == []
        assert "sandbox_completed" not in [e.stage for e in events]

    @pytest.mark.asyncio
    async def test_sandbox_timeout_fails_report(self, config, stub_runtime_factory, submission):
        runtime = stub_runtime_factory(wait_behavior="hang")
        manager = ValidationManager(config=config.model_copy(update={"sandbox_timeout_ms": 30}), runtime=runtime)

        report = await manager.validate(submission)

        assert report.overall_status == "failed"
        assert report.sandbox.status == "failed"
        assert manager.metrics.snapshot().sandbox_timeouts == 1
        assert runtime.remove_calls == 1

    @pytest.mark.asyncio
    async def test_policy_violation_fails_report(self, manager, make_submission):
        sub = make_submission(manifest={"encryption": False})

        report = await manager.validate(sub)

        assert report.overall_status == "failed"
        assert not report.enforcement.compliant
        assert "data_encryption" in [v.type for v in report.enforcement.violations]

    @pytest.mark.asyncio
    async def test_runtime_unavailable(self, config, stub_runtime_factory, submission):
        manager = ValidationManager(config=config, runtime=stub_runtime_factory(wait_behavior="unavailable"))

        with pytest.raises(IsolationRuntimeUnavailableError):
            await manager.validate(submission)

        snapshot = manager.metrics.snapshot()
        assert snapshot.validations_errored == 1
        assert snapshot.validations_in_progress == 0

    @pytest.mark.asyncio
    async def test_metrics(self, manager, submission, make_submission):
        await manager.validate(submission)
        await manager.validate(make_submission(id="mod-bad", manifest={"frontend": {"entryUrl": "http://x.io"}}))

        snapshot = manager.metrics.snapshot()
        assert snapshot.validations_started == 2
        assert snapshot.validations_passed == 1
        assert snapshot.validations_failed == 1
        assert snapshot.sandbox_runs == 1
        assert snapshot.sandbox_completed == 1


class TestObservers:
    """Tests for observer registration and delivery."""

    @pytest.mark.asyncio
    async def test_async_observer(self, manager, submission):
        stages = []

        async def observer(event):
            stages.append(event.stage)

        manager.subscribe(observer)
        await manager.validate(submission)

        assert stages[-1] == "report_ready"

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_pipeline(self, manager, submission):
        seen = []

        def broken(event):
            raise RuntimeError("observer down")

        manager.subscribe(broken)
        manager.subscribe(seen.append)

        report = await manager.validate(submission)

        assert report.overall_status == "passed"
        assert len(seen) == 5

    @pytest.mark.asyncio
    async def test_unsubscribe(self, manager, submission):
        seen = []
        manager.subscribe(seen.append)
        manager.unsubscribe(seen.append)

        await manager.validate(submission)

        assert seen == []


class TestAuditIntegration:
    """Tests for audit entries produced by the pipeline."""

    @pytest.mark.asyncio
    async def test_stage_entries(self, config, stub_runtime, submission):
        output = MemoryOutput()
        manager = ValidationManager(
            config=config,
            runtime=stub_runtime,
            audit_logger=AuditLogger(outputs=[output]),
        )

        await manager.validate(submission)

        assert [e.event_type for e in output.entries] == [
            AuditEventType.VALIDATION_STARTED.value,
            AuditEventType.STATIC_PHASE_COMPLETED.value,
            AuditEventType.SANDBOX_COMPLETED.value,
            AuditEventType.POLICY_EVALUATED.value,
            AuditEventType.SCAN_REPORT_READY.value,
        ]
        sandbox_entry = output.entries[2]
        assert sandbox_entry.test_id.startswith("sbx_")
        assert sandbox_entry.success is True
        assert output.entries[0].manifest_hash is not None

    @pytest.mark.asyncio
    async def test_registry_update_entry(self, config, stub_runtime):
        output = MemoryOutput()
        manager = ValidationManager(
            config=config,
            runtime=stub_runtime,
            audit_logger=AuditLogger(outputs=[output]),
        )

        manager.registry.update_policy("performance_policy", {"enforcement": "advisory"})

        assert output.entries[-1].event_type == AuditEventType.POLICY_REGISTRY_UPDATED.value
        assert output.entries[-1].details["version"] == 2


class TestLifecycle:
    """Tests for start/close and health."""

    @pytest.mark.asyncio
    async def test_context_manager(self, config, stub_runtime):
        async with ValidationManager(config=config, runtime=stub_runtime) as manager:
            assert manager.registry._refresh_task is not None

        assert manager.registry._refresh_task is None

    @pytest.mark.asyncio
    async def test_loads_policy_file_on_start(self, temp_dir, stub_runtime):
        path = temp_dir / "policies.yaml"
        path.write_text(
            "policies:\n"
            "  - id: only_policy\n"
            "    name: Only Policy\n"
            "    enforcement: strict\n"
        )
        config = GuardConfig(enable_audit_log=False, policy_file=str(path))

        async with ValidationManager(config=config, runtime=stub_runtime) as manager:
            assert [p.id for p in manager.registry.snapshot.policies] == ["only_policy"]

    @pytest.mark.asyncio
    async def test_health(self, manager):
        health = await manager.health()

        assert health["status"] == "healthy"
        assert health["policies"] == 3
        assert health["frameworks"] == 2
        assert health["active_sandboxes"] == []
