"""
modguard core manager

ValidationManager is the single entry point for validating a module
submission. It runs the static checks, the sandbox and the policy engine,
and publishes a PipelineEvent to its observers after every stage.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .backends import IsolationRuntime
from .config import GuardConfig
from .errors import ManifestValidationError
from .monitoring import InMemoryMetricsCollector
from .sandbox import SandboxOrchestrator
from .scoring import PASSING_SCORE, ScoreAggregator, static_phase_score
from .security.audit import AuditLogger, create_audit_logger, manifest_hash
from .security.engine import PolicyEngine
from .security.manifest import ManifestCheck, ManifestValidator
from .security.permissions import PermissionAuditor
from .security.registry import (
    DefaultPolicySource,
    FilePolicySource,
    PolicyRegistry,
    RegistrySnapshot,
)
from .security.scanner import (
    AdvisoryVulnerabilityBackend,
    StaticScanResult,
    StaticThreatScanner,
)
from .types import (
    ModulePermissionAudit,
    ModuleSubmission,
    PipelineEvent,
    PolicyEnforcementResult,
    SandboxTestResult,
    SecurityScanReport,
    SecurityValidationResult,
    ValidationDetails,
)

logger = logging.getLogger(__name__)

Observer = Callable[[PipelineEvent], Any]


def parse_submission(data: Dict[str, Any]) -> ModuleSubmission:
    """
    Build a ModuleSubmission from marketplace JSON.

    Raises:
        ManifestValidationError: The record cannot be parsed at all
    """
    try:
        return ModuleSubmission.model_validate(data)
    except ValidationError as e:
        module_id = str(data.get("id") or "unknown") if isinstance(data, dict) else "unknown"
        reasons = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ManifestValidationError(module_id, reasons) from e


class ValidationManager:
    """
    Main validation pipeline - single entry point for all operations.

    Responsibilities:
    - Static phase (manifest, permissions, malware, vulnerabilities)
    - Sandbox phase
    - Policy and compliance enforcement
    - Report aggregation, metrics and observer notification
    """

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        runtime: Optional[IsolationRuntime] = None,
        registry: Optional[PolicyRegistry] = None,
        scanner: Optional[StaticThreatScanner] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[InMemoryMetricsCollector] = None,
    ):
        """
        Args:
            config: Runtime configuration (defaults when omitted)
            runtime: Isolation runtime (Docker when omitted)
            registry: Policy registry shared with other components
            scanner: Static threat scanner
            audit_logger: Audit logger; created from config when omitted
                and audit logging is enabled
            metrics: Metrics collector
        """
        self.config = config or GuardConfig()

        if runtime is None:
            from .backends.docker import DockerRuntime
            runtime = DockerRuntime()
        self.runtime = runtime

        self.registry = registry or self._build_registry()
        self.manifest_validator = ManifestValidator()
        self.permission_auditor = PermissionAuditor()
        self.scanner = scanner or self._build_scanner()
        self.orchestrator = SandboxOrchestrator(self.runtime, self.config)
        self.engine = PolicyEngine(self.registry)
        self.aggregator = ScoreAggregator()
        self.metrics = metrics or InMemoryMetricsCollector()

        self._observers: List[Observer] = []

        if audit_logger is None and self.config.enable_audit_log:
            audit_logger = create_audit_logger(log_file_path=self.config.audit_log_path)
        self.audit_logger = audit_logger
        if self.audit_logger is not None:
            self.subscribe(self.audit_logger.observe)
            self.registry.add_listener(self._on_registry_updated)

        logger.info(
            f"ValidationManager initialized: runtime={self.runtime.name} "
            f"policies={len(self.registry.snapshot.policies)}"
        )

    def _build_registry(self) -> PolicyRegistry:
        source = (
            FilePolicySource(self.config.policy_file)
            if self.config.policy_file
            else DefaultPolicySource()
        )
        return PolicyRegistry(
            source=source,
            refresh_interval_sec=self.config.policy_refresh_interval_sec,
        )

    def _build_scanner(self) -> StaticThreatScanner:
        if self.config.advisory_db_path:
            return StaticThreatScanner(
                vulnerability_backend=AdvisoryVulnerabilityBackend.from_yaml(self.config.advisory_db_path)
            )
        return StaticThreatScanner()

    # Lifecycle

    async def start(self) -> None:
        """Load file-based policies, start the refresh task and audit worker"""
        if isinstance(self.registry.source, FilePolicySource):
            await self.registry.refresh()
        self.registry.start_refresh()
        if self.audit_logger is not None:
            self.audit_logger.start()

    async def close(self) -> None:
        await self.registry.stop_refresh()
        if self.audit_logger is not None:
            self.audit_logger.close()

    async def __aenter__(self) -> "ValidationManager":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # Observers

    def subscribe(self, observer: Observer) -> None:
        """Register a callable (sync or async) receiving every PipelineEvent"""
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def _publish(self, stage: str, module_id: str, **payload: Any) -> None:
        event = PipelineEvent(stage=stage, module_id=module_id, payload=payload)
        for observer in list(self._observers):
            try:
                outcome = observer(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Observer {observer!r} failed on {stage}: {e}")

    def _on_registry_updated(self, snapshot: RegistrySnapshot) -> None:
        self.audit_logger.log_registry_updated(
            version=snapshot.version,
            policies=len(snapshot.policies),
            frameworks=len(snapshot.frameworks),
        )

    # Pipeline stages

    async def validate_static(self, submission: ModuleSubmission) -> SecurityValidationResult:
        """Manifest, permission, malware and vulnerability checks, run concurrently"""
        if submission.manifest is None:
            check = self.manifest_validator.validate(submission)
            return self._static_result(check, ModulePermissionAudit(), StaticScanResult())

        check, audit, scan = await asyncio.gather(
            self._check_manifest(submission),
            self._audit_permissions(submission),
            self.scanner.scan(submission),
        )
        return self._static_result(check, audit, scan)

    async def _check_manifest(self, submission: ModuleSubmission) -> ManifestCheck:
        return self.manifest_validator.validate(submission)

    async def _audit_permissions(self, submission: ModuleSubmission) -> ModulePermissionAudit:
        return self.permission_auditor.audit(submission)

    @staticmethod
    def _static_result(
        check: ManifestCheck,
        audit: ModulePermissionAudit,
        scan: StaticScanResult,
    ) -> SecurityValidationResult:
        errors = list(check.errors)
        warnings = list(check.warnings)

        if audit.risk_level == "high":
            errors.append("High-risk permissions detected")
        elif audit.risk_level == "medium":
            warnings.append("Medium-risk permissions detected")

        if scan.malware is not None and not scan.malware.is_clean:
            errors.append("Malware detected in module")

        vulns = scan.vulnerabilities
        if vulns is not None and vulns.has_vulnerabilities:
            if vulns.summary.critical_vulnerabilities > 0:
                errors.append(f"{vulns.summary.critical_vulnerabilities} critical vulnerabilities detected")
            warnings.append(f"{vulns.summary.total_vulnerabilities} vulnerabilities detected")

        warnings.extend(scan.warnings)

        score = static_phase_score(len(errors), len(warnings))
        if errors:
            status = "failed"
        elif warnings:
            status = "warning"
        else:
            status = "passed"

        recommendations = []
        if score < PASSING_SCORE:
            recommendations.append("Consider reviewing module permissions and dependencies")
        if warnings:
            recommendations.append("Address security warnings before approval")

        return SecurityValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            security_score=score,
            recommendations=recommendations,
            validation_details=ValidationDetails(
                security_status=status,
                security_score=score,
                permission_audit=audit,
                malware_scan=scan.malware,
                vulnerability_check=scan.vulnerabilities,
            ),
        )

    async def run_sandbox(
        self,
        submission: ModuleSubmission,
        timeout_ms: Optional[int] = None,
    ) -> SandboxTestResult:
        """
        Run the sandbox phase on its own.

        Raises:
            SandboxBusyError: The module already has an active run
            IsolationRuntimeUnavailableError: The runtime is unreachable
        """
        result = await self.orchestrator.run(submission, timeout_ms=timeout_ms)

        timed_out = any(v.type == "timeout" for v in result.results.security_violations)
        duration_ms = result.results.performance_metrics.execution_time
        self.metrics.record_sandbox_run(result.status, duration_ms, timed_out=timed_out)

        await self._publish(
            "sandbox_completed",
            submission.id,
            test_id=result.test_id,
            status=result.status,
            timed_out=timed_out,
            duration_ms=duration_ms,
            success=result.status == "completed",
            violations=len(result.results.security_violations),
        )
        return result

    async def evaluate_policies(
        self,
        submission: ModuleSubmission,
        evidence: Optional[SandboxTestResult] = None,
    ) -> PolicyEnforcementResult:
        """Evaluate the registry's policies and frameworks for one submission"""
        result = self.engine.evaluate(submission, evidence)
        await self._publish(
            "policy_evaluated",
            submission.id,
            security_score=result.score,
            success=result.compliant,
            policy_applied=result.policy_applied,
            frameworks=list(result.frameworks_applied),
            violations=len(result.violations),
            evaluation_errors=list(result.evaluation_errors),
        )
        return result

    async def validate(self, submission: ModuleSubmission) -> SecurityScanReport:
        """
        Run the whole pipeline and return the final report.

        The sandbox and policy phases are skipped when the static phase
        fails.
        """
        self.metrics.record_validation_started()
        try:
            await self._publish(
                "validation_started",
                submission.id,
                manifest_hash=manifest_hash(submission.manifest),
                developer_id=submission.developer_id,
                category=submission.category,
            )

            validation = await self.validate_static(submission)
            await self._publish(
                "static_phase_completed",
                submission.id,
                status=validation.security_status,
                security_score=validation.security_score,
                success=validation.is_valid,
                errors=list(validation.errors),
                warnings=list(validation.warnings),
            )

            sandbox: Optional[SandboxTestResult] = None
            enforcement: Optional[PolicyEnforcementResult] = None
            if validation.security_status != "failed":
                sandbox = await self.run_sandbox(submission)
                enforcement = await self.evaluate_policies(submission, sandbox)
            else:
                logger.info(f"Module {submission.id} failed static validation; sandbox skipped")

            report = self.aggregator.aggregate(submission, validation, sandbox, enforcement)
        except Exception:
            self.metrics.record_validation_finished("error")
            raise

        self.metrics.record_validation_finished(report.overall_status)
        await self._publish(
            "report_ready",
            submission.id,
            status=report.overall_status,
            security_score=report.security_score,
            success=report.overall_status != "failed",
        )
        logger.info(
            f"Module {submission.id} validated: {report.overall_status} "
            f"(score {report.security_score})"
        )
        return report

    async def health(self) -> Dict[str, Any]:
        runtime_health = await self.runtime.health_check()
        snapshot = self.registry.snapshot
        return {
            "status": "healthy" if runtime_health.get("status") == "healthy" else "degraded",
            "runtime": runtime_health,
            "registry_version": snapshot.version,
            "policies": len(snapshot.policies),
            "frameworks": len(snapshot.frameworks),
            "active_sandboxes": self.orchestrator.active_modules,
        }
