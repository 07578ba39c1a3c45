"""
modguard type definitions

Records exchanged between the pipeline stages and with the marketplace.
Input models accept the marketplace's camelCase keys as aliases.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "Severity",
    "RiskLevel",
    "SecurityStatus",
    "SandboxStatus",
    "utc_now",
    "FrontendConfig",
    "ModuleManifest",
    "ModuleSubmission",
    "ModulePermissionAudit",
    "MalwareScanResult",
    "Vulnerability",
    "VulnerabilitySummary",
    "VulnerabilityCheckResult",
    "ValidationDetails",
    "SecurityValidationResult",
    "SecurityViolation",
    "NetworkTrafficLog",
    "PerformanceMetrics",
    "BehaviorAnalysis",
    "ScenarioOutcome",
    "ResourceLimitsSpec",
    "MonitoringFlags",
    "SandboxTestEnvironment",
    "SandboxTestScenario",
    "SandboxResults",
    "SandboxTestResult",
    "PolicyEnforcementResult",
    "SecurityScanReport",
    "PipelineEvent",
]

Severity = Literal["low", "medium", "high", "critical"]
RiskLevel = Literal["low", "medium", "high"]
SecurityStatus = Literal["pending", "passed", "warning", "failed"]
SandboxStatus = Literal["pending", "running", "completed", "failed"]

SEVERITY_RANK: Dict[str, int] = {"low": 1, "medium": 2, "high": 3, "critical": 4}


def utc_now() -> str:
    """ISO 8601 timestamp in UTC"""
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Submission (input, read-only)
# =============================================================================

class FrontendConfig(BaseModel):
    """Remote UI entry point of a module"""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    entry_url: Optional[str] = Field(
        default=None,
        alias="entryUrl",
        description="URL the host platform loads the module from"
    )

    scripts: List[str] = Field(
        default_factory=list,
        description="Additional script URLs the module declares"
    )


class ModuleManifest(BaseModel):
    """
    Declared manifest of a module.

    The descriptive fields are optional on purpose: a missing field is a
    validation error reported by ManifestValidator, not a parse failure.
    Unknown keys are kept and exposed to policy flag predicates.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    name: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    license: Optional[str] = None

    permissions: List[str] = Field(default_factory=list)

    frontend: FrontendConfig = Field(default_factory=FrontendConfig)

    dependencies: List[str] = Field(
        default_factory=list,
        description="Declared dependencies as 'name@version' strings"
    )

    data_types: List[str] = Field(
        default_factory=list,
        alias="dataTypes",
        description="Kinds of user data the module processes (e.g. pii, email)"
    )

    encryption: Optional[bool] = Field(
        default=None,
        description="Whether all data in transit is encrypted"
    )

    consent_management: Optional[bool] = Field(
        default=None,
        alias="consentManagement",
        description="Whether the module implements user consent flows"
    )

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalise_dependencies(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [f"{name}@{version}" if version else str(name) for name, version in value.items()]
        return value

    @field_validator("permissions", mode="before")
    @classmethod
    def _none_permissions(cls, value: Any) -> Any:
        return [] if value is None else value


class ModuleSubmission(BaseModel):
    """Module submission as handed over by the marketplace"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1, description="Module identifier")

    name: str = Field(default="", description="Display name")

    category: str = Field(default="", description="Marketplace category")

    developer_id: Optional[str] = Field(
        default=None,
        alias="developerId",
        description="Submitting developer"
    )

    manifest: Optional[ModuleManifest] = Field(
        default=None,
        description="Declared manifest (None when the marketplace sent none)"
    )

    @property
    def permissions(self) -> List[str]:
        return list(self.manifest.permissions) if self.manifest else []

    @property
    def entry_url(self) -> Optional[str]:
        return self.manifest.frontend.entry_url if self.manifest else None


# =============================================================================
# Static phase
# =============================================================================

class ModulePermissionAudit(BaseModel):
    """Outcome of classifying the requested permissions"""

    requested_permissions: List[str] = Field(default_factory=list)
    approved_permissions: List[str] = Field(default_factory=list)
    rejected_permissions: List[str] = Field(default_factory=list)
    justification: Dict[str, str] = Field(default_factory=dict)
    risk_level: RiskLevel = "low"


class MalwareScanResult(BaseModel):
    """Verdict of a malware backend"""

    is_clean: bool
    scan_id: str
    scan_date: str = Field(default_factory=utc_now)
    detected_threats: List[str] = Field(default_factory=list)
    scan_provider: str = "heuristic-scanner"
    confidence: int = Field(default=95, ge=0, le=100)


class Vulnerability(BaseModel):
    """Dependency-level finding"""

    id: str
    severity: Severity
    description: str
    affected_dependencies: List[str] = Field(default_factory=list)


class VulnerabilitySummary(BaseModel):
    """Counts per severity"""

    total_vulnerabilities: int = 0
    critical_vulnerabilities: int = 0
    high_vulnerabilities: int = 0
    medium_vulnerabilities: int = 0
    low_vulnerabilities: int = 0

    @classmethod
    def from_findings(cls, findings: List[Vulnerability]) -> "VulnerabilitySummary":
        counts = {"critical": 0, "high": 0, "medium": 0, "low": 0}
        for finding in findings:
            counts[finding.severity] += 1
        return cls(
            total_vulnerabilities=len(findings),
            critical_vulnerabilities=counts["critical"],
            high_vulnerabilities=counts["high"],
            medium_vulnerabilities=counts["medium"],
            low_vulnerabilities=counts["low"],
        )


class VulnerabilityCheckResult(BaseModel):
    """Verdict of a vulnerability backend"""

    has_vulnerabilities: bool
    vulnerabilities: List[Vulnerability] = Field(default_factory=list)
    summary: VulnerabilitySummary = Field(default_factory=VulnerabilitySummary)
    scan_date: str = Field(default_factory=utc_now)


class ValidationDetails(BaseModel):
    """Evidence gathered during the static phase"""

    security_status: SecurityStatus = "pending"
    security_score: int = Field(default=0, ge=0, le=100)
    permission_audit: Optional[ModulePermissionAudit] = None
    malware_scan: Optional[MalwareScanResult] = None
    vulnerability_check: Optional[VulnerabilityCheckResult] = None
    validated_at: str = Field(default_factory=utc_now)
    validated_by: str = "system"


class SecurityValidationResult(BaseModel):
    """Result of the static phase"""

    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    security_score: int = Field(..., ge=0, le=100)
    recommendations: List[str] = Field(default_factory=list)
    validation_details: ValidationDetails = Field(default_factory=ValidationDetails)

    @property
    def security_status(self) -> SecurityStatus:
        return self.validation_details.security_status


# =============================================================================
# Sandbox phase
# =============================================================================

class SecurityViolation(BaseModel):
    """Severity-tagged finding. Never edited once recorded."""

    model_config = ConfigDict(frozen=True)

    type: str
    severity: Severity
    description: str
    timestamp: str = Field(default_factory=utc_now)
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        type: str,
        severity: Severity,
        description: str,
        **details: Any,
    ) -> "SecurityViolation":
        return cls(type=type, severity=severity, description=description, details=details)


class NetworkTrafficLog(BaseModel):
    """One request observed inside the sandbox"""

    url: str
    method: str = "GET"
    timestamp: str = Field(default_factory=utc_now)
    headers: Dict[str, Any] = Field(default_factory=dict)
    blocked: bool = False
    scenario_id: Optional[str] = None


class PerformanceMetrics(BaseModel):
    """Resource usage of a sandbox run"""

    cpu_usage: float = 0.0
    memory_usage: int = 0
    execution_time: int = 0
    network_requests: int = 0


class BehaviorAnalysis(BaseModel):
    """Behavioural findings extracted from telemetry"""

    suspicious_activities: List[str] = Field(default_factory=list)
    api_calls: List[str] = Field(default_factory=list)
    file_operations: List[str] = Field(default_factory=list)
    network_connections: List[str] = Field(default_factory=list)
    module_errors: List[str] = Field(default_factory=list)


class ScenarioOutcome(BaseModel):
    """What the probe reported for one scenario"""

    scenario_id: str
    status: str = "unknown"
    duration_ms: Optional[int] = None
    error: Optional[str] = None


class ResourceLimitsSpec(BaseModel):
    """Declared limits of the isolated environment"""

    model_config = ConfigDict(frozen=True)

    cpu: float = Field(..., gt=0, le=0.5, description="Share of one CPU core")
    memory: int = Field(..., gt=0, le=512 * 1024 * 1024, description="Memory in bytes")
    disk: int = Field(..., gt=0, le=1024 * 1024 * 1024, description="Disk in bytes")
    network: List[str] = Field(default_factory=lambda: ["http", "https"])


class MonitoringFlags(BaseModel):
    """Which telemetry hooks are attached"""

    model_config = ConfigDict(frozen=True)

    network_traffic: bool = True
    console_output: bool = True
    file_system_access: bool = True
    performance_metrics: bool = True
    security_violations: bool = True


class SandboxTestEnvironment(BaseModel):
    """Environment definition; created fresh per run and never mutated"""

    model_config = ConfigDict(frozen=True)

    runtime: str = "docker"
    isolation: str = "network"
    image: str
    resource_limits: ResourceLimitsSpec
    monitoring: MonitoringFlags = Field(default_factory=MonitoringFlags)
    module_url: str = "unknown"


class SandboxTestScenario(BaseModel):
    """One test case of the fixed battery"""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    test_type: Literal["functional", "security", "performance"]
    expected_behavior: str
    timeout: int = Field(..., gt=0, description="Scenario timeout (milliseconds)")


class SandboxResults(BaseModel):
    """Telemetry bag of a sandbox run"""

    network_traffic: List[NetworkTrafficLog] = Field(default_factory=list)
    security_violations: List[SecurityViolation] = Field(default_factory=list)
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    behavior_analysis: BehaviorAnalysis = Field(default_factory=BehaviorAnalysis)
    scenario_outcomes: List[ScenarioOutcome] = Field(default_factory=list)


# Allowed status transitions; completed and failed are terminal
_SANDBOX_TRANSITIONS: Dict[str, tuple] = {
    "pending": ("running", "failed"),
    "running": ("completed", "failed"),
    "completed": (),
    "failed": (),
}


class SandboxTestResult(BaseModel):
    """State of one sandbox run"""

    test_id: str
    module_id: str
    environment: SandboxTestEnvironment
    scenarios: List[SandboxTestScenario] = Field(default_factory=list)
    results: SandboxResults = Field(default_factory=SandboxResults)
    status: SandboxStatus = "pending"
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def transition(self, status: SandboxStatus) -> None:
        """Move to ``status``; raises ValueError on an illegal transition"""
        if status not in _SANDBOX_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal sandbox transition {self.status} -> {status}")
        self.status = status
        if status == "running":
            self.started_at = utc_now()
        elif status in ("completed", "failed"):
            self.completed_at = utc_now()

    def record_violation(self, violation: SecurityViolation) -> None:
        self.results.security_violations.append(violation)


# =============================================================================
# Policy phase and final report
# =============================================================================

class PolicyEnforcementResult(BaseModel):
    """Outcome of evaluating policies and compliance frameworks"""

    module_id: str
    compliant: bool = True
    violations: List[SecurityViolation] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    policy_applied: Optional[str] = None
    frameworks_applied: List[str] = Field(default_factory=list)
    checked_at: str = Field(default_factory=utc_now)
    score: int = Field(default=100, ge=0, le=100)
    evaluation_errors: List[str] = Field(
        default_factory=list,
        description="Predicates that raised and were treated as non-matching"
    )


class SecurityScanReport(BaseModel):
    """Final artifact handed to marketplace and admin collaborators"""

    module_id: str
    module_name: str
    scan_date: str = Field(default_factory=utc_now)
    overall_status: Literal["passed", "warning", "failed"]
    security_score: int = Field(..., ge=0, le=100)
    malware_scan: Optional[MalwareScanResult] = None
    vulnerability_check: Optional[VulnerabilityCheckResult] = None
    recommendations: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)

    validation: Optional[SecurityValidationResult] = None
    sandbox: Optional[SandboxTestResult] = None
    enforcement: Optional[PolicyEnforcementResult] = None


class PipelineEvent(BaseModel):
    """Message published to pipeline observers after each stage"""

    stage: Literal[
        "validation_started",
        "static_phase_completed",
        "sandbox_completed",
        "policy_evaluated",
        "report_ready",
    ]
    module_id: str
    timestamp: str = Field(default_factory=utc_now)
    payload: Dict[str, Any] = Field(default_factory=dict)
