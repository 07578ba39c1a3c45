"""
Scoring and final report aggregation.
"""

from typing import Iterable, List, Optional

from .types import (
    SEVERITY_RANK,
    ModuleSubmission,
    PolicyEnforcementResult,
    SandboxTestResult,
    SecurityScanReport,
    SecurityValidationResult,
    SecurityViolation,
)

# Static phase
ERROR_PENALTY = 20
STATIC_WARNING_PENALTY = 10

# Sandbox and policy phase
SEVERITY_PENALTY = {"critical": 25, "high": 15, "medium": 10, "low": 5}
WARNING_PENALTY = 2

PASSING_SCORE = 80


def static_phase_score(errors: int, warnings: int) -> int:
    return max(0, 100 - ERROR_PENALTY * errors - STATIC_WARNING_PENALTY * warnings)


def penalty_score(violations: Iterable[SecurityViolation], warnings: Iterable[str]) -> int:
    """100 minus severity penalties and 2 per warning, floored at 0"""
    score = 100
    for violation in violations:
        score -= SEVERITY_PENALTY.get(violation.severity, 0)
    score -= WARNING_PENALTY * len(list(warnings))
    return max(score, 0)


def is_severe(violation: SecurityViolation) -> bool:
    return SEVERITY_RANK[violation.severity] >= SEVERITY_RANK["high"]


class ScoreAggregator:
    """Folds the three phase results into a SecurityScanReport"""

    def aggregate(
        self,
        submission: ModuleSubmission,
        validation: SecurityValidationResult,
        sandbox: Optional[SandboxTestResult] = None,
        enforcement: Optional[PolicyEnforcementResult] = None,
    ) -> SecurityScanReport:
        violations: List[SecurityViolation] = []
        if sandbox is not None:
            violations.extend(sandbox.results.security_violations)
        if enforcement is not None:
            violations.extend(enforcement.violations)
        policy_warnings = list(enforcement.warnings) if enforcement is not None else []

        dynamic_score = penalty_score(violations, policy_warnings)
        security_score = min(validation.security_score, dynamic_score)

        if validation.security_status == "failed" or any(is_severe(v) for v in violations):
            overall_status = "failed"
        elif violations or validation.warnings or policy_warnings:
            overall_status = "warning"
        else:
            overall_status = "passed"

        recommendations: List[str] = []
        for item in list(validation.recommendations) + (
            list(enforcement.recommendations) if enforcement is not None else []
        ):
            if item not in recommendations:
                recommendations.append(item)

        details = validation.validation_details
        return SecurityScanReport(
            module_id=submission.id,
            module_name=submission.name or (submission.manifest.name if submission.manifest else "") or submission.id,
            overall_status=overall_status,
            security_score=security_score,
            malware_scan=details.malware_scan,
            vulnerability_check=details.vulnerability_check,
            recommendations=recommendations,
            next_steps=self._next_steps(overall_status, validation, sandbox),
            validation=validation,
            sandbox=sandbox,
            enforcement=enforcement,
        )

    @staticmethod
    def _next_steps(
        overall_status: str,
        validation: SecurityValidationResult,
        sandbox: Optional[SandboxTestResult],
    ) -> List[str]:
        steps: List[str] = []
        audit = validation.validation_details.permission_audit

        if audit is not None and audit.rejected_permissions:
            steps.append(
                "Remove or justify rejected permissions: " + ", ".join(audit.rejected_permissions)
            )

        if overall_status == "failed":
            if not validation.is_valid:
                steps.append("Fix the static validation errors and resubmit the module")
            if sandbox is not None and sandbox.status == "failed":
                steps.append("Investigate the sandbox failure before resubmitting")
            steps.append("Module rejected: resolve all high and critical findings")
        elif overall_status == "warning":
            steps.append("Address the reported warnings")
            steps.append("Request a manual security review before approval")
        else:
            steps.append("Module is ready for marketplace approval")

        return steps
