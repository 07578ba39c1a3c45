"""
Policy engine.

Selects the most restrictive applicable policy, evaluates its rules and
every applicable compliance framework against the submission and its
sandbox evidence, and scores the outcome.
"""

import logging
from typing import List, Optional

from ..errors import PolicyEvaluationError
from ..scoring import penalty_score
from ..types import (
    ModuleSubmission,
    PolicyEnforcementResult,
    SandboxTestResult,
    SecurityViolation,
)
from .policies import (
    ENFORCEMENT_ORDER,
    ComplianceFramework,
    PolicyFacts,
    Predicate,
    SecurityPolicy,
    evaluate_predicate,
)
from .registry import PolicyRegistry, RegistrySnapshot

logger = logging.getLogger(__name__)


class PolicyEngine:
    """Evaluates submissions against the registry's current snapshot"""

    def __init__(self, registry: Optional[PolicyRegistry] = None):
        self.registry = registry or PolicyRegistry()

    def select_policy(
        self,
        category: str,
        permissions: List[str],
        snapshot: Optional[RegistrySnapshot] = None,
    ) -> Optional[SecurityPolicy]:
        """
        Most restrictive enabled policy that applies, or None.

        Ordering is strict > moderate > advisory; equal levels keep
        registration order.
        """
        snapshot = snapshot or self.registry.snapshot
        applicable = [
            policy for policy in snapshot.policies
            if policy.enabled and policy.applies_to(category, permissions)
        ]
        if not applicable:
            return None
        # sorted() is stable, so registration order breaks ties
        ranked = sorted(applicable, key=lambda p: ENFORCEMENT_ORDER[p.enforcement], reverse=True)
        return ranked[0]

    def applicable_frameworks(
        self,
        category: str,
        snapshot: Optional[RegistrySnapshot] = None,
    ) -> List[ComplianceFramework]:
        snapshot = snapshot or self.registry.snapshot
        return [f for f in snapshot.frameworks if f.applies_to(category)]

    def evaluate(
        self,
        submission: ModuleSubmission,
        evidence: Optional[SandboxTestResult] = None,
    ) -> PolicyEnforcementResult:
        snapshot = self.registry.snapshot
        facts = PolicyFacts.collect(submission, evidence)
        result = PolicyEnforcementResult(module_id=submission.id)

        policy = self.select_policy(submission.category, submission.permissions, snapshot)
        if policy is not None:
            result.policy_applied = policy.id
            self._apply_policy(policy, facts, result)

        for framework in self.applicable_frameworks(submission.category, snapshot):
            result.frameworks_applied.append(framework.id)
            self._apply_framework(framework, facts, result)

        result.compliant = not result.violations
        result.score = penalty_score(result.violations, result.warnings)

        logger.info(
            f"Policy check for {submission.id}: policy={result.policy_applied} "
            f"violations={len(result.violations)} warnings={len(result.warnings)} "
            f"score={result.score}"
        )
        return result

    def _apply_policy(
        self,
        policy: SecurityPolicy,
        facts: PolicyFacts,
        result: PolicyEnforcementResult,
    ) -> None:
        for rule in policy.rules:
            if not self._matches(rule.id, rule.predicate, facts, result):
                continue

            if rule.action == "deny":
                result.violations.append(SecurityViolation.create(
                    type=rule.id,
                    severity=rule.severity,
                    description=rule.description,
                    policy=policy.id,
                    rule=rule.name,
                ))
            else:
                result.warnings.append(f"{rule.name}: {rule.description}")
            _add_unique(result.recommendations, f"Address violation: {rule.description}")

    def _apply_framework(
        self,
        framework: ComplianceFramework,
        facts: PolicyFacts,
        result: PolicyEnforcementResult,
    ) -> None:
        for requirement in framework.requirements:
            check_id = f"{framework.id}.{requirement.id}"
            if not self._matches(check_id, requirement.violated_when, facts, result):
                continue

            if requirement.mandatory:
                result.violations.append(SecurityViolation.create(
                    type="compliance_violation",
                    severity="high",
                    description=f"Non-compliance with {requirement.name}",
                    framework=framework.name,
                    requirement=requirement.name,
                    remediation=requirement.remediation,
                ))
            else:
                result.warnings.append(
                    f"Non-compliance with {requirement.name} ({framework.name})"
                )
            _add_unique(result.recommendations, requirement.remediation)

    @staticmethod
    def _matches(
        check_id: str,
        predicate: Predicate,
        facts: PolicyFacts,
        result: PolicyEnforcementResult,
    ) -> bool:
        # A predicate that raises counts as non-matching and is reported
        try:
            return evaluate_predicate(predicate, facts)
        except Exception as e:
            error = PolicyEvaluationError(check_id, str(e))
            logger.warning(str(error))
            result.evaluation_errors.append(str(error))
            return False


def _add_unique(items: List[str], value: str) -> None:
    if value not in items:
        items.append(value)
