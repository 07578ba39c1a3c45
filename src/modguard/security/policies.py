"""
Security policy and compliance framework models

Rules are expressed as a closed set of tagged predicates instead of
free-form condition strings. ``evaluate_predicate`` is a pure function over
``PolicyFacts``: the same facts always produce the same answer.
"""

from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from ..types import SEVERITY_RANK, ModuleSubmission, SandboxTestResult, Severity, utc_now

__all__ = [
    "PermissionCountExceeds",
    "PermissionContains",
    "DataTypeIncludes",
    "FlagEquals",
    "MetricExceeds",
    "ViolationPresent",
    "AllOf",
    "AnyOf",
    "Not",
    "Predicate",
    "PolicyFacts",
    "evaluate_predicate",
    "SecurityPolicyRule",
    "SecurityPolicy",
    "ComplianceRequirement",
    "ComplianceFramework",
    "ENFORCEMENT_ORDER",
]

Enforcement = Literal["strict", "moderate", "advisory"]

# Higher wins when several policies apply
ENFORCEMENT_ORDER: Dict[str, int] = {"strict": 3, "moderate": 2, "advisory": 1}

MetricName = Literal["cpu_usage", "memory_usage", "execution_time", "network_requests"]


# =============================================================================
# Predicates
# =============================================================================

class _PredicateBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PermissionCountExceeds(_PredicateBase):
    """More than ``limit`` permissions requested"""
    kind: Literal["permission_count_exceeds"] = "permission_count_exceeds"
    limit: int = Field(..., ge=0)


class PermissionContains(_PredicateBase):
    """Some requested permission contains one of ``tokens`` (case-insensitive)"""
    kind: Literal["permission_contains"] = "permission_contains"
    tokens: List[str] = Field(..., min_length=1)


class DataTypeIncludes(_PredicateBase):
    """The manifest declares one of ``values`` among its data types"""
    kind: Literal["data_type_includes"] = "data_type_includes"
    values: List[str] = Field(..., min_length=1)


class FlagEquals(_PredicateBase):
    """
    A manifest field equals ``value``.

    ``field`` may be dotted (``frontend.entry_url``). A field the manifest
    does not declare never equals anything.
    """
    kind: Literal["flag_equals"] = "flag_equals"
    field: str
    value: Any = None


class MetricExceeds(_PredicateBase):
    """A sandbox metric is strictly above ``threshold``; false without sandbox evidence"""
    kind: Literal["metric_exceeds"] = "metric_exceeds"
    metric: MetricName
    threshold: float


class ViolationPresent(_PredicateBase):
    """
    The sandbox recorded a violation of at least ``min_severity``.

    An empty ``types`` list matches any violation type.
    """
    kind: Literal["violation_present"] = "violation_present"
    types: List[str] = Field(default_factory=list)
    min_severity: Severity = "low"


class AllOf(_PredicateBase):
    kind: Literal["all_of"] = "all_of"
    predicates: List["Predicate"] = Field(..., min_length=1)


class AnyOf(_PredicateBase):
    kind: Literal["any_of"] = "any_of"
    predicates: List["Predicate"] = Field(..., min_length=1)


class Not(_PredicateBase):
    kind: Literal["not"] = "not"
    predicate: "Predicate"


Predicate = Annotated[
    Union[
        PermissionCountExceeds,
        PermissionContains,
        DataTypeIncludes,
        FlagEquals,
        MetricExceeds,
        ViolationPresent,
        AllOf,
        AnyOf,
        Not,
    ],
    Field(discriminator="kind"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()


@dataclass(frozen=True)
class PolicyFacts:
    """Everything a predicate may look at, gathered once per evaluation"""
    category: str = ""
    permissions: Tuple[str, ...] = ()
    data_types: Tuple[str, ...] = ()
    flags: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, float] = field(default_factory=dict)
    violations: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def collect(
        cls,
        submission: ModuleSubmission,
        evidence: Optional[SandboxTestResult] = None,
    ) -> "PolicyFacts":
        manifest = submission.manifest
        flags = manifest.model_dump() if manifest is not None else {}

        metrics: Dict[str, float] = {}
        violations: Tuple[Tuple[str, str], ...] = ()
        if evidence is not None:
            perf = evidence.results.performance_metrics
            metrics = {
                "cpu_usage": float(perf.cpu_usage),
                "memory_usage": float(perf.memory_usage),
                "execution_time": float(perf.execution_time),
                "network_requests": float(perf.network_requests),
            }
            violations = tuple(
                (v.type, v.severity) for v in evidence.results.security_violations
            )

        return cls(
            category=submission.category,
            permissions=tuple(submission.permissions),
            data_types=tuple(manifest.data_types) if manifest is not None else (),
            flags=flags,
            metrics=metrics,
            violations=violations,
        )

    def flag(self, path: str) -> Any:
        """Resolve a dotted manifest path; missing segments resolve to None"""
        value: Any = self.flags
        for part in path.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value


def evaluate_predicate(predicate: Predicate, facts: PolicyFacts) -> bool:
    """Evaluate ``predicate`` against ``facts``"""
    if isinstance(predicate, PermissionCountExceeds):
        return len(facts.permissions) > predicate.limit

    if isinstance(predicate, PermissionContains):
        tokens = [t.lower() for t in predicate.tokens]
        return any(
            token in permission.lower()
            for permission in facts.permissions
            for token in tokens
        )

    if isinstance(predicate, DataTypeIncludes):
        declared = {d.lower() for d in facts.data_types}
        return any(value.lower() in declared for value in predicate.values)

    if isinstance(predicate, FlagEquals):
        value = facts.flag(predicate.field)
        return value is not None and value == predicate.value

    if isinstance(predicate, MetricExceeds):
        if predicate.metric not in facts.metrics:
            return False
        return facts.metrics[predicate.metric] > predicate.threshold

    if isinstance(predicate, ViolationPresent):
        floor = SEVERITY_RANK[predicate.min_severity]
        return any(
            SEVERITY_RANK.get(severity, 0) >= floor
            and (not predicate.types or vtype in predicate.types)
            for vtype, severity in facts.violations
        )

    if isinstance(predicate, AllOf):
        return all(evaluate_predicate(p, facts) for p in predicate.predicates)

    if isinstance(predicate, AnyOf):
        return any(evaluate_predicate(p, facts) for p in predicate.predicates)

    if isinstance(predicate, Not):
        return not evaluate_predicate(predicate.predicate, facts)

    raise TypeError(f"Unsupported predicate: {type(predicate).__name__}")


# =============================================================================
# Policies and frameworks
# =============================================================================

class SecurityPolicyRule(BaseModel):
    """One enforceable rule of a policy"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str
    predicate: Predicate
    action: Literal["deny", "warn"] = "deny"
    severity: Severity = "medium"


class SecurityPolicy(BaseModel):
    """Named rule set with an enforcement level and applicability scope"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    category: str = ""
    rules: List[SecurityPolicyRule] = Field(default_factory=list)
    enforcement: Enforcement = "advisory"
    applicable_modules: List[str] = Field(
        default_factory=lambda: ["*"],
        alias="applicableModules",
        description="'*', module categories, or tokens matched against permissions"
    )
    enabled: bool = True
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def applies_to(self, category: str, permissions: List[str]) -> bool:
        for token in self.applicable_modules:
            if token == "*" or token == category:
                return True
            if any(token in permission for permission in permissions):
                return True
        return False


class ComplianceRequirement(BaseModel):
    """A framework requirement; ``violated_when`` true means non-compliant"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    category: str = ""
    mandatory: bool = True
    violated_when: Predicate = Field(..., alias="violatedWhen")
    remediation: str


class ComplianceFramework(BaseModel):
    """Named set of compliance requirements"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    version: str = "1.0"
    requirements: List[ComplianceRequirement] = Field(default_factory=list)
    applicable_modules: List[str] = Field(
        default_factory=lambda: ["*"],
        alias="applicableModules"
    )
    audit_frequency_days: int = Field(default=365, ge=1, alias="auditFrequency")

    def applies_to(self, category: str) -> bool:
        return "*" in self.applicable_modules or category in self.applicable_modules
