"""
modguard security module

Static checks and policy enforcement for module submissions:
- manifest: Manifest and entry-URL validation
- permissions: Permission risk auditing
- scanner: Malware and dependency vulnerability scanning
- policies / registry / engine: Declarative policies and compliance frameworks
- audit: Audit logging
"""

from .manifest import ManifestCheck, ManifestValidator

from .permissions import PermissionAuditor, classify_permission

from .scanner import (
    Advisory,
    AdvisoryVulnerabilityBackend,
    HeuristicMalwareBackend,
    MalwareBackend,
    StaticScanResult,
    StaticThreatScanner,
    VulnerabilityBackend,
)

from .policies import (
    AllOf,
    AnyOf,
    ComplianceFramework,
    ComplianceRequirement,
    DataTypeIncludes,
    FlagEquals,
    MetricExceeds,
    Not,
    PermissionContains,
    PermissionCountExceeds,
    PolicyFacts,
    SecurityPolicy,
    SecurityPolicyRule,
    ViolationPresent,
    evaluate_predicate,
)

from .registry import (
    DefaultPolicySource,
    FilePolicySource,
    PolicyRegistry,
    PolicySource,
    RegistrySnapshot,
    default_frameworks,
    default_policies,
)

from .engine import PolicyEngine

from .audit import (
    AuditLogger,
    AuditEntry,
    AuditEventType,
    AuditOutput,
    JSONFileOutput,
    StructuredLogOutput,
    create_audit_logger,
)

__all__ = [
    # Static phase
    "ManifestCheck",
    "ManifestValidator",
    "PermissionAuditor",
    "classify_permission",
    "Advisory",
    "AdvisoryVulnerabilityBackend",
    "HeuristicMalwareBackend",
    "MalwareBackend",
    "StaticScanResult",
    "StaticThreatScanner",
    "VulnerabilityBackend",
    # Policies
    "AllOf",
    "AnyOf",
    "ComplianceFramework",
    "ComplianceRequirement",
    "DataTypeIncludes",
    "FlagEquals",
    "MetricExceeds",
    "Not",
    "PermissionContains",
    "PermissionCountExceeds",
    "PolicyFacts",
    "SecurityPolicy",
    "SecurityPolicyRule",
    "ViolationPresent",
    "evaluate_predicate",
    "DefaultPolicySource",
    "FilePolicySource",
    "PolicyRegistry",
    "PolicySource",
    "RegistrySnapshot",
    "default_frameworks",
    "default_policies",
    "PolicyEngine",
    # Audit
    "AuditLogger",
    "AuditEntry",
    "AuditEventType",
    "AuditOutput",
    "JSONFileOutput",
    "StructuredLogOutput",
    "create_audit_logger",
]
