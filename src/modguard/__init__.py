"""
modguard: Security validation and sandboxing for marketplace modules

Static manifest, permission, malware and vulnerability checks, a
container sandbox with a fixed test battery, declarative policy and
compliance enforcement, and a final scored report.
"""

__version__ = "1.0.0"

from modguard.manager import ValidationManager, parse_submission
from modguard.config import GuardConfig
from modguard.types import (
    ModuleManifest,
    ModuleSubmission,
    ModulePermissionAudit,
    SecurityValidationResult,
    SecurityViolation,
    SandboxTestResult,
    PolicyEnforcementResult,
    SecurityScanReport,
    PipelineEvent,
)
from modguard.scoring import ScoreAggregator
from modguard.api.rest import create_app, app, ErrorResponse

from modguard.errors import (
    ModGuardError,
    ManifestValidationError,
    ScanBackendError,
    SandboxTimeoutError,
    SandboxExecutionError,
    SandboxBusyError,
    IsolationRuntimeUnavailableError,
    PolicyEvaluationError,
    PolicyNotFoundError,
    InvalidRequestError,
)

# Re-export core classes
__all__ = [
    "ValidationManager",
    "parse_submission",
    "GuardConfig",
    "ModuleManifest",
    "ModuleSubmission",
    "ModulePermissionAudit",
    "SecurityValidationResult",
    "SecurityViolation",
    "SandboxTestResult",
    "PolicyEnforcementResult",
    "SecurityScanReport",
    "PipelineEvent",
    "ScoreAggregator",
    # API exports
    "create_app",
    "app",
    "ErrorResponse",
    # Exception classes
    "ModGuardError",
    "ManifestValidationError",
    "ScanBackendError",
    "SandboxTimeoutError",
    "SandboxExecutionError",
    "SandboxBusyError",
    "IsolationRuntimeUnavailableError",
    "PolicyEvaluationError",
    "PolicyNotFoundError",
    "InvalidRequestError",
]
