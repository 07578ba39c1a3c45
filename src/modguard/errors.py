"""
modguard error definitions

Standard exceptions used across the modguard project.
"""

from typing import Optional, Dict, Any


class ModGuardError(Exception):
    """Base exception for all modguard errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "UNKNOWN"
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class ManifestValidationError(ModGuardError):
    """Submission manifest is malformed beyond recovery"""

    def __init__(self, module_id: str, reason: str):
        super().__init__(
            message=f"Module '{module_id}' has an invalid manifest: {reason}",
            error_code="VAL_INVALID"
        )
        self.module_id = module_id
        self.reason = reason


class ScanBackendError(ModGuardError):
    """Malware or vulnerability backend could not produce a verdict"""

    def __init__(self, backend: str, reason: str):
        super().__init__(
            message=f"Scan backend '{backend}' unavailable: {reason}",
            error_code="SCAN_BACKEND",
            details={"backend": backend}
        )
        self.backend = backend
        self.reason = reason


class SandboxTimeoutError(ModGuardError):
    """Sandbox run did not signal completion in time"""

    def __init__(self, test_id: str, timeout_ms: int):
        super().__init__(
            message=f"Sandbox test '{test_id}' timed out after {timeout_ms}ms",
            error_code="SBX_TIMEOUT"
        )
        self.test_id = test_id
        self.timeout_ms = timeout_ms


class SandboxExecutionError(ModGuardError):
    """The isolated environment crashed or could not be driven"""

    def __init__(self, test_id: str, reason: str):
        super().__init__(
            message=f"Sandbox test '{test_id}' failed: {reason}",
            error_code="SBX_EXEC"
        )
        self.test_id = test_id
        self.reason = reason


class SandboxBusyError(ModGuardError):
    """A sandbox run for this module is already active"""

    def __init__(self, module_id: str):
        super().__init__(
            message=f"Module '{module_id}' already has an active sandbox run",
            error_code="SBX_BUSY"
        )
        self.module_id = module_id


class IsolationRuntimeUnavailableError(ModGuardError):
    """Container runtime itself is not reachable"""

    def __init__(self, runtime: str, reason: str = ""):
        message = f"Isolation runtime '{runtime}' is not available"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            error_code="RUNTIME_UNAVAILABLE"
        )
        self.runtime = runtime


class PolicyEvaluationError(ModGuardError):
    """A rule predicate raised during evaluation"""

    def __init__(self, rule_id: str, reason: str):
        super().__init__(
            message=f"Rule '{rule_id}' could not be evaluated: {reason}",
            error_code="POL_EVAL"
        )
        self.rule_id = rule_id
        self.reason = reason


class PolicyNotFoundError(ModGuardError):
    """Security policy does not exist in the registry"""

    def __init__(self, policy_id: str):
        super().__init__(
            message=f"Security policy '{policy_id}' not found",
            error_code="POL_NOT_FOUND"
        )
        self.policy_id = policy_id


class InvalidRequestError(ModGuardError):
    """Invalid request parameters"""

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid field '{field}': {reason}",
            error_code="INVALID_REQUEST"
        )
        self.field = field
        self.value = value
        self.reason = reason


# Error codes
ERROR_CODES = {
    # Validation errors (VAL_xxx)
    "VAL_INVALID": "Invalid module manifest",

    # Scanner errors (SCAN_xxx)
    "SCAN_BACKEND": "Scan backend unavailable",

    # Sandbox errors (SBX_xxx)
    "SBX_TIMEOUT": "Sandbox test timeout",
    "SBX_EXEC": "Sandbox execution failed",
    "SBX_BUSY": "Sandbox run already active",

    # Runtime errors
    "RUNTIME_UNAVAILABLE": "Isolation runtime not available",

    # Policy errors (POL_xxx)
    "POL_EVAL": "Policy rule evaluation failed",
    "POL_NOT_FOUND": "Security policy not found",

    # Request errors
    "INVALID_REQUEST": "Invalid request parameter",
}
