"""
Permission auditing.

Every requested capability lands in exactly one risk bucket. Buckets are
checked most-severe first, so a permission such as ``read-system`` is
rejected rather than approved as a read permission.
"""

import logging
from typing import Dict, Tuple

from ..types import ModulePermissionAudit, ModuleSubmission

logger = logging.getLogger(__name__)

HIGH_RISK_PERMISSIONS: Tuple[str, ...] = (
    "file-system",
    "network-access",
    "process-spawn",
    "system-access",
)

# Any permission naming these is privileged regardless of its prefix
PRIVILEGED_TOKENS: Tuple[str, ...] = ("system", "admin", "root")

MEDIUM_RISK_PERMISSIONS: Tuple[str, ...] = ("storage", "api-access", "user-data")

LOW_RISK_PERMISSIONS: Tuple[str, ...] = ("read", "display", "notifications")

JUSTIFICATIONS: Dict[str, str] = {
    "high": "High risk permission - requires admin approval",
    "medium": "Medium risk permission - manual review required",
    "low": "Low risk permission",
    "unknown": "Unknown permission - manual review required",
}

_RISK_ORDER = {"low": 0, "medium": 1, "high": 2}


def classify_permission(permission: str) -> str:
    """Return ``high``, ``medium``, ``low`` or ``unknown`` for one permission."""
    value = permission.lower()
    if any(token in value for token in HIGH_RISK_PERMISSIONS + PRIVILEGED_TOKENS):
        return "high"
    if any(token in value for token in MEDIUM_RISK_PERMISSIONS):
        return "medium"
    if any(token in value for token in LOW_RISK_PERMISSIONS):
        return "low"
    return "unknown"


class PermissionAuditor:
    """Partitions requested permissions into approved and rejected sets."""

    def audit(self, submission: ModuleSubmission) -> ModulePermissionAudit:
        requested = submission.permissions
        audit = ModulePermissionAudit(requested_permissions=list(requested))
        risk_level = "low"

        for permission in requested:
            bucket = classify_permission(permission)
            audit.justification[permission] = JUSTIFICATIONS[bucket]

            if bucket == "high":
                audit.rejected_permissions.append(permission)
                risk_level = "high"
                continue

            audit.approved_permissions.append(permission)
            if bucket in ("medium", "unknown") and _RISK_ORDER[risk_level] < _RISK_ORDER["medium"]:
                risk_level = "medium"

        audit.risk_level = risk_level
        if audit.rejected_permissions:
            logger.info(
                f"Module {submission.id}: rejected permissions {audit.rejected_permissions}"
            )
        return audit
