"""
modguard API module

REST API over the validation pipeline and policy registry.
"""

from modguard.api.rest import (
    create_app,
    app,
    ErrorResponse,
    HealthStatus,
    SystemMetrics,
    RefreshResult,
    ERROR_CODE_MAP,
)

__all__ = [
    "create_app",
    "app",
    "ErrorResponse",
    "HealthStatus",
    "SystemMetrics",
    "RefreshResult",
    "ERROR_CODE_MAP",
]
