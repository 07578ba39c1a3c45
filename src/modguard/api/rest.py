"""
FastAPI REST API Server for modguard

Exposes the validation pipeline and policy administration over HTTP.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from modguard import __version__
from modguard.config import GuardConfig
from modguard.errors import (
    InvalidRequestError,
    IsolationRuntimeUnavailableError,
    ManifestValidationError,
    ModGuardError,
    PolicyEvaluationError,
    PolicyNotFoundError,
    SandboxBusyError,
    SandboxExecutionError,
    SandboxTimeoutError,
    ScanBackendError,
)
from modguard.security.policies import ComplianceFramework, SecurityPolicy
from modguard.types import SecurityScanReport, SecurityValidationResult, utc_now

logger = logging.getLogger(__name__)

# =============================================================================
# Request/Response Models
# =============================================================================

class HealthStatus(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Overall health status")
    version: str = Field(..., description="API version")
    runtime: Dict[str, Any] = Field(
        default_factory=dict,
        description="Isolation runtime status"
    )
    registry_version: int = Field(default=0, description="Current policy registry version")
    active_sandboxes: List[str] = Field(
        default_factory=list,
        description="Module ids with a sandbox run in progress"
    )
    timestamp: str = Field(default_factory=utc_now, description="Response timestamp")


class SystemMetrics(BaseModel):
    """Pipeline metrics response"""
    validations_started: int = 0
    validations_passed: int = 0
    validations_warning: int = 0
    validations_failed: int = 0
    validations_errored: int = 0
    validations_in_progress: int = 0
    sandbox_runs: int = 0
    sandbox_completed: int = 0
    sandbox_failed: int = 0
    sandbox_timeouts: int = 0
    avg_sandbox_duration_ms: float = 0.0


class RefreshResult(BaseModel):
    """Policy registry refresh response"""
    refreshed: bool = Field(..., description="False when the source failed and the old snapshot was kept")
    version: int = Field(..., description="Registry version after the refresh")


class ErrorResponse(BaseModel):
    """Uniform error body"""
    error_code: str = Field(..., description="Error code (see modguard.errors.ERROR_CODES)")
    message: str = Field(..., description="Human readable error description")
    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional error details"
    )
    request_id: str = Field(..., description="Request tracking id")
    timestamp: str = Field(default_factory=utc_now, description="Error time (ISO 8601)")


# =============================================================================
# Error Code Mapping
# =============================================================================

ERROR_CODE_MAP = {
    ManifestValidationError: 422,
    ScanBackendError: 502,
    SandboxTimeoutError: 408,
    SandboxExecutionError: 500,
    SandboxBusyError: 409,
    IsolationRuntimeUnavailableError: 503,
    PolicyEvaluationError: 500,
    PolicyNotFoundError: 404,
    InvalidRequestError: 400,
}


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(config: Optional[GuardConfig] = None, manager=None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        config: Optional configuration (read from GUARD_* env when omitted)
        manager: Pre-built ValidationManager (created lazily when omitted)

    Returns:
        Configured FastAPI application
    """
    if config is None:
        config = GuardConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = _get_or_create_manager(app)
        await manager.start()
        try:
            yield
        finally:
            await manager.close()

    app = FastAPI(
        title="modguard API",
        version=__version__,
        description="Security validation and sandboxing for marketplace module submissions",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.state.config = config
    if manager is not None:
        app.state.manager = manager

    register_exception_handlers(app)
    register_routes(app)

    logger.info(f"FastAPI application created (policy_file={config.policy_file})")
    return app


def _get_or_create_manager(app: FastAPI):
    from modguard.manager import ValidationManager

    if not hasattr(app.state, "manager"):
        app.state.manager = ValidationManager(app.state.config)
    return app.state.manager


def register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers"""

    @app.exception_handler(ModGuardError)
    async def modguard_error_handler(request: Request, exc: ModGuardError):
        status_code = ERROR_CODE_MAP.get(type(exc), 500)
        request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

        error_response = ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        )

        logger.error(f"ModGuardError: {exc.error_code} - {exc.message}", extra={"request_id": request_id})

        return JSONResponse(status_code=status_code, content=error_response.model_dump())

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

        logger.error(f"Unexpected error: {exc}", exc_info=True, extra={"request_id": request_id})

        error_response = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message=str(exc) or "An unexpected error occurred",
            request_id=request_id,
        )
        return JSONResponse(status_code=500, content=error_response.model_dump())


def register_routes(app: FastAPI) -> None:
    """Register all API routes"""

    async def get_manager():
        return _get_or_create_manager(app)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request.state.request_id = str(uuid.uuid4())
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response

    # =========================================================================
    # Health & Metrics
    # =========================================================================

    @app.get("/v1/health", response_model=HealthStatus, tags=["System"])
    async def health_check(manager=Depends(get_manager)):
        """Runtime reachability and registry state"""
        try:
            health = await manager.health()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return HealthStatus(status="degraded", version=__version__, runtime={"error": str(e)})

        return HealthStatus(
            status=health["status"],
            version=__version__,
            runtime=health["runtime"],
            registry_version=health["registry_version"],
            active_sandboxes=health["active_sandboxes"],
        )

    @app.get("/v1/metrics", response_model=SystemMetrics, tags=["System"])
    async def get_metrics(manager=Depends(get_manager)):
        return SystemMetrics(**manager.metrics.snapshot().to_dict())

    # =========================================================================
    # Validation
    # =========================================================================

    @app.post("/v1/validations", response_model=SecurityScanReport, tags=["Validation"])
    async def validate_module(
        submission: Dict[str, Any] = Body(..., description="Module submission as sent by the marketplace"),
        manager=Depends(get_manager),
    ):
        """
        Run the full pipeline: static checks, sandbox, policies.

        Blocks until the sandbox run finishes or times out.
        """
        from modguard.manager import parse_submission

        module = parse_submission(submission)
        logger.info(f"Validation requested for module {module.id}")
        return await manager.validate(module)

    @app.post("/v1/validations/static", response_model=SecurityValidationResult, tags=["Validation"])
    async def validate_module_static(
        submission: Dict[str, Any] = Body(...),
        manager=Depends(get_manager),
    ):
        """Static checks only; never starts a sandbox"""
        from modguard.manager import parse_submission

        return await manager.validate_static(parse_submission(submission))

    # =========================================================================
    # Policies
    # =========================================================================

    @app.get("/v1/policies", response_model=List[SecurityPolicy], tags=["Policies"])
    async def list_policies(manager=Depends(get_manager)):
        return list(manager.registry.snapshot.policies)

    @app.get("/v1/policies/{policy_id}", response_model=SecurityPolicy, tags=["Policies"])
    async def get_policy(policy_id: str, manager=Depends(get_manager)):
        return manager.registry.get_policy(policy_id)

    @app.patch("/v1/policies/{policy_id}", response_model=SecurityPolicy, tags=["Policies"])
    async def update_policy(
        policy_id: str,
        updates: Dict[str, Any] = Body(...),
        manager=Depends(get_manager),
    ):
        """Administrative partial update; the registry swaps in a new snapshot"""
        if "id" in updates and updates["id"] != policy_id:
            raise InvalidRequestError("id", updates["id"], "policy id cannot be changed")
        return manager.registry.update_policy(policy_id, updates)

    @app.post("/v1/policies/refresh", response_model=RefreshResult, tags=["Policies"])
    async def refresh_policies(manager=Depends(get_manager)):
        refreshed = await manager.registry.refresh()
        return RefreshResult(refreshed=refreshed, version=manager.registry.snapshot.version)

    @app.get("/v1/frameworks", response_model=List[ComplianceFramework], tags=["Policies"])
    async def list_frameworks(manager=Depends(get_manager)):
        return list(manager.registry.snapshot.frameworks)

    # =========================================================================
    # Root Endpoint
    # =========================================================================

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": "modguard API",
            "version": __version__,
            "docs": "/docs",
            "health": "/v1/health",
        }


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """CLI entry point for modguard-api command."""
    import argparse
    import uvicorn

    from modguard.utils.logger import configure_logging

    parser = argparse.ArgumentParser(
        description="modguard API server",
        prog="modguard-api"
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: from GUARD_API_HOST env or 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: from GUARD_API_PORT env or 8080)"
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML/JSON configuration file (environment is used when omitted)"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="Logging level (default: from GUARD_LOG_LEVEL env or info)"
    )

    args = parser.parse_args()

    config = GuardConfig.from_file(args.config) if args.config else GuardConfig.from_env()
    log_level = args.log_level or config.log_level
    configure_logging(level=log_level)

    uvicorn.run(
        create_app(config),
        host=args.host or config.api_host,
        port=args.port or config.api_port,
        log_level=log_level,
    )


if __name__ == "__main__":
    main()
