from pydantic import BaseModel, Field, field_validator
from typing import List, Optional

# Hard ceilings for the isolated environment. Configuration may tighten
# these but never loosen them.
MAX_CPU_FRACTION = 0.5
MAX_MEMORY_BYTES = 512 * 1024 * 1024
MAX_DISK_BYTES = 1024 * 1024 * 1024
DEFAULT_SANDBOX_TIMEOUT_MS = 300_000


class GuardConfig(BaseModel):
    """
    Runtime configuration for modguard.

    This configuration is loaded from:
    1. Environment variables (GUARD_*)
    2. Configuration file (if provided)
    3. Default values (hardcoded)

    Priority: Environment variables > Config file > Defaults
    """

    # Sandbox image and probe
    sandbox_image: str = Field(
        default="ghcr.io/puppeteer/puppeteer:22.6.0",
        description="Container image with Node.js and a headless browser"
    )

    sandbox_timeout_ms: int = Field(
        default=DEFAULT_SANDBOX_TIMEOUT_MS,
        ge=1,
        le=3_600_000,
        description="Overall sandbox run timeout (milliseconds)"
    )

    # Resource caps
    cpu_limit: float = Field(
        default=MAX_CPU_FRACTION,
        gt=0,
        le=MAX_CPU_FRACTION,
        description="CPU share of one core"
    )

    memory_limit_bytes: int = Field(
        default=MAX_MEMORY_BYTES,
        ge=64 * 1024 * 1024,
        le=MAX_MEMORY_BYTES,
        description="Memory cap for the sandbox container (bytes)"
    )

    disk_limit_bytes: int = Field(
        default=MAX_DISK_BYTES,
        ge=16 * 1024 * 1024,
        le=MAX_DISK_BYTES,
        description="Writable disk cap for the sandbox container (bytes)"
    )

    allowed_protocols: List[str] = Field(
        default_factory=lambda: ["http", "https"],
        description="URL schemes the module may use inside the sandbox"
    )

    enforce_disk_quota: bool = Field(
        default=False,
        description="Also pass storage_opt size (needs overlay2 on xfs with pquota)"
    )

    max_concurrent_sandboxes: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Sandbox runs allowed at once on this host"
    )

    # Policy registry
    policy_file: Optional[str] = Field(
        default=None,
        description="YAML/JSON file with policies and frameworks (defaults if empty)"
    )

    policy_refresh_interval_sec: int = Field(
        default=3600,
        ge=1,
        le=86400,
        description="Interval between policy registry refreshes (seconds)"
    )

    # Static scanning
    advisory_db_path: Optional[str] = Field(
        default=None,
        description="YAML file with dependency advisories (built-in table if empty)"
    )

    # Audit
    enable_audit_log: bool = Field(
        default=True,
        description="Enable audit logging"
    )

    audit_log_path: Optional[str] = Field(
        default=None,
        description="Path to JSON-lines audit log (structured log only if empty)"
    )

    # API server
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )

    api_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="API server port"
    )

    log_level: str = Field(
        default="info",
        description="Root log level"
    )

    @field_validator("allowed_protocols")
    @classmethod
    def _normalise_protocols(cls, value: List[str]) -> List[str]:
        protocols = []
        for item in value:
            item = item.strip().lower().rstrip(":")
            if item and item not in protocols:
                protocols.append(item)
        if not protocols:
            raise ValueError("at least one protocol must be allowed")
        return protocols

    @classmethod
    def from_env(cls) -> "GuardConfig":
        """
        Load configuration from environment variables.

        Environment variables (GUARD_*) override defaults:

        - GUARD_SANDBOX_IMAGE: Container image for the probe
        - GUARD_SANDBOX_TIMEOUT_MS: Sandbox timeout in milliseconds
        - GUARD_CPU_LIMIT: CPU share (<= 0.5)
        - GUARD_MEMORY_LIMIT_BYTES: Memory cap (<= 512 MiB)
        - GUARD_DISK_LIMIT_BYTES: Disk cap (<= 1 GiB)
        - GUARD_ALLOWED_PROTOCOLS: Comma-separated URL schemes
        - GUARD_MAX_CONCURRENT_SANDBOXES: Host concurrency limit
        - GUARD_POLICY_FILE: Policy registry file
        - GUARD_POLICY_REFRESH_SEC: Registry refresh interval
        - GUARD_ADVISORY_DB: Dependency advisory file
        - GUARD_AUDIT_LOG: Audit log path
        - GUARD_ENABLE_AUDIT: Enable audit logging (true/false)
        - GUARD_API_HOST / GUARD_API_PORT: API bind address
        - GUARD_LOG_LEVEL: Root log level
        """
        import os

        kwargs = {}

        # Sandbox
        if "GUARD_SANDBOX_IMAGE" in os.environ:
            kwargs["sandbox_image"] = os.environ["GUARD_SANDBOX_IMAGE"]
        if "GUARD_SANDBOX_TIMEOUT_MS" in os.environ:
            kwargs["sandbox_timeout_ms"] = int(os.environ["GUARD_SANDBOX_TIMEOUT_MS"])
        if "GUARD_CPU_LIMIT" in os.environ:
            kwargs["cpu_limit"] = float(os.environ["GUARD_CPU_LIMIT"])
        if "GUARD_MEMORY_LIMIT_BYTES" in os.environ:
            kwargs["memory_limit_bytes"] = int(os.environ["GUARD_MEMORY_LIMIT_BYTES"])
        if "GUARD_DISK_LIMIT_BYTES" in os.environ:
            kwargs["disk_limit_bytes"] = int(os.environ["GUARD_DISK_LIMIT_BYTES"])
        if "GUARD_ALLOWED_PROTOCOLS" in os.environ:
            protocols = os.environ["GUARD_ALLOWED_PROTOCOLS"]
            kwargs["allowed_protocols"] = [p.strip() for p in protocols.split(",") if p.strip()]
        if "GUARD_MAX_CONCURRENT_SANDBOXES" in os.environ:
            kwargs["max_concurrent_sandboxes"] = int(os.environ["GUARD_MAX_CONCURRENT_SANDBOXES"])

        # Policies and advisories
        if "GUARD_POLICY_FILE" in os.environ:
            kwargs["policy_file"] = os.environ["GUARD_POLICY_FILE"]
        if "GUARD_POLICY_REFRESH_SEC" in os.environ:
            kwargs["policy_refresh_interval_sec"] = int(os.environ["GUARD_POLICY_REFRESH_SEC"])
        if "GUARD_ADVISORY_DB" in os.environ:
            kwargs["advisory_db_path"] = os.environ["GUARD_ADVISORY_DB"]

        # Audit
        if "GUARD_AUDIT_LOG" in os.environ:
            kwargs["audit_log_path"] = os.environ["GUARD_AUDIT_LOG"]
        if "GUARD_ENABLE_AUDIT" in os.environ:
            kwargs["enable_audit_log"] = os.environ["GUARD_ENABLE_AUDIT"].lower() == "true"

        # API
        if "GUARD_API_HOST" in os.environ:
            kwargs["api_host"] = os.environ["GUARD_API_HOST"]
        if "GUARD_API_PORT" in os.environ:
            kwargs["api_port"] = int(os.environ["GUARD_API_PORT"])
        if "GUARD_LOG_LEVEL" in os.environ:
            kwargs["log_level"] = os.environ["GUARD_LOG_LEVEL"]

        return cls(**kwargs)

    @classmethod
    def from_file(cls, config_path: str) -> "GuardConfig":
        """
        Load configuration from a YAML or JSON file.

        Supported formats: .yaml, .yml, .json
        """
        import yaml

        with open(config_path, "r") as f:
            if config_path.endswith((".yaml", ".yml")):
                data = yaml.safe_load(f) or {}
            elif config_path.endswith(".json"):
                import json
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported config format: {config_path}")

        return cls(**data)
