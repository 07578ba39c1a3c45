"""
modguard audit logging module

Audit trail for the validation pipeline:
- Validation lifecycle (started, static phase, report)
- Sandbox runs (completed, failed, timeout)
- Policy evaluation and registry updates

Supports multiple output formats:
- JSON lines file output (rotating)
- Structured logging

``AuditLogger.observe`` can be passed straight to
``ValidationManager.subscribe``.
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..types import ModuleManifest, PipelineEvent, utc_now

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Types of audit events"""

    VALIDATION_STARTED = "VALIDATION_STARTED"
    STATIC_PHASE_COMPLETED = "STATIC_PHASE_COMPLETED"
    SANDBOX_COMPLETED = "SANDBOX_COMPLETED"
    SANDBOX_FAILED = "SANDBOX_FAILED"
    SANDBOX_TIMEOUT = "SANDBOX_TIMEOUT"
    POLICY_EVALUATED = "POLICY_EVALUATED"
    SCAN_REPORT_READY = "SCAN_REPORT_READY"
    POLICY_REGISTRY_UPDATED = "POLICY_REGISTRY_UPDATED"


def manifest_hash(manifest: Optional[ModuleManifest]) -> Optional[str]:
    """SHA-256 over the canonical JSON form of a manifest"""
    if manifest is None:
        return None
    canonical = manifest.model_dump_json(by_alias=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditEntry(BaseModel):
    """Audit log entry model"""

    timestamp: str = Field(
        default_factory=utc_now,
        description="ISO 8601 timestamp in UTC"
    )

    event_type: str = Field(
        ...,
        description="Type of audit event"
    )

    module_id: Optional[str] = Field(
        None,
        description="Module under validation"
    )

    test_id: Optional[str] = Field(
        None,
        description="Sandbox test id (sandbox events only)"
    )

    manifest_hash: Optional[str] = Field(
        None,
        description="SHA-256 of the submitted manifest"
    )

    security_score: Optional[int] = Field(
        None,
        ge=0,
        le=100,
        description="Score reported by the stage"
    )

    status: Optional[str] = Field(
        None,
        description="Stage outcome (passed/warning/failed, completed/failed)"
    )

    duration_ms: Optional[int] = Field(
        None,
        ge=0,
        description="Duration in milliseconds"
    )

    success: Optional[bool] = Field(
        None,
        description="Whether the stage succeeded"
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific details"
    )


class AuditOutput(ABC):
    """Abstract base class for audit log outputs"""

    @abstractmethod
    def write(self, entry: AuditEntry) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class JSONFileOutput(AuditOutput):
    """One JSON object per line, rotated by size"""

    def __init__(
        self,
        file_path: str,
        max_bytes: int = 10 * 1024 * 1024,  # 10 MB
        backup_count: int = 5,
    ):
        self.file_path = Path(file_path)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)

        self._handler: Optional[RotatingFileHandler] = RotatingFileHandler(
            str(self.file_path),
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        self._handler.setFormatter(logging.Formatter("%(message)s"))

        # Dedicated non-propagating logger so entries never reach the console
        self._logger = logging.getLogger(f"modguard.audit.file.{self.file_path.stem}")
        self._logger.setLevel(logging.INFO)
        self._logger.addHandler(self._handler)
        self._logger.propagate = False

    def write(self, entry: AuditEntry) -> None:
        self._logger.info(entry.model_dump_json(exclude_none=True))

    def close(self) -> None:
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None


class StructuredLogOutput(AuditOutput):
    """Audit entries as records on the ``modguard.audit`` logger"""

    def __init__(self, logger_name: str = "modguard.audit", level: int = logging.INFO):
        self.logger = logging.getLogger(logger_name)
        self.logger.setLevel(level)

    def write(self, entry: AuditEntry) -> None:
        extra = {
            "audit_event": entry.event_type,
            "module_id": entry.module_id or "",
            "test_id": entry.test_id or "",
        }
        message = f"Audit event: {entry.event_type} module={entry.module_id or '-'}"
        if entry.status:
            message += f" status={entry.status}"
        if entry.security_score is not None:
            message += f" score={entry.security_score}"

        if entry.success is False:
            self.logger.warning(message, extra=extra)
        else:
            self.logger.info(message, extra=extra)

    def close(self) -> None:
        pass


class AuditLogger:
    """
    Audit logger for pipeline stages.

    Writes go straight to the outputs unless the async worker is running,
    in which case they are queued and written in the background. ``stop``
    flushes whatever is still queued.
    """

    def __init__(
        self,
        outputs: Optional[List[AuditOutput]] = None,
        enable_async: bool = True,
    ):
        self.outputs = outputs if outputs is not None else [StructuredLogOutput()]
        self.enable_async = enable_async
        self._write_queue: Optional[asyncio.Queue] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._running = False

    def start(self) -> None:
        """Start the async write worker; needs a running event loop"""
        if not self.enable_async or self._running:
            return
        self._write_queue = asyncio.Queue()
        self._running = True
        self._worker_task = asyncio.create_task(self._write_worker())

    def stop(self) -> None:
        """Stop the worker and flush pending writes"""
        self._running = False

        if self._worker_task:
            self._worker_task.cancel()
            self._worker_task = None

        if self._write_queue is not None:
            while not self._write_queue.empty():
                self._write(self._write_queue.get_nowait())
            self._write_queue = None

    def _write(self, entry: AuditEntry) -> None:
        for output in self.outputs:
            try:
                output.write(entry)
            except Exception as e:
                logger.error(f"Failed to write audit entry: {e}")

    async def _write_worker(self) -> None:
        while self._running:
            entry = await self._write_queue.get()
            self._write(entry)
            self._write_queue.task_done()

    def log(self, entry: AuditEntry) -> None:
        if self._running and self._write_queue is not None:
            self._write_queue.put_nowait(entry)
        else:
            self._write(entry)

    def observe(self, event: PipelineEvent) -> None:
        """Pipeline observer: turn a stage event into an audit entry"""
        payload = dict(event.payload)
        entry = AuditEntry(
            event_type=self._event_type(event).value,
            module_id=event.module_id,
            test_id=payload.pop("test_id", None),
            manifest_hash=payload.pop("manifest_hash", None),
            security_score=payload.pop("security_score", None),
            status=payload.pop("status", None),
            duration_ms=payload.pop("duration_ms", None),
            success=payload.pop("success", None),
            details=payload,
        )
        self.log(entry)

    @staticmethod
    def _event_type(event: PipelineEvent) -> AuditEventType:
        if event.stage == "validation_started":
            return AuditEventType.VALIDATION_STARTED
        if event.stage == "static_phase_completed":
            return AuditEventType.STATIC_PHASE_COMPLETED
        if event.stage == "sandbox_completed":
            if event.payload.get("timed_out"):
                return AuditEventType.SANDBOX_TIMEOUT
            if event.payload.get("status") == "failed":
                return AuditEventType.SANDBOX_FAILED
            return AuditEventType.SANDBOX_COMPLETED
        if event.stage == "policy_evaluated":
            return AuditEventType.POLICY_EVALUATED
        return AuditEventType.SCAN_REPORT_READY

    def log_registry_updated(self, version: int, policies: int, frameworks: int) -> None:
        self.log(AuditEntry(
            event_type=AuditEventType.POLICY_REGISTRY_UPDATED.value,
            success=True,
            details={"version": version, "policies": policies, "frameworks": frameworks},
        ))

    def close(self) -> None:
        """Flush and close all output handlers"""
        self.stop()
        for output in self.outputs:
            try:
                output.close()
            except Exception as e:
                logger.error(f"Error closing audit output: {e}")


def create_audit_logger(
    log_file_path: Optional[str] = None,
    enable_structured_log: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    enable_async: bool = True,
) -> AuditLogger:
    """
    Factory function to create an audit logger with standard configuration.

    Args:
        log_file_path: Path to JSON lines file (optional)
        enable_structured_log: Whether to also emit log records
        max_bytes: Maximum file size for rotation
        backup_count: Number of backup files
        enable_async: Queue writes on a background task once started

    Returns:
        AuditLogger instance; call ``start()`` from a running loop to
        enable background writes
    """
    outputs: List[AuditOutput] = []

    if log_file_path:
        outputs.append(JSONFileOutput(
            file_path=log_file_path,
            max_bytes=max_bytes,
            backup_count=backup_count,
        ))

    if enable_structured_log:
        outputs.append(StructuredLogOutput())

    return AuditLogger(outputs=outputs, enable_async=enable_async)
