"""
Pytest configuration and fixtures for modguard tests.

This module provides shared fixtures and configuration for all tests.
"""

import asyncio
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from modguard.backends import ContainerSpec, IsolationRuntime
from modguard.errors import IsolationRuntimeUnavailableError
from modguard.types import ModuleSubmission


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "api: API endpoint tests"
    )
    config.addinivalue_line(
        "markers", "docker: Docker runtime tests (Docker SDK mocked)"
    )
    config.addinivalue_line(
        "markers", "slow: Slow running tests"
    )


# =============================================================================
# Temporary Directories
# =============================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# =============================================================================
# Isolation Runtime Stub
# =============================================================================

PROBE_LOG = "\n".join([
    'SCENARIO_START: {"id": "normal_operation"}',
    'NETWORK_REQUEST: {"url": "https://cdn.example.com/weather/app.js", "method": "GET", "scenario": "normal_operation"}',
    'CONSOLE_LOG: {"type": "log", "text": "weather widget mounted", "scenario": "normal_operation"}',
    'SCENARIO_END: {"id": "normal_operation", "status": "passed", "duration_ms": 812}',
])

DOCKER_STATS = {
    "cpu_stats": {
        "cpu_usage": {"total_usage": 400_000_000},
        "system_cpu_usage": 20_000_000_000,
        "online_cpus": 2,
    },
    "precpu_stats": {
        "cpu_usage": {"total_usage": 300_000_000},
        "system_cpu_usage": 19_000_000_000,
    },
    "memory_stats": {"usage": 48 * 1024 * 1024},
}


class StubRuntime(IsolationRuntime):
    """
    In-memory isolation runtime.

    ``wait_behavior`` is one of ``exit`` (return ``exit_code``), ``hang``
    (never finish), ``raise`` (raise RuntimeError) or ``unavailable``.
    """

    name = "stub"

    def __init__(
        self,
        wait_behavior: str = "exit",
        exit_code: int = 0,
        log_output: str = PROBE_LOG,
        stats_output: Optional[Dict[str, Any]] = None,
        fail_create: Optional[Exception] = None,
    ):
        super().__init__()
        self.wait_behavior = wait_behavior
        self.exit_code = exit_code
        self.log_output = log_output
        self.stats_output = DOCKER_STATS if stats_output is None else stats_output
        self.fail_create = fail_create
        self.specs: List[ContainerSpec] = []
        self.calls: List[str] = []
        self.stop_calls = 0
        self.remove_calls = 0

    async def create(self, spec: ContainerSpec) -> str:
        self.calls.append("create")
        if self.fail_create is not None:
            raise self.fail_create
        self.specs.append(spec)
        return f"stub-{len(self.specs):04d}"

    async def start(self, handle: str) -> None:
        self.calls.append("start")

    async def wait(self, handle: str) -> int:
        self.calls.append("wait")
        if self.wait_behavior == "hang":
            await asyncio.Event().wait()
        if self.wait_behavior == "raise":
            raise RuntimeError("browser crashed")
        if self.wait_behavior == "unavailable":
            raise IsolationRuntimeUnavailableError(self.name, "daemon went away")
        return self.exit_code

    async def logs(self, handle: str) -> str:
        self.calls.append("logs")
        return self.log_output

    async def stats(self, handle: str) -> Dict[str, Any]:
        return self.stats_output

    async def stop(self, handle: str) -> None:
        self.calls.append("stop")
        self.stop_calls += 1

    async def remove(self, handle: str) -> None:
        self.calls.append("remove")
        self.remove_calls += 1

    async def health_check(self) -> dict:
        return {"status": "healthy", "runtime": self.name}


@pytest.fixture
def stub_runtime() -> StubRuntime:
    """Runtime whose probe exits cleanly with canned telemetry."""
    return StubRuntime()


@pytest.fixture
def stub_runtime_factory():
    """Build a StubRuntime with custom behaviour."""
    return StubRuntime


# =============================================================================
# Sample Submissions
# =============================================================================

@pytest.fixture
def submission_data() -> Dict[str, Any]:
    """Marketplace JSON for a well-formed, low-risk module."""
    return {
        "id": "mod-weather",
        "name": "Weather Widget",
        "category": "widgets",
        "developerId": "dev-42",
        "manifest": {
            "name": "weather-widget",
            "version": "1.2.0",
            "description": "Shows the local weather forecast",
            "author": "Acme Widgets",
            "license": "MIT",
            "permissions": ["read-profile", "display-widgets"],
            "frontend": {"entryUrl": "https://cdn.example.com/weather/remoteEntry.js"},
            "dependencies": ["react@18.2.0"],
            "encryption": True,
        },
    }


@pytest.fixture
def make_submission(submission_data):
    """
    Factory for submissions derived from ``submission_data``.

    Keyword arguments override top-level fields; ``manifest`` is merged
    into the base manifest instead of replacing it.
    """

    def _make(**overrides: Any) -> ModuleSubmission:
        data = dict(submission_data)
        manifest = dict(data["manifest"])
        manifest.update(overrides.pop("manifest", {}))
        data["manifest"] = manifest
        data.update(overrides)
        return ModuleSubmission.model_validate(data)

    return _make


@pytest.fixture
def submission(make_submission) -> ModuleSubmission:
    return make_submission()
