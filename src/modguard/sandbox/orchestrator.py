"""
Sandbox orchestration.

Runs a module's entry point inside a fresh, resource-capped isolation
environment, races completion against a timeout, analyzes whatever
telemetry was captured, and always releases the environment before
returning.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from ..backends import ContainerSpec, IsolationRuntime
from ..config import GuardConfig
from ..errors import (
    IsolationRuntimeUnavailableError,
    SandboxBusyError,
    SandboxExecutionError,
    SandboxTimeoutError,
)
from ..types import (
    ModuleSubmission,
    ResourceLimitsSpec,
    SandboxTestEnvironment,
    SandboxTestResult,
    SandboxTestScenario,
    SecurityViolation,
)
from .probe import PROBE_WORKDIR, build_command, build_environment
from .telemetry import TelemetryAnalyzer

logger = logging.getLogger(__name__)

# Fixed battery, run in this order without early exit
DEFAULT_SCENARIOS = (
    SandboxTestScenario(
        id="normal_operation",
        name="Normal Operation Test",
        description="Test module under normal operating conditions",
        test_type="functional",
        expected_behavior="Module should load and function normally",
        timeout=60_000,
    ),
    SandboxTestScenario(
        id="error_handling",
        name="Error Handling Test",
        description="Test module error handling capabilities",
        test_type="security",
        expected_behavior="Module should handle errors gracefully",
        timeout=30_000,
    ),
    SandboxTestScenario(
        id="network_security",
        name="Network Security Test",
        description="Test module network behavior and security",
        test_type="security",
        expected_behavior="Module should only make authorized network requests",
        timeout=45_000,
    ),
    SandboxTestScenario(
        id="performance_test",
        name="Performance Test",
        description="Test module performance under load",
        test_type="performance",
        expected_behavior="Module should perform within acceptable limits",
        timeout=90_000,
    ),
)

STATS_INTERVAL_SEC = 1.0


class _StatsSampler:
    """Polls runtime stats while the environment runs; keeps the last snapshot and peak memory"""

    def __init__(self, runtime: IsolationRuntime, handle: str, interval: float = STATS_INTERVAL_SEC):
        self.runtime = runtime
        self.handle = handle
        self.interval = interval
        self.last: Optional[Dict[str, Any]] = None
        self.peak_memory = 0
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def record(self, stats: Optional[Dict[str, Any]]) -> None:
        if not stats or not stats.get("memory_stats"):
            return
        self.last = stats
        self.peak_memory = max(self.peak_memory, int(stats["memory_stats"].get("usage", 0) or 0))

    async def _run(self) -> None:
        while True:
            try:
                self.record(await self.runtime.stats(self.handle))
            except Exception as e:
                logger.debug(f"Stats sample failed for {self.handle[:12]}: {e}")
            await asyncio.sleep(self.interval)


class SandboxOrchestrator:
    """
    Drives sandbox runs on an isolation runtime.

    At most ``max_concurrent_sandboxes`` runs execute at once on this host
    and a module id can only have one active run.
    """

    def __init__(
        self,
        runtime: IsolationRuntime,
        config: Optional[GuardConfig] = None,
        analyzer: Optional[TelemetryAnalyzer] = None,
    ):
        self.runtime = runtime
        self.config = config or GuardConfig()
        self.analyzer = analyzer or TelemetryAnalyzer()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_sandboxes)
        self._active: Set[str] = set()

    @property
    def active_modules(self) -> List[str]:
        return sorted(self._active)

    def create_environment(self, submission: ModuleSubmission) -> SandboxTestEnvironment:
        return SandboxTestEnvironment(
            runtime=self.runtime.name,
            isolation="network",
            image=self.config.sandbox_image,
            resource_limits=ResourceLimitsSpec(
                cpu=self.config.cpu_limit,
                memory=self.config.memory_limit_bytes,
                disk=self.config.disk_limit_bytes,
                network=list(self.config.allowed_protocols),
            ),
            module_url=submission.entry_url or "unknown",
        )

    def create_scenarios(self) -> List[SandboxTestScenario]:
        return list(DEFAULT_SCENARIOS)

    async def run(self, submission: ModuleSubmission, timeout_ms: Optional[int] = None) -> SandboxTestResult:
        """
        Run the scenario battery for one submission.

        Raises:
            SandboxBusyError: A run for this module id is already active
            IsolationRuntimeUnavailableError: The runtime cannot be reached
        """
        if submission.id in self._active:
            raise SandboxBusyError(submission.id)

        self._active.add(submission.id)
        try:
            async with self._semaphore:
                return await self._run(submission, timeout_ms or self.config.sandbox_timeout_ms)
        finally:
            self._active.discard(submission.id)

    async def _run(self, submission: ModuleSubmission, timeout_ms: int) -> SandboxTestResult:
        test_id = f"sbx_{uuid.uuid4().hex[:12]}"
        environment = self.create_environment(submission)
        scenarios = self.create_scenarios()
        result = SandboxTestResult(
            test_id=test_id,
            module_id=submission.id,
            environment=environment,
            scenarios=scenarios,
        )

        if not submission.entry_url:
            self._fail(result, "execution_error", "Module has no frontend entry URL to load")
            return result

        spec = ContainerSpec(
            name=f"modguard-{test_id}",
            image=environment.image,
            command=build_command(),
            environment=build_environment(
                submission.entry_url, scenarios, environment.resource_limits.network
            ),
            cpu=environment.resource_limits.cpu,
            memory_bytes=environment.resource_limits.memory,
            disk_bytes=environment.resource_limits.disk,
            working_dir=PROBE_WORKDIR,
            labels={"modguard.module_id": submission.id, "modguard.test_id": test_id},
            enforce_disk_quota=self.config.enforce_disk_quota,
        )

        logger.info(f"Sandbox {test_id} starting for module {submission.id} (timeout {timeout_ms}ms)")
        started = time.monotonic()
        raw_log = ""
        sampler: Optional[_StatsSampler] = None

        try:
            async with self.provision(spec) as handle:
                result.transition("running")
                sampler = _StatsSampler(self.runtime, handle)
                sampler.start()
                try:
                    exit_code = await asyncio.wait_for(self.runtime.wait(handle), timeout=timeout_ms / 1000)
                    if exit_code != 0:
                        raise SandboxExecutionError(test_id, f"probe exited with code {exit_code}")
                    if sampler.last is None:
                        sampler.record(await self._read_stats(handle))
                    result.transition("completed")
                except asyncio.TimeoutError:
                    error = SandboxTimeoutError(test_id, timeout_ms)
                    self._fail(result, "timeout", str(error), timeout=timeout_ms)
                except IsolationRuntimeUnavailableError:
                    raise
                except Exception as e:
                    self._fail(result, "execution_error", f"Sandbox execution failed: {e}", error=str(e))
                finally:
                    await sampler.stop()
                    raw_log = await self._read_logs(handle)
        except IsolationRuntimeUnavailableError:
            raise
        except Exception as e:
            # create/start failed, or the environment broke during cleanup
            if not result.is_terminal:
                self._fail(result, "execution_error", f"Sandbox provisioning failed: {e}", error=str(e))
            else:
                logger.error(f"Sandbox {test_id} error after terminal state: {e}")

        self._attach_telemetry(result, raw_log, sampler, started)
        logger.info(
            f"Sandbox {test_id} {result.status}: "
            f"{len(result.results.security_violations)} violations"
        )
        return result

    @asynccontextmanager
    async def provision(self, spec: ContainerSpec) -> AsyncIterator[str]:
        """
        Create and start an environment, yielding its handle.

        On exit the environment is stopped and then removed, each exactly
        once, however the body ended. A failing stop still removes.
        """
        handle = await self.runtime.create(spec)
        try:
            await self.runtime.start(handle)
            yield handle
        finally:
            await self._release(handle)

    async def _release(self, handle: str) -> None:
        try:
            await self.runtime.stop(handle)
        except Exception as e:
            logger.warning(f"Stopping sandbox {handle[:12]} failed: {e}")
        try:
            await self.runtime.remove(handle)
        except Exception as e:
            logger.error(f"Removing sandbox {handle[:12]} failed, environment may leak: {e}")

    async def _read_logs(self, handle: str) -> str:
        try:
            return await self.runtime.logs(handle)
        except Exception as e:
            logger.warning(f"Could not read sandbox logs for {handle[:12]}: {e}")
            return ""

    async def _read_stats(self, handle: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.runtime.stats(handle)
        except Exception as e:
            logger.debug(f"Could not read sandbox stats for {handle[:12]}: {e}")
            return None

    @staticmethod
    def _fail(result: SandboxTestResult, violation_type: str, description: str, **details: Any) -> None:
        result.record_violation(SecurityViolation.create(
            type=violation_type,
            severity="high",
            description=description,
            **details,
        ))
        result.error = description
        result.transition("failed")

    def _attach_telemetry(
        self,
        result: SandboxTestResult,
        raw_log: str,
        sampler: Optional[_StatsSampler],
        started: float,
    ) -> None:
        analysis = self.analyzer.analyze(raw_log)
        results = result.results
        results.network_traffic = analysis.network_traffic
        results.behavior_analysis = analysis.behavior
        results.scenario_outcomes = analysis.scenario_outcomes
        for violation in analysis.violations:
            result.record_violation(violation)

        cpu, memory = TelemetryAnalyzer.resource_usage(sampler.last if sampler else None)
        metrics = results.performance_metrics
        metrics.cpu_usage = cpu
        metrics.memory_usage = max(memory, sampler.peak_memory if sampler else 0)
        metrics.execution_time = int((time.monotonic() - started) * 1000)
        metrics.network_requests = len(analysis.network_traffic)
