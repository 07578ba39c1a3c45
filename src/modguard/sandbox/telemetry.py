"""
Telemetry analysis for sandbox runs.

Turns the probe's tagged output lines into traffic logs, behaviour
findings and violations, and derives resource usage from Docker stats.
Malformed lines are skipped; nothing in here raises on bad input.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from ..types import (
    BehaviorAnalysis,
    NetworkTrafficLog,
    ScenarioOutcome,
    SecurityViolation,
)

logger = logging.getLogger(__name__)

# Tag anywhere on the line: tolerates Docker timestamps and stream headers
TELEMETRY_LINE = re.compile(
    r"(NETWORK_REQUEST|CONSOLE_LOG|MODULE_ERROR|SCENARIO_START|SCENARIO_END):\s?(\{.*\})\s*$"
)

SUSPICIOUS_URL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"malware",
        r"virus",
        r"trojan",
        r"backdoor",
        r"phishing",
        r"\.(exe|bat|cmd|scr|msi)(?:[?#]|$)",
    )
]

SUSPICIOUS_CONSOLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"eval\(",
        r"document\.write",
        r"innerHTML",
        r"outerHTML",
        r"window\.location",
        r"document\.cookie",
    )
]


@dataclass
class TelemetryAnalysis:
    """Everything extracted from one probe log"""
    network_traffic: List[NetworkTrafficLog] = field(default_factory=list)
    behavior: BehaviorAnalysis = field(default_factory=BehaviorAnalysis)
    violations: List[SecurityViolation] = field(default_factory=list)
    scenario_outcomes: List[ScenarioOutcome] = field(default_factory=list)
    skipped_lines: int = 0


def is_suspicious_url(url: str) -> bool:
    return any(p.search(url) for p in SUSPICIOUS_URL_PATTERNS)


def is_suspicious_console(text: str) -> bool:
    return any(p.search(text) for p in SUSPICIOUS_CONSOLE_PATTERNS)


class TelemetryAnalyzer:
    """Parses probe output"""

    def analyze(self, raw_log: str) -> TelemetryAnalysis:
        analysis = TelemetryAnalysis()
        outcomes: Dict[str, ScenarioOutcome] = {}

        for line in (raw_log or "").splitlines():
            parsed = self._parse_line(line)
            if parsed is None:
                if any(tag in line for tag in ("NETWORK_REQUEST:", "CONSOLE_LOG:", "MODULE_ERROR:")):
                    analysis.skipped_lines += 1
                continue

            tag, payload = parsed
            try:
                if tag == "NETWORK_REQUEST":
                    self._on_network_request(payload, analysis)
                elif tag == "CONSOLE_LOG":
                    self._on_console_log(payload, analysis)
                elif tag == "MODULE_ERROR":
                    self._on_module_error(payload, analysis)
                else:
                    self._on_scenario(tag, payload, outcomes)
            except (TypeError, ValueError) as e:
                analysis.skipped_lines += 1
                logger.debug(f"Skipping malformed {tag} line: {e}")

        analysis.scenario_outcomes = list(outcomes.values())
        if analysis.skipped_lines:
            logger.debug(f"Skipped {analysis.skipped_lines} malformed telemetry lines")
        return analysis

    @staticmethod
    def _parse_line(line: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        match = TELEMETRY_LINE.search(line)
        if not match:
            return None
        try:
            payload = json.loads(match.group(2))
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        return match.group(1), payload

    def _on_network_request(self, payload: Dict[str, Any], analysis: TelemetryAnalysis) -> None:
        url = payload.get("url")
        if not isinstance(url, str) or not url:
            raise ValueError("network request without url")

        suspicious = is_suspicious_url(url)
        headers = payload.get("headers")
        analysis.network_traffic.append(NetworkTrafficLog(
            url=url,
            method=str(payload.get("method") or "GET"),
            headers=headers if isinstance(headers, dict) else {},
            blocked=suspicious or bool(payload.get("blocked")),
            scenario_id=payload.get("scenario"),
        ))

        host = urlparse(url).hostname
        if host and host not in analysis.behavior.network_connections:
            analysis.behavior.network_connections.append(host)

        if suspicious:
            analysis.behavior.suspicious_activities.append(f"Suspicious network request: {url}")
            analysis.violations.append(SecurityViolation.create(
                type="suspicious_network_request",
                severity="medium",
                description=f"Suspicious network request to {url}",
                url=url,
                method=payload.get("method"),
            ))

    def _on_console_log(self, payload: Dict[str, Any], analysis: TelemetryAnalysis) -> None:
        text = payload.get("text")
        if not isinstance(text, str):
            raise ValueError("console log without text")

        if is_suspicious_console(text):
            analysis.behavior.suspicious_activities.append(f"Suspicious console output: {text[:200]}")
            analysis.violations.append(SecurityViolation.create(
                type="suspicious_console_log",
                severity="low",
                description="Console output suggests dynamic code execution or DOM injection",
                message=text[:500],
                console_type=payload.get("type"),
            ))

    def _on_module_error(self, payload: Dict[str, Any], analysis: TelemetryAnalysis) -> None:
        message = payload.get("message")
        if not isinstance(message, str):
            raise ValueError("module error without message")
        analysis.behavior.module_errors.append(message)

    @staticmethod
    def _on_scenario(tag: str, payload: Dict[str, Any], outcomes: Dict[str, ScenarioOutcome]) -> None:
        scenario_id = payload.get("id")
        if not isinstance(scenario_id, str):
            raise ValueError("scenario event without id")

        outcome = outcomes.setdefault(scenario_id, ScenarioOutcome(scenario_id=scenario_id))
        if tag == "SCENARIO_START":
            outcome.status = "running"
            return

        outcome.status = str(payload.get("status") or "unknown")
        duration = payload.get("duration_ms")
        outcome.duration_ms = int(duration) if duration is not None else None
        outcome.error = payload.get("error")

    @staticmethod
    def resource_usage(stats: Optional[Dict[str, Any]]) -> Tuple[float, int]:
        """
        CPU percent and memory bytes from one Docker stats snapshot.

        CPU is the container's usage delta over the host's delta, scaled by
        the number of online CPUs. A zero or negative host delta yields 0.
        """
        if not stats:
            return 0.0, 0

        cpu_stats = stats.get("cpu_stats") or {}
        precpu_stats = stats.get("precpu_stats") or {}

        cpu_total = (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0) or 0
        precpu_total = (precpu_stats.get("cpu_usage") or {}).get("total_usage", 0) or 0
        system = cpu_stats.get("system_cpu_usage", 0) or 0
        presystem = precpu_stats.get("system_cpu_usage", 0) or 0

        cpu_delta = cpu_total - precpu_total
        system_delta = system - presystem

        online_cpus = cpu_stats.get("online_cpus") or len(
            (cpu_stats.get("cpu_usage") or {}).get("percpu_usage") or []
        ) or 1

        cpu_percent = 0.0
        if system_delta > 0 and cpu_delta > 0:
            cpu_percent = (cpu_delta / system_delta) * online_cpus * 100.0

        memory = int((stats.get("memory_stats") or {}).get("usage", 0) or 0)
        return round(cpu_percent, 2), memory
