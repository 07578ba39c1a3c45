"""
modguard sandbox module

Dynamic analysis of a module inside an isolated environment:
- orchestrator: Environment lifecycle, scenario battery, timeout race
- probe: In-container Node.js probe program
- telemetry: Probe output and resource statistics analysis
"""

from .orchestrator import DEFAULT_SCENARIOS, SandboxOrchestrator
from .telemetry import TelemetryAnalysis, TelemetryAnalyzer

__all__ = [
    "DEFAULT_SCENARIOS",
    "SandboxOrchestrator",
    "TelemetryAnalysis",
    "TelemetryAnalyzer",
]
