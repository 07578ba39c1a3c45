"""
modguard static threat scanner

Heuristic malware detection and dependency vulnerability lookup over a
submission's manifest, run without executing any module code. Both lookups
go through pluggable backends and run concurrently; a backend failure is
reported as a warning and never blocks the other lookup.
"""

import asyncio
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import ScanBackendError
from ..types import (
    MalwareScanResult,
    ModuleSubmission,
    Vulnerability,
    VulnerabilityCheckResult,
    VulnerabilitySummary,
)

logger = logging.getLogger(__name__)


# Threat signature id -> regex, matched case-insensitively
THREAT_SIGNATURES: Dict[str, str] = {
    "MG-MALICIOUS-TERM": r"(malware|virus|trojan|backdoor|ransomware|keylogger|phishing)",
    "MG-EXECUTABLE-PAYLOAD": r"\.(exe|bat|cmd|scr|msi|ps1|vbs)(?:[?#]|$)",
    "MG-CRYPTO-MINER": r"(coinhive|cryptonight|cryptoloot|xmrig|coin-?miner)",
    "MG-OBFUSCATED-EVAL": r"eval\s*\(\s*(atob|unescape|String\.fromCharCode)\s*\(",
    "MG-SCRIPT-DATA-URI": r"^data:(text|application)/(javascript|html)",
}

CLEAN_CONFIDENCE = 95
DIRTY_CONFIDENCE = 60


class MalwareBackend(ABC):
    """Produces a malware verdict for a submission."""

    name: str = "malware-backend"

    @abstractmethod
    async def scan(self, submission: ModuleSubmission) -> MalwareScanResult:
        """Return a verdict; raise on backend failure."""
        pass


class VulnerabilityBackend(ABC):
    """Looks up known vulnerabilities for declared dependencies."""

    name: str = "vulnerability-backend"

    @abstractmethod
    async def check(self, dependencies: List[str]) -> VulnerabilityCheckResult:
        """Return findings; raise on backend failure."""
        pass


class HeuristicMalwareBackend(MalwareBackend):
    """
    Signature matching over the code references a manifest declares.

    Scanned: the frontend entry URL, declared script URLs, dependency
    specifiers and the manifest description.
    """

    name = "heuristic-scanner"

    def __init__(self, signatures: Optional[Dict[str, str]] = None):
        self.signatures = signatures or THREAT_SIGNATURES
        self._compiled = {
            sig_id: re.compile(pattern, re.IGNORECASE)
            for sig_id, pattern in self.signatures.items()
        }

    async def scan(self, submission: ModuleSubmission) -> MalwareScanResult:
        return self.scan_sync(submission)

    def scan_sync(self, submission: ModuleSubmission) -> MalwareScanResult:
        detected: List[str] = []
        for location, text in self._targets(submission):
            for sig_id, compiled in self._compiled.items():
                if compiled.search(text):
                    logger.debug(f"Signature {sig_id} matched {location} of {submission.id}")
                    if sig_id not in detected:
                        detected.append(sig_id)

        return MalwareScanResult(
            is_clean=not detected,
            scan_id=f"scan_{uuid.uuid4().hex[:12]}",
            detected_threats=detected,
            scan_provider=self.name,
            confidence=DIRTY_CONFIDENCE if detected else CLEAN_CONFIDENCE,
        )

    def _targets(self, submission: ModuleSubmission) -> Iterable[Tuple[str, str]]:
        manifest = submission.manifest
        if manifest is None:
            return
        if manifest.frontend.entry_url:
            yield "frontend.entry_url", manifest.frontend.entry_url
        for index, script in enumerate(manifest.frontend.scripts):
            yield f"frontend.scripts[{index}]", script
        for dependency in manifest.dependencies:
            yield "dependencies", dependency
        if manifest.description:
            yield "description", manifest.description


@dataclass(frozen=True)
class Advisory:
    """A known-vulnerable package; versions=None means every version."""
    id: str
    package: str
    severity: str
    description: str
    versions: Optional[Tuple[str, ...]] = None

    def affects(self, name: str, version: Optional[str]) -> bool:
        if name.lower() != self.package.lower():
            return False
        if self.versions is None:
            return True
        return version is not None and version in self.versions


DEFAULT_ADVISORIES: Tuple[Advisory, ...] = (
    Advisory(
        id="GHSA-mh6f-8j2x-4483",
        package="event-stream",
        severity="critical",
        description="Malicious flatmap-stream payload targeting wallet credentials",
        versions=("3.3.6",),
    ),
    Advisory(
        id="GHSA-pjwm-rvh2-c87w",
        package="ua-parser-js",
        severity="critical",
        description="Compromised release ships a crypto miner and password stealer",
        versions=("0.7.29", "0.8.0", "1.0.0"),
    ),
    Advisory(
        id="GHSA-97m3-w2cp-4xx6",
        package="node-ipc",
        severity="critical",
        description="Release overwrites files on hosts with specific geolocations",
        versions=("10.1.1", "10.1.2"),
    ),
    Advisory(
        id="GHSA-35jh-r3h4-6jhm",
        package="lodash",
        severity="high",
        description="Command injection through template()",
        versions=("4.17.15", "4.17.19", "4.17.20"),
    ),
    Advisory(
        id="vuln_vulnerable-package",
        package="vulnerable-package",
        severity="medium",
        description="Known vulnerability in vulnerable-package",
    ),
    Advisory(
        id="vuln_old-library",
        package="old-library",
        severity="medium",
        description="Known vulnerability in old-library",
    ),
    Advisory(
        id="vuln_deprecated-module",
        package="deprecated-module",
        severity="medium",
        description="Known vulnerability in deprecated-module",
    ),
)


def parse_dependency(spec: str) -> Tuple[str, Optional[str]]:
    """
    Split ``name@version`` into its parts.

    Scoped packages keep their leading ``@`` (``@scope/pkg@1.0.0``).
    """
    spec = spec.strip()
    at = spec.rfind("@")
    if at <= 0:
        return spec, None
    return spec[:at], spec[at + 1:] or None


class AdvisoryVulnerabilityBackend(VulnerabilityBackend):
    """Matches dependencies against a local advisory table."""

    name = "advisory-table"

    def __init__(self, advisories: Optional[Iterable[Advisory]] = None):
        self.advisories: Tuple[Advisory, ...] = tuple(
            DEFAULT_ADVISORIES if advisories is None else advisories
        )

    @classmethod
    def from_yaml(cls, path: str) -> "AdvisoryVulnerabilityBackend":
        """
        Load advisories from a YAML file of the form::

            advisories:
              - id: GHSA-xxxx
                package: left-pad
                severity: high
                description: ...
                versions: ["1.0.0"]   # omit for every version
        """
        import yaml

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        advisories = []
        for item in data.get("advisories", []):
            versions = item.get("versions")
            advisories.append(Advisory(
                id=str(item["id"]),
                package=str(item["package"]),
                severity=str(item.get("severity", "medium")),
                description=str(item.get("description", f"Known vulnerability in {item['package']}")),
                versions=tuple(str(v) for v in versions) if versions else None,
            ))
        return cls(advisories)

    async def check(self, dependencies: List[str]) -> VulnerabilityCheckResult:
        findings: Dict[str, Vulnerability] = {}

        for spec in dependencies:
            name, version = parse_dependency(spec)
            for advisory in self.advisories:
                if not advisory.affects(name, version):
                    continue
                if advisory.id in findings:
                    findings[advisory.id].affected_dependencies.append(spec)
                else:
                    findings[advisory.id] = Vulnerability(
                        id=advisory.id,
                        severity=advisory.severity,
                        description=advisory.description,
                        affected_dependencies=[spec],
                    )

        vulnerabilities = list(findings.values())
        return VulnerabilityCheckResult(
            has_vulnerabilities=bool(vulnerabilities),
            vulnerabilities=vulnerabilities,
            summary=VulnerabilitySummary.from_findings(vulnerabilities),
        )


@dataclass
class StaticScanResult:
    """Combined output of both lookups; a failed lookup leaves None."""
    malware: Optional[MalwareScanResult] = None
    vulnerabilities: Optional[VulnerabilityCheckResult] = None
    warnings: List[str] = field(default_factory=list)


class StaticThreatScanner:
    """
    Runs the malware and vulnerability backends side by side.

    Backend failures are converted to ScanBackendError, logged, and
    surfaced as warnings on the result.
    """

    def __init__(
        self,
        malware_backend: Optional[MalwareBackend] = None,
        vulnerability_backend: Optional[VulnerabilityBackend] = None,
    ):
        self.malware_backend = malware_backend or HeuristicMalwareBackend()
        self.vulnerability_backend = vulnerability_backend or AdvisoryVulnerabilityBackend()

    async def scan(self, submission: ModuleSubmission) -> StaticScanResult:
        malware, vulnerabilities = await asyncio.gather(
            self._scan_malware(submission),
            self._check_vulnerabilities(submission),
            return_exceptions=True,
        )

        result = StaticScanResult()

        if isinstance(malware, ScanBackendError):
            logger.warning(f"Malware scan failed for {submission.id}: {malware}")
            result.warnings.append(f"Malware scan unavailable: {malware.reason}")
        elif isinstance(malware, BaseException):
            raise malware
        else:
            result.malware = malware

        if isinstance(vulnerabilities, ScanBackendError):
            logger.warning(f"Vulnerability check failed for {submission.id}: {vulnerabilities}")
            result.warnings.append(f"Vulnerability check unavailable: {vulnerabilities.reason}")
        elif isinstance(vulnerabilities, BaseException):
            raise vulnerabilities
        else:
            result.vulnerabilities = vulnerabilities

        return result

    async def _scan_malware(self, submission: ModuleSubmission) -> MalwareScanResult:
        try:
            return await self.malware_backend.scan(submission)
        except ScanBackendError:
            raise
        except Exception as e:
            raise ScanBackendError(self.malware_backend.name, str(e)) from e

    async def _check_vulnerabilities(self, submission: ModuleSubmission) -> VulnerabilityCheckResult:
        dependencies = list(submission.manifest.dependencies) if submission.manifest else []
        try:
            return await self.vulnerability_backend.check(dependencies)
        except ScanBackendError:
            raise
        except Exception as e:
            raise ScanBackendError(self.vulnerability_backend.name, str(e)) from e
