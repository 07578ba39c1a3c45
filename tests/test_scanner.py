"""
Unit tests for the static threat scanner.
"""

import pytest

from modguard.errors import ScanBackendError
from modguard.security.scanner import (
    Advisory,
    AdvisoryVulnerabilityBackend,
    HeuristicMalwareBackend,
    MalwareBackend,
    StaticThreatScanner,
    VulnerabilityBackend,
    parse_dependency,
)


class BrokenMalwareBackend(MalwareBackend):
    name = "broken-av"

    async def scan(self, submission):
        raise ConnectionError("av service unreachable")


class BrokenVulnerabilityBackend(VulnerabilityBackend):
    name = "broken-db"

    async def check(self, dependencies):
        raise ScanBackendError(self.name, "advisory feed timeout")


class TestHeuristicMalwareBackend:
    """Tests for signature matching."""

    @pytest.mark.asyncio
    async def test_clean_submission(self, submission):
        result = await HeuristicMalwareBackend().scan(submission)

        assert result.is_clean
        assert result.detected_threats == []
        assert result.confidence == 95
        assert result.scan_provider == "heuristic-scanner"
        assert result.scan_id.startswith("scan_")

    @pytest.mark.asyncio
    async def test_executable_script_detected(self, make_submission):
        sub = make_submission(manifest={"frontend": {
            "entryUrl": "https://cdn.example.com/entry.js",
            "scripts": ["https://cdn.example.com/setup.exe"],
        }})

        result = await HeuristicMalwareBackend().scan(sub)

        assert not result.is_clean
        assert "MG-EXECUTABLE-PAYLOAD" in result.detected_threats
        assert result.confidence == 60

    @pytest.mark.asyncio
    async def test_malicious_term_in_dependency(self, make_submission):
        sub = make_submission(manifest={"dependencies": ["trojan-helper@1.0.0"]})

        result = await HeuristicMalwareBackend().scan(sub)

        assert result.detected_threats == ["MG-MALICIOUS-TERM"]

    @pytest.mark.asyncio
    async def test_signature_reported_once(self, make_submission):
        sub = make_submission(manifest={
            "description": "Not malware, honest",
            "dependencies": ["malware-lib@2.0.0"],
        })

        result = await HeuristicMalwareBackend().scan(sub)

        assert result.detected_threats.count("MG-MALICIOUS-TERM") == 1


class TestAdvisoryVulnerabilityBackend:
    """Tests for advisory table lookups."""

    def test_parse_dependency(self):
        assert parse_dependency("lodash@4.17.15") == ("lodash", "4.17.15")
        assert parse_dependency("@scope/pkg@1.0.0") == ("@scope/pkg", "1.0.0")
        assert parse_dependency("@scope/pkg") == ("@scope/pkg", None)
        assert parse_dependency("left-pad") == ("left-pad", None)

    @pytest.mark.asyncio
    async def test_version_pinned_advisory(self):
        backend = AdvisoryVulnerabilityBackend()

        hit = await backend.check(["lodash@4.17.15"])
        miss = await backend.check(["lodash@4.17.21"])

        assert hit.has_vulnerabilities
        assert hit.vulnerabilities[0].id == "GHSA-35jh-r3h4-6jhm"
        assert hit.summary.high_vulnerabilities == 1
        assert not miss.has_vulnerabilities

    @pytest.mark.asyncio
    async def test_any_version_advisory(self):
        result = await AdvisoryVulnerabilityBackend().check(["old-library@0.0.1", "react@18.2.0"])

        assert result.summary.total_vulnerabilities == 1
        assert result.summary.medium_vulnerabilities == 1
        assert result.vulnerabilities[0].affected_dependencies == ["old-library@0.0.1"]

    @pytest.mark.asyncio
    async def test_critical_summary(self):
        result = await AdvisoryVulnerabilityBackend().check(["event-stream@3.3.6"])

        assert result.summary.critical_vulnerabilities == 1

    @pytest.mark.asyncio
    async def test_custom_advisories(self):
        backend = AdvisoryVulnerabilityBackend([
            Advisory(id="X-1", package="left-pad", severity="low", description="Unpublished"),
        ])

        result = await backend.check(["left-pad@1.3.0"])

        assert result.vulnerabilities[0].id == "X-1"
        assert result.summary.low_vulnerabilities == 1

    def test_from_yaml(self, temp_dir):
        path = temp_dir / "advisories.yaml"
        path.write_text(
            "advisories:\n"
            "  - id: GHSA-test\n"
            "    package: colors\n"
            "    severity: critical\n"
            "    versions: ['1.4.44-liberty-2']\n"
        )

        backend = AdvisoryVulnerabilityBackend.from_yaml(str(path))

        assert len(backend.advisories) == 1
        advisory = backend.advisories[0]
        assert advisory.affects("colors", "1.4.44-liberty-2")
        assert not advisory.affects("colors", "1.4.0")
        assert advisory.description == "Known vulnerability in colors"


class TestStaticThreatScanner:
    """Tests for running both lookups."""

    @pytest.mark.asyncio
    async def test_both_backends(self, make_submission):
        sub = make_submission(manifest={"dependencies": ["vulnerable-package@1.0.0"]})

        result = await StaticThreatScanner().scan(sub)

        assert result.malware is not None and result.malware.is_clean
        assert result.vulnerabilities.has_vulnerabilities
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_malware_backend_failure_is_warning(self, submission):
        """An unexpected backend exception becomes a warning; the other lookup still runs."""
        scanner = StaticThreatScanner(malware_backend=BrokenMalwareBackend())

        result = await scanner.scan(submission)

        assert result.malware is None
        assert result.vulnerabilities is not None
        assert result.warnings == ["Malware scan unavailable: av service unreachable"]

    @pytest.mark.asyncio
    async def test_vulnerability_backend_failure_is_warning(self, submission):
        scanner = StaticThreatScanner(vulnerability_backend=BrokenVulnerabilityBackend())

        result = await scanner.scan(submission)

        assert result.malware is not None
        assert result.vulnerabilities is None
        assert result.warnings == ["Vulnerability check unavailable: advisory feed timeout"]
