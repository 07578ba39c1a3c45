"""
Manifest and entry-URL validation.

Structural checks on a submission's declared manifest. Pure: no network
lookups, no side effects.
"""

import ipaddress
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse

from ..types import ModuleSubmission

REQUIRED_FIELDS = ("name", "version", "description", "author", "license")

LOCALHOST_NAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}

URL_SHORTENERS = (
    "bit.ly",
    "tinyurl.com",
    "short.link",
    "t.co",
    "goo.gl",
    "ow.ly",
    "is.gd",
)


@dataclass
class ManifestCheck:
    """Errors and warnings found in a manifest."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class ManifestValidator:
    """Validates the manifest and its frontend entry URL."""

    def validate(self, submission: ModuleSubmission) -> ManifestCheck:
        check = ManifestCheck()

        manifest = submission.manifest
        if manifest is None:
            check.errors.append("Module manifest is required")
            return check

        self._check_entry_url(manifest.frontend.entry_url, check)

        for name in REQUIRED_FIELDS:
            if not getattr(manifest, name):
                check.errors.append(f"Manifest field '{name}' is required")

        return check

    def _check_entry_url(self, entry_url: Optional[str], check: ManifestCheck) -> None:
        if not entry_url or not isinstance(entry_url, str):
            check.errors.append("manifest.frontend.entryUrl is required")
            return

        try:
            parsed = urlparse(entry_url.strip())
            hostname = parsed.hostname
        except ValueError:
            check.errors.append("Invalid frontend.entryUrl format")
            return

        if not parsed.scheme or not parsed.netloc or not hostname:
            check.errors.append("Invalid frontend.entryUrl format")
            return

        if parsed.scheme.lower() != "https":
            check.errors.append("frontend.entryUrl must use HTTPS")

        if is_loopback_host(hostname):
            check.warnings.append("Localhost URLs are only allowed for development")

        if is_shortener_host(hostname):
            check.warnings.append("URL shortening services are not recommended")


def is_loopback_host(hostname: str) -> bool:
    """True for localhost names and loopback addresses."""
    hostname = hostname.lower().rstrip(".")
    if hostname in LOCALHOST_NAMES:
        return True
    try:
        return ipaddress.ip_address(hostname).is_loopback
    except ValueError:
        return False


def is_shortener_host(hostname: str) -> bool:
    """True when hostname is a known URL shortener or one of its subdomains."""
    hostname = hostname.lower().rstrip(".")
    return any(hostname == domain or hostname.endswith("." + domain) for domain in URL_SHORTENERS)
