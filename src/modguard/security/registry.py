"""
Policy and compliance framework registry.

Readers take ``registry.snapshot`` once and work on that immutable object;
writers build a new snapshot and swap the reference. A reader therefore
never sees a half-updated policy set and needs no lock.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from ..config import MAX_CPU_FRACTION
from ..errors import InvalidRequestError, PolicyNotFoundError
from ..types import utc_now
from .policies import (
    AllOf,
    AnyOf,
    ComplianceFramework,
    ComplianceRequirement,
    DataTypeIncludes,
    FlagEquals,
    MetricExceeds,
    Not,
    PermissionContains,
    PermissionCountExceeds,
    SecurityPolicy,
    SecurityPolicyRule,
    ViolationPresent,
)

logger = logging.getLogger(__name__)

PII_DATA_TYPES = ["pii", "email", "phone", "ssn", "address"]
PRIVILEGED_PERMISSION_TOKENS = ["system", "admin", "root"]

# cpu_usage is a percent of one core; warn at 80% of the hard cap
CPU_WARN_PERCENT = 80 * MAX_CPU_FRACTION


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of every registered policy and framework"""
    policies: Tuple[SecurityPolicy, ...] = ()
    frameworks: Tuple[ComplianceFramework, ...] = ()
    version: int = 0
    loaded_at: str = field(default_factory=utc_now)

    def get_policy(self, policy_id: str) -> Optional[SecurityPolicy]:
        for policy in self.policies:
            if policy.id == policy_id:
                return policy
        return None

    def get_framework(self, framework_id: str) -> Optional[ComplianceFramework]:
        for framework in self.frameworks:
            if framework.id == framework_id:
                return framework
        return None


def default_policies() -> List[SecurityPolicy]:
    """Built-in policies, in registration order"""
    return [
        SecurityPolicy(
            id="data_protection_policy",
            name="Data Protection Policy",
            description="Ensures modules comply with data protection requirements",
            category="data_protection",
            enforcement="strict",
            applicable_modules=["*"],
            rules=[
                SecurityPolicyRule(
                    id="no_pii_collection",
                    name="No PII Collection",
                    description="Modules must not collect personally identifiable information",
                    predicate=DataTypeIncludes(values=PII_DATA_TYPES),
                    action="deny",
                    severity="high",
                ),
                SecurityPolicyRule(
                    id="data_encryption",
                    name="Data Encryption",
                    description="All data transmission must be encrypted",
                    predicate=FlagEquals(field="encryption", value=False),
                    action="deny",
                    severity="critical",
                ),
            ],
        ),
        SecurityPolicy(
            id="access_control_policy",
            name="Access Control Policy",
            description="Controls module access to system resources",
            category="access_control",
            enforcement="strict",
            applicable_modules=["*"],
            rules=[
                SecurityPolicyRule(
                    id="minimal_permissions",
                    name="Minimal Permissions",
                    description="Modules must request only necessary permissions",
                    predicate=PermissionCountExceeds(limit=5),
                    action="warn",
                    severity="medium",
                ),
                SecurityPolicyRule(
                    id="no_system_access",
                    name="No System Access",
                    description="Modules cannot access system-level resources",
                    predicate=PermissionContains(tokens=PRIVILEGED_PERMISSION_TOKENS),
                    action="deny",
                    severity="critical",
                ),
            ],
        ),
        SecurityPolicy(
            id="performance_policy",
            name="Performance Policy",
            description="Ensures modules meet performance requirements",
            category="performance",
            enforcement="moderate",
            applicable_modules=["*"],
            rules=[
                SecurityPolicyRule(
                    id="memory_limit",
                    name="Memory Limit",
                    description="Modules must not exceed memory limits",
                    predicate=MetricExceeds(metric="memory_usage", threshold=100 * 1024 * 1024),
                    action="warn",
                    severity="medium",
                ),
                SecurityPolicyRule(
                    id="cpu_limit",
                    name="CPU Limit",
                    description="Modules must not exceed CPU usage limits",
                    predicate=MetricExceeds(metric="cpu_usage", threshold=CPU_WARN_PERCENT),
                    action="warn",
                    severity="medium",
                ),
            ],
        ),
    ]


def default_frameworks() -> List[ComplianceFramework]:
    """Built-in compliance frameworks"""
    return [
        ComplianceFramework(
            id="gdpr_compliance",
            name="GDPR Compliance",
            description="General Data Protection Regulation compliance framework",
            requirements=[
                ComplianceRequirement(
                    id="data_minimization",
                    name="Data Minimization",
                    description="Collect only necessary data",
                    category="data_privacy",
                    mandatory=True,
                    # Special-category data, or a permission set far beyond what a UI module needs
                    violated_when=AnyOf(predicates=[
                        DataTypeIncludes(values=["biometric", "health", "genetic", "precise_location"]),
                        PermissionCountExceeds(limit=10),
                    ]),
                    remediation="Remove unnecessary data collection",
                ),
                ComplianceRequirement(
                    id="consent_management",
                    name="Consent Management",
                    description="Proper consent management for data processing",
                    category="data_privacy",
                    mandatory=True,
                    violated_when=AllOf(predicates=[
                        DataTypeIncludes(values=PII_DATA_TYPES + ["personal_data"]),
                        Not(predicate=FlagEquals(field="consent_management", value=True)),
                    ]),
                    remediation="Implement proper consent mechanisms",
                ),
            ],
        ),
        ComplianceFramework(
            id="soc2_compliance",
            name="SOC 2 Compliance",
            description="SOC 2 Type II compliance framework",
            requirements=[
                ComplianceRequirement(
                    id="security_controls",
                    name="Security Controls",
                    description="Adequate security controls implementation",
                    category="security",
                    mandatory=True,
                    violated_when=AnyOf(predicates=[
                        FlagEquals(field="encryption", value=False),
                        ViolationPresent(min_severity="critical"),
                    ]),
                    remediation="Implement required security controls",
                ),
                ComplianceRequirement(
                    id="access_controls",
                    name="Access Controls",
                    description="Proper access control implementation",
                    category="security",
                    mandatory=True,
                    violated_when=PermissionContains(tokens=PRIVILEGED_PERMISSION_TOKENS),
                    remediation="Implement proper access controls",
                ),
            ],
        ),
    ]


class PolicySource(ABC):
    """Where a registry refresh loads its contents from"""

    @abstractmethod
    async def load(self) -> Tuple[List[SecurityPolicy], List[ComplianceFramework]]:
        pass


class DefaultPolicySource(PolicySource):
    """The built-in policies and frameworks"""

    async def load(self) -> Tuple[List[SecurityPolicy], List[ComplianceFramework]]:
        return default_policies(), default_frameworks()


class FilePolicySource(PolicySource):
    """
    Policies and frameworks from a YAML or JSON document.

    Expected top-level keys are ``policies`` and ``frameworks``; either may be
    omitted. Predicates use their ``kind`` tag, for example::

        policies:
          - id: no_pii
            name: No PII
            enforcement: strict
            applicable_modules: ["*"]
            rules:
              - id: pii
                name: PII
                description: Modules must not collect PII
                action: deny
                severity: high
                predicate: {kind: data_type_includes, values: [pii]}
    """

    def __init__(self, path: str):
        self.path = path

    async def load(self) -> Tuple[List[SecurityPolicy], List[ComplianceFramework]]:
        data = await asyncio.to_thread(self._read)
        policies = [SecurityPolicy.model_validate(item) for item in data.get("policies", [])]
        frameworks = [ComplianceFramework.model_validate(item) for item in data.get("frameworks", [])]
        return policies, frameworks

    def _read(self) -> Dict[str, Any]:
        import yaml

        with open(self.path, "r") as f:
            if self.path.endswith(".json"):
                import json
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        return data or {}


RegistryListener = Callable[[RegistrySnapshot], None]


class PolicyRegistry:
    """
    Owner of the current ``RegistrySnapshot``.

    Pass one instance to every component that reads policies. Each write
    (replace, create, update, refresh) reads the current snapshot and
    installs its successor under one lock; reads take no lock. Policies
    created or updated here are kept as overrides and laid over every
    set a refresh loads, so a reload never reverts them.
    """

    def __init__(
        self,
        policies: Optional[Iterable[SecurityPolicy]] = None,
        frameworks: Optional[Iterable[ComplianceFramework]] = None,
        source: Optional[PolicySource] = None,
        refresh_interval_sec: float = 3600,
    ):
        self.source = source or DefaultPolicySource()
        self.refresh_interval_sec = refresh_interval_sec
        self._snapshot = RegistrySnapshot(
            policies=tuple(default_policies() if policies is None else policies),
            frameworks=tuple(default_frameworks() if frameworks is None else frameworks),
            version=1,
        )
        self._write_lock = threading.Lock()
        self._overrides: Dict[str, SecurityPolicy] = {}
        self._listeners: List[RegistryListener] = []
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def add_listener(self, listener: RegistryListener) -> None:
        """Call ``listener`` with every new snapshot after it is swapped in"""
        self._listeners.append(listener)

    def replace(
        self,
        policies: Iterable[SecurityPolicy],
        frameworks: Optional[Iterable[ComplianceFramework]] = None,
    ) -> RegistrySnapshot:
        """Swap in exactly this policy set (frameworks kept when omitted)"""
        with self._write_lock:
            snapshot = self._swap(policies, frameworks)
        self._announce(snapshot)
        return snapshot

    @property
    def overrides(self) -> List[SecurityPolicy]:
        """Policies created or updated through this registry"""
        return list(self._overrides.values())

    def get_policy(self, policy_id: str) -> SecurityPolicy:
        policy = self._snapshot.get_policy(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        return policy

    def create_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        with self._write_lock:
            current = self._snapshot
            if current.get_policy(policy.id) is not None:
                raise InvalidRequestError("id", policy.id, "policy already exists")
            self._overrides[policy.id] = policy
            snapshot = self._swap(current.policies + (policy,), current.frameworks)

        self._announce(snapshot)
        return policy

    def update_policy(self, policy_id: str, updates: Dict[str, Any]) -> SecurityPolicy:
        """
        Apply a partial update to one policy.

        The policy id cannot change; ``updated_at`` is refreshed. Invalid
        updates raise InvalidRequestError and leave the registry untouched.
        """
        with self._write_lock:
            current = self._snapshot
            existing = current.get_policy(policy_id)
            if existing is None:
                raise PolicyNotFoundError(policy_id)

            data = existing.model_dump()
            data.update(updates)
            data["id"] = policy_id
            data["updated_at"] = utc_now()
            try:
                updated = SecurityPolicy.model_validate(data)
            except ValidationError as e:
                field_name = ", ".join(sorted(updates)) or "policy"
                raise InvalidRequestError(field_name, updates, str(e)) from e

            self._overrides[policy_id] = updated
            policies = tuple(updated if p.id == policy_id else p for p in current.policies)
            snapshot = self._swap(policies, current.frameworks)

        self._announce(snapshot)
        logger.info(f"Security policy updated: {policy_id} ({sorted(updates)})")
        return updated

    async def refresh(self) -> bool:
        """
        Reload from the source and swap atomically.

        Overrides replace loaded policies with the same id; overrides the
        source does not know are appended. Returns False and keeps the
        current snapshot when loading fails.
        """
        try:
            policies, frameworks = await self.source.load()
        except Exception as e:
            logger.error(f"Policy registry refresh failed, keeping v{self._snapshot.version}: {e}")
            return False

        with self._write_lock:
            snapshot = self._swap(self._with_overrides(policies), frameworks)
        self._announce(snapshot)
        return True

    def _with_overrides(self, policies: Iterable[SecurityPolicy]) -> List[SecurityPolicy]:
        merged = [self._overrides.get(p.id, p) for p in policies]
        loaded_ids = {p.id for p in merged}
        merged.extend(p for pid, p in self._overrides.items() if pid not in loaded_ids)
        return merged

    def _swap(
        self,
        policies: Iterable[SecurityPolicy],
        frameworks: Optional[Iterable[ComplianceFramework]],
    ) -> RegistrySnapshot:
        # caller holds _write_lock
        current = self._snapshot
        snapshot = RegistrySnapshot(
            policies=tuple(policies),
            frameworks=current.frameworks if frameworks is None else tuple(frameworks),
            version=current.version + 1,
        )
        self._snapshot = snapshot
        return snapshot

    def _announce(self, snapshot: RegistrySnapshot) -> None:
        logger.info(
            f"Policy registry v{snapshot.version}: "
            f"{len(snapshot.policies)} policies, {len(snapshot.frameworks)} frameworks"
        )
        self._notify(snapshot)

    def start_refresh(self) -> None:
        """Start the periodic refresh task on the running loop"""
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop_refresh(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_sec)
            await self.refresh()

    def _notify(self, snapshot: RegistrySnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Registry listener failed: {e}")
