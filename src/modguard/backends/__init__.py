"""
Isolation runtime base class

Every runtime the sandbox orchestrator drives must implement this
interface. Handles are opaque strings owned by the runtime.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ContainerSpec:
    """What to run and under which limits"""
    name: str
    image: str
    command: List[str]
    environment: Dict[str, str] = field(default_factory=dict)
    cpu: float = 0.5
    memory_bytes: int = 512 * 1024 * 1024
    disk_bytes: int = 1024 * 1024 * 1024
    network_mode: str = "bridge"
    working_dir: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    enforce_disk_quota: bool = False


class IsolationRuntime(ABC):
    """
    Abstract base class for isolation runtimes.

    ``stop`` and ``remove`` must tolerate an environment that already
    exited or was already removed.
    """

    name: str = "runtime"

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

    @abstractmethod
    async def create(self, spec: ContainerSpec) -> str:
        """Allocate the environment; returns its handle"""
        pass

    @abstractmethod
    async def start(self, handle: str) -> None:
        pass

    @abstractmethod
    async def wait(self, handle: str) -> int:
        """Block until the environment exits; returns its exit code"""
        pass

    @abstractmethod
    async def logs(self, handle: str) -> str:
        """Everything the environment printed so far"""
        pass

    @abstractmethod
    async def stats(self, handle: str) -> Dict[str, Any]:
        """One resource statistics snapshot in Docker's stats format"""
        pass

    @abstractmethod
    async def stop(self, handle: str) -> None:
        pass

    @abstractmethod
    async def remove(self, handle: str) -> None:
        pass

    @abstractmethod
    async def health_check(self) -> dict:
        """
        Check if the runtime is reachable.

        Returns:
            Dict with at least a ``status`` key
        """
        pass


__all__ = ["ContainerSpec", "IsolationRuntime"]
