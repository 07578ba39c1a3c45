"""
Docker isolation runtime

Runs the sandbox probe in a locked-down container: capped CPU, memory and
scratch disk, every capability dropped except NET_BIND_SERVICE, no
privilege escalation, no restarts.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container

from modguard.backends.base import ContainerSpec, IsolationRuntime
from modguard.errors import IsolationRuntimeUnavailableError, SandboxExecutionError

logger = logging.getLogger(__name__)

SANDBOX_LABEL = "modguard.sandbox"


class DockerRuntime(IsolationRuntime):
    """
    Docker-backed isolation runtime

    Docker SDK calls are blocking and run via ``asyncio.to_thread``.
    Errors where the daemon answered become SandboxExecutionError; errors
    reaching the daemon at all become IsolationRuntimeUnavailableError.
    """

    name = "docker"

    STOP_TIMEOUT_SEC = 5
    PIDS_LIMIT = 512

    def __init__(self, config: Optional[dict] = None, client: Optional[docker.DockerClient] = None):
        """
        Args:
            config: Optional dict with keys:
                - pull_missing: Pull the image when not present (default True)
            client: Pre-built Docker client (created from env when omitted)
        """
        super().__init__(config)
        self.pull_missing = self.config.get("pull_missing", True)
        self._client = client
        self._containers: Dict[str, Container] = {}

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialize Docker client"""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise IsolationRuntimeUnavailableError(self.name, str(e)) from e
        return self._client

    async def create(self, spec: ContainerSpec) -> str:
        await self._ensure_image(spec.image)
        kwargs = self.build_create_kwargs(spec)
        try:
            container = await asyncio.to_thread(self.client.containers.create, **kwargs)
        except APIError as e:
            raise SandboxExecutionError(spec.name, f"container create failed: {e}") from e
        except DockerException as e:
            raise IsolationRuntimeUnavailableError(self.name, str(e)) from e

        self._containers[container.id] = container
        logger.debug(f"Created container {container.id[:12]} for {spec.name}")
        return container.id

    def build_create_kwargs(self, spec: ContainerSpec) -> Dict[str, Any]:
        """Keyword arguments for ``containers.create``"""
        kwargs: Dict[str, Any] = {
            "image": spec.image,
            "command": spec.command,
            "name": spec.name,
            "environment": dict(spec.environment),
            "labels": {SANDBOX_LABEL: "true", **spec.labels},
            "nano_cpus": int(spec.cpu * 1e9),
            "mem_limit": spec.memory_bytes,
            # No swap on top of the memory cap
            "memswap_limit": spec.memory_bytes,
            "pids_limit": self.PIDS_LIMIT,
            "tmpfs": {"/tmp": f"rw,size={spec.disk_bytes},mode=1777"},
            "security_opt": ["no-new-privileges:true"],
            "cap_drop": ["ALL"],
            "cap_add": ["NET_BIND_SERVICE"],
            "network": spec.network_mode,
            "restart_policy": {"Name": "no"},
            "detach": True,
        }
        if spec.working_dir:
            kwargs["working_dir"] = spec.working_dir
        if spec.enforce_disk_quota:
            kwargs["storage_opt"] = {"size": str(spec.disk_bytes)}
        return kwargs

    async def start(self, handle: str) -> None:
        container = await self._get(handle)
        await self._call(handle, container.start)

    async def wait(self, handle: str) -> int:
        container = await self._get(handle)
        result = await self._call(handle, container.wait)
        return int(result.get("StatusCode", -1))

    async def logs(self, handle: str) -> str:
        container = await self._get(handle)
        output = await self._call(handle, container.logs, stdout=True, stderr=True)
        if isinstance(output, bytes):
            return output.decode("utf-8", errors="replace")
        return str(output)

    async def stats(self, handle: str) -> Dict[str, Any]:
        container = await self._get(handle)
        return await self._call(handle, container.stats, stream=False)

    async def stop(self, handle: str) -> None:
        try:
            container = await self._get(handle)
            await asyncio.to_thread(container.stop, timeout=self.STOP_TIMEOUT_SEC)
        except (NotFound, SandboxExecutionError):
            logger.debug(f"Container {handle[:12]} already gone on stop")

    async def remove(self, handle: str) -> None:
        container = self._containers.pop(handle, None)
        try:
            if container is None:
                container = await asyncio.to_thread(self.client.containers.get, handle)
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            logger.debug(f"Container {handle[:12]} already removed")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check Docker daemon health

        Returns:
            Dict with status, docker_version and sandbox container counts
        """
        try:
            version_info = await asyncio.to_thread(self.client.version)
            containers = await asyncio.to_thread(
                self.client.containers.list,
                filters={"label": f"{SANDBOX_LABEL}=true"},
                all=True,
            )
            running = len([c for c in containers if c.status == "running"])

            return {
                "status": "healthy",
                "runtime": self.name,
                "docker_version": version_info.get("Version", "unknown"),
                "api_version": version_info.get("ApiVersion", "unknown"),
                "running_sandboxes": running,
                "total_sandboxes": len(containers),
            }

        except (DockerException, IsolationRuntimeUnavailableError) as e:
            return {
                "status": "unhealthy",
                "runtime": self.name,
                "error": str(e),
            }

    async def _ensure_image(self, image: str) -> None:
        try:
            await asyncio.to_thread(self.client.images.get, image)
        except ImageNotFound:
            if not self.pull_missing:
                raise SandboxExecutionError(image, "image not present and pulling is disabled")
            logger.info(f"Pulling sandbox image {image}")
            try:
                await asyncio.to_thread(self.client.images.pull, image)
            except APIError as e:
                raise SandboxExecutionError(image, f"image pull failed: {e}") from e
        except APIError as e:
            raise SandboxExecutionError(image, f"image lookup failed: {e}") from e
        except DockerException as e:
            raise IsolationRuntimeUnavailableError(self.name, str(e)) from e

    async def _get(self, handle: str) -> Container:
        container = self._containers.get(handle)
        if container is not None:
            return container
        try:
            container = await asyncio.to_thread(self.client.containers.get, handle)
        except NotFound as e:
            raise SandboxExecutionError(handle, "container not found") from e
        self._containers[handle] = container
        return container

    async def _call(self, handle: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except APIError as e:
            raise SandboxExecutionError(handle, str(e)) from e
        except DockerException as e:
            raise IsolationRuntimeUnavailableError(self.name, str(e)) from e
