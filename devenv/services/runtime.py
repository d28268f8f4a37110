"""
Cluster runtimes.

A runtime creates and destroys the Kubernetes cluster backing a developer
environment (a local single-node cluster or a remote virtual cluster). The
concrete runtimes live with the provisioning CLI; this module defines the
contract the snapshot lifecycle consumes and the registry used to look them up.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..errors import RuntimeNotFoundError


class RuntimeType(str, Enum):
    LOCAL = "local"    # Runs on this machine (Docker or a VM)
    REMOTE = "remote"  # Only the API server is reachable


class RuntimeStatus(str, Enum):
    UNKNOWN = "unknown"
    RUNNING = "running"
    STOPPED = "stopped"
    UNPROVISIONED = "unprovisioned"


class RuntimeConfig(BaseModel):
    """Configuration reported by a runtime. Exposed to post-restore templates."""
    name: str
    type: RuntimeType
    cluster_name: str = Field(default="dev-environment", description="Name of the cluster this runtime manages")


class ClusterRuntime(ABC):
    """Interface all cluster runtimes implement."""

    @abstractmethod
    def get_config(self) -> RuntimeConfig:
        pass

    @abstractmethod
    async def status(self) -> RuntimeStatus:
        pass

    @abstractmethod
    async def pre_create(self) -> None:
        """Run before create() to set up prerequisites."""
        pass

    @abstractmethod
    async def create(self) -> None:
        pass

    @abstractmethod
    async def destroy(self) -> None:
        pass

    @abstractmethod
    async def get_kube_config(self) -> str:
        """Return the path of a kubeconfig for the active cluster."""
        pass


class RuntimeRegistry:
    """
    The set of runtimes available to this process.

    Constructed once at startup and passed to the components that need it.
    """

    def __init__(self, runtimes: Iterable[ClusterRuntime] = ()):
        self._runtimes: Dict[str, ClusterRuntime] = {}
        for runtime in runtimes:
            self.register(runtime)

    def register(self, runtime: ClusterRuntime) -> None:
        self._runtimes[runtime.get_config().name] = runtime

    def get(self, name: str) -> ClusterRuntime:
        """
        Raises:
            RuntimeNotFoundError: If no runtime has this name
        """
        if name not in self._runtimes:
            raise RuntimeNotFoundError(f"runtime '{name}' not found")
        return self._runtimes[name]

    def all(self) -> List[ClusterRuntime]:
        return list(self._runtimes.values())

    def enabled(self, names: Iterable[str]) -> List[ClusterRuntime]:
        """Runtimes whose name is in names, in registration order."""
        wanted = set(names)
        return [r for name, r in self._runtimes.items() if name in wanted]

    async def running(self, names: Optional[Iterable[str]] = None) -> ClusterRuntime:
        """
        Return the first running runtime, optionally among enabled names.

        Raises:
            RuntimeNotFoundError: If no runtime is running
        """
        candidates = self.all() if names is None else self.enabled(names)
        for runtime in candidates:
            if await runtime.status() == RuntimeStatus.RUNNING:
                return runtime
        raise RuntimeNotFoundError("no runtime is running")
