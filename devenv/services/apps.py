"""
Application registry.

Tracks which applications are deployed in a developer environment and at
which version. The production store is a ConfigMap holding one JSON entry per
application; an in-memory store backs unit tests.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from ..errors import DevenvError, MalformedDocumentError

logger = logging.getLogger(__name__)


class AppNotFoundError(DevenvError):
    """Application not found in the registry."""
    pass


class App(BaseModel):
    """An application deployed in the developer environment."""
    name: str = Field(..., description="Application name, 1:1 with its repository")
    version: str = Field(default="", description="Currently deployed version")
    deployed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AppRegistry(ABC):
    """Interface for reading and writing application registry entries."""

    @abstractmethod
    async def list(self) -> List[App]:
        pass

    @abstractmethod
    async def get(self, name: str) -> App:
        """
        Raises:
            AppNotFoundError: If the application is not registered
        """
        pass

    @abstractmethod
    async def set(self, app: App) -> None:
        pass

    @abstractmethod
    async def delete(self, name: str) -> None:
        pass

    @abstractmethod
    async def reset(self) -> None:
        """Delete every entry and the underlying store."""
        pass


class KubernetesAppRegistry(AppRegistry):
    """
    Application registry stored in a ConfigMap.

    A missing ConfigMap reads as an empty registry.
    """

    def __init__(self, k8s, namespace: str = "devenv", configmap_name: str = "apps"):
        self.k8s = k8s
        self.namespace = namespace
        self.configmap_name = configmap_name

    async def _read(self) -> Dict[str, App]:
        config_map = await self.k8s.read_config_map(self.configmap_name, self.namespace)
        if config_map is None:
            return {}

        apps: Dict[str, App] = {}
        for entry_name, content in (config_map.data or {}).items():
            try:
                app = App.model_validate_json(content)
            except ValidationError as e:
                raise MalformedDocumentError(f"failed to read apps entry '{entry_name}': {e}") from e
            apps[app.name] = app
        return apps

    async def _write(self, apps: Dict[str, App]) -> None:
        data = {name: app.model_dump_json() for name, app in apps.items()}
        await self.k8s.create_or_replace_config_map(self.configmap_name, self.namespace, data)

    async def list(self) -> List[App]:
        return list((await self._read()).values())

    async def get(self, name: str) -> App:
        apps = await self._read()
        if name not in apps:
            raise AppNotFoundError(f"application '{name}' not found")
        return apps[name]

    async def set(self, app: App) -> None:
        apps = await self._read()
        apps[app.name] = app
        await self._write(apps)

    async def delete(self, name: str) -> None:
        apps = await self._read()
        if name not in apps:
            raise AppNotFoundError(f"application '{name}' not found")
        del apps[name]
        await self._write(apps)

    async def reset(self) -> None:
        await self.k8s.delete_config_map(self.configmap_name, self.namespace)
        logger.info(f"[APPS] Reset application registry {self.namespace}/{self.configmap_name}")


class InMemoryAppRegistry(AppRegistry):
    """Application registry kept in process memory."""

    def __init__(self, apps: Optional[Iterable[App]] = None):
        self.apps: Dict[str, App] = {app.name: app for app in (apps or [])}

    async def list(self) -> List[App]:
        return list(self.apps.values())

    async def get(self, name: str) -> App:
        if name not in self.apps:
            raise AppNotFoundError(f"application '{name}' not found")
        return self.apps[name]

    async def set(self, app: App) -> None:
        self.apps[app.name] = app

    async def delete(self, name: str) -> None:
        self.apps.pop(name, None)

    async def reset(self) -> None:
        self.apps.clear()
