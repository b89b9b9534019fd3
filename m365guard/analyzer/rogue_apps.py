"""Registry of known-malicious OAuth applications."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RogueAppMatch:
    """Result of a rogue-app lookup for one OAuth client id."""

    is_rogue: bool = False
    client_id: str = ""
    app_name: str = ""
    description: str = ""
    tags: tuple[str, ...] = ()
    risk: str = ""
    references: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "isRogue": self.is_rogue,
            "clientId": self.client_id,
            "appName": self.app_name,
            "description": self.description,
            "tags": list(self.tags),
            "risk": self.risk,
            "references": list(self.references),
        }


NOT_ROGUE = RogueAppMatch()


@dataclass
class RogueAppList:
    """Loaded registry data."""

    version: str = "1.0"
    last_updated: Optional[str] = None
    apps: dict[str, RogueAppMatch] = field(default_factory=dict)


class RogueAppRegistry:
    """Loads the rogue OAuth application list and answers lookups.

    The file is YAML (or JSON) with an ``apps`` list whose entries carry at
    least ``client_id``. Ids are compared case-insensitively.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._data: Optional[RogueAppList] = None

    def load(self) -> RogueAppList:
        """Load the registry from file."""
        if self.path is None or not self.path.exists():
            if self.path is not None:
                logger.warning("Rogue app registry not found: %s", self.path)
            return RogueAppList()

        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except Exception as exc:
            logger.error("Failed to load rogue app registry %s: %s", self.path, exc)
            return RogueAppList()

        if isinstance(data, list):
            data = {"apps": data}
        if not isinstance(data, dict):
            logger.error("Rogue app registry %s: top level must be a mapping", self.path)
            return RogueAppList()

        registry = RogueAppList(
            version=str(data.get("version", "1.0")),
            last_updated=data.get("last_updated"),
        )
        for item in data.get("apps", []) or []:
            if not isinstance(item, dict):
                continue
            client_id = str(item.get("client_id") or item.get("appId") or "").strip().lower()
            if not client_id or client_id in registry.apps:
                continue
            registry.apps[client_id] = RogueAppMatch(
                is_rogue=True,
                client_id=client_id,
                app_name=str(item.get("name") or item.get("app_name") or "Unknown application"),
                description=str(item.get("description") or ""),
                tags=tuple(str(t) for t in item.get("tags", []) or []),
                risk=str(item.get("risk") or "high"),
                references=tuple(str(r) for r in item.get("references", []) or []),
            )

        logger.info("Loaded rogue app registry v%s: %d apps", registry.version, len(registry.apps))
        return registry

    def get(self) -> RogueAppList:
        """Get cached registry, loading if necessary."""
        if self._data is None:
            self._data = self.load()
        return self._data

    def reload(self) -> RogueAppList:
        """Force reload from file."""
        self._data = None
        return self.get()

    async def lookup(self, client_id: str) -> RogueAppMatch:
        key = (client_id or "").strip().lower()
        if not key:
            return NOT_ROGUE
        if self._data is None:
            await asyncio.to_thread(self.get)
        return self.get().apps.get(key, NOT_ROGUE)
