"""Interfaces to the hosting environment and reference implementations.

The engine never talks to a browser, a storage backend or a UI directly;
it goes through these small protocols. Adapters here are enough to run the
engine as a library or from tests.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Protocol, Union

from .constants import CREDENTIAL_INPUT_SELECTOR
from .utils.files import atomic_write_text

if TYPE_CHECKING:
    from .analyzer.actions import ProtectiveAction
    from .analyzer.detector_models import DetectionVerdict
    from .analyzer.rogue_apps import RogueAppMatch

logger = logging.getLogger(__name__)


class RuleSource(Protocol):
    name: str

    async def fetch(self) -> Union[str, bytes, dict]:  # pragma: no cover - interface
        ...


class SettingsStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any:  # pragma: no cover - interface
        ...

    async def set(self, key: str, value: Any) -> None:  # pragma: no cover - interface
        ...


class RogueAppLookup(Protocol):
    async def lookup(self, client_id: str) -> "RogueAppMatch":  # pragma: no cover - interface
        ...


class ReportSink(Protocol):
    async def send(self, event: dict) -> bool:  # pragma: no cover - interface
        ...


class VerdictRenderer(Protocol):
    async def render(self, verdict: "DetectionVerdict", action: "ProtectiveAction") -> None:  # pragma: no cover
        ...

    async def render_fallback_warning(self, url: str) -> None:  # pragma: no cover - interface
        ...


class MemorySettingsStore:
    """In-memory key/value settings."""

    def __init__(self, initial: Optional[dict] = None):
        self._data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value


class FileSettingsStore:
    """JSON file backed key/value settings with atomic writes."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read settings %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    async def get(self, key: str, default: Any = None) -> Any:
        data = await asyncio.to_thread(self._read)
        return data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data[key] = value
            content = json.dumps(data, indent=2, sort_keys=True) + "\n"
            await asyncio.to_thread(atomic_write_text, self.path, content)


class LoggingRenderer:
    """Renderer that logs what a UI would show and remembers the last call."""

    def __init__(self):
        self.last_verdict: Optional["DetectionVerdict"] = None
        self.last_action: Optional["ProtectiveAction"] = None
        self.fallback_warnings: list[str] = []

    async def render(self, verdict: "DetectionVerdict", action: "ProtectiveAction") -> None:
        self.last_verdict = verdict
        self.last_action = action
        if action.kind.value == "none":
            return
        logger.info(
            "Render %s for %s: %s (dismissible=%s)",
            action.kind,
            verdict.url,
            verdict.reason,
            action.dismissible,
        )
        if action.disable_credentials:
            logger.info("Disabling credential inputs matching %s", CREDENTIAL_INPUT_SELECTOR)

    async def render_fallback_warning(self, url: str) -> None:
        self.fallback_warnings.append(url)
        logger.warning("Fallback warning shown on %s: detection rules unavailable", url)
