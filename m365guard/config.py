"""Configuration management for m365guard."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from .utils.domains import canonicalize_domain

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

DEFAULT_RULES_URL = (
    "https://raw.githubusercontent.com/CyberDrain/Check/refs/heads/main/rules/detection-rules.json"
)

# Very high traffic platforms that never host M365 login surfaces. A rule
# document can replace this list via exclusion_system.major_platform_domains.
DEFAULT_MAJOR_PLATFORM_DOMAINS: tuple[str, ...] = (
    # Search/portals
    "google.com",
    "bing.com",
    "yahoo.com",
    "duckduckgo.com",
    # Social/discussion platforms
    "facebook.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "reddit.com",
    "linkedin.com",
    # Code/video platforms
    "github.com",
    "stackoverflow.com",
    "youtube.com",
    "wikipedia.org",
    # Commerce
    "amazon.com",
    "apple.com",
    "netflix.com",
)


@dataclass
class ProtectionSettings:
    """Per-page protection switches read from the host settings store."""

    protection_enabled: bool = True
    badge_enabled: bool = False
    cipp_reporting_enabled: bool = False
    cipp_server_url: str = ""
    cipp_tenant_id: str = ""

    @classmethod
    def from_dict(cls, data: Optional[dict], defaults: Optional["ProtectionSettings"] = None) -> "ProtectionSettings":
        """Build settings from a stored mapping, falling back to ``defaults``."""
        base = defaults or cls()
        data = data if isinstance(data, dict) else {}

        def _flag(key: str, default: bool) -> bool:
            value = data.get(key)
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                return value.strip().lower() == "true"
            return default

        return cls(
            protection_enabled=_flag("enablePageBlocking", base.protection_enabled),
            badge_enabled=_flag("enableValidPageBadge", base.badge_enabled),
            cipp_reporting_enabled=_flag("enableCippReporting", base.cipp_reporting_enabled),
            cipp_server_url=str(data.get("cippServerUrl") or base.cipp_server_url or ""),
            cipp_tenant_id=str(data.get("cippTenantId") or base.cipp_tenant_id or ""),
        )

    def to_dict(self) -> dict:
        return {
            "enablePageBlocking": self.protection_enabled,
            "enableValidPageBadge": self.badge_enabled,
            "enableCippReporting": self.cipp_reporting_enabled,
            "cippServerUrl": self.cipp_server_url,
            "cippTenantId": self.cipp_tenant_id,
        }


@dataclass
class Config:
    """Process-level configuration for the detection engine."""

    # Rule document
    rules_path: Optional[Path] = None
    rules_url: str = DEFAULT_RULES_URL
    rule_load_timeout: float = 10.0

    # Rogue OAuth application registry
    rogue_apps_path: Optional[Path] = None
    rogue_lookup_timeout: float = 2.0

    # Host settings store
    settings_path: Optional[Path] = None
    settings_timeout: float = 2.0

    # Protection defaults (overridden per page by the settings store)
    enable_page_blocking: bool = True
    enable_valid_page_badge: bool = False

    # CIPP reporting
    enable_cipp_reporting: bool = False
    cipp_server_url: str = ""
    cipp_tenant_id: str = ""
    report_timeout: float = 10.0

    # Scanner budget
    scan_budget_ms: int = 500
    max_scan_chars: int = 500_000

    # Re-evaluation controller
    monitor_debounce_seconds: float = 0.5
    monitor_cooldown_seconds: float = 1.0
    monitor_max_reruns: int = 10
    monitor_periodic_seconds: float = 5.0
    monitor_ceiling_seconds: float = 30.0

    major_platform_domains: tuple[str, ...] = field(
        default_factory=lambda: tuple(DEFAULT_MAJOR_PLATFORM_DOMAINS)
    )

    config_dir: Path = Path("./config")
    log_level: str = "INFO"

    def __post_init__(self):
        self.config_dir = Path(self.config_dir)
        if self.rules_path is not None:
            self.rules_path = Path(self.rules_path)
        if self.rogue_apps_path is not None:
            self.rogue_apps_path = Path(self.rogue_apps_path)
        if self.settings_path is not None:
            self.settings_path = Path(self.settings_path)
        self.cipp_server_url = (self.cipp_server_url or "").strip().rstrip("/")
        self.major_platform_domains = tuple(
            d for d in (canonicalize_domain(item) for item in self.major_platform_domains) if d
        )

    def protection_defaults(self) -> ProtectionSettings:
        """Settings used when the host store is empty or unreachable."""
        return ProtectionSettings(
            protection_enabled=self.enable_page_blocking,
            badge_enabled=self.enable_valid_page_badge,
            cipp_reporting_enabled=self.enable_cipp_reporting,
            cipp_server_url=self.cipp_server_url,
            cipp_tenant_id=self.cipp_tenant_id,
        )


def _load_overrides(config_dir: Path) -> dict:
    """Load engine overrides from config/engine.yaml (optional)."""
    path = Path(config_dir or ".") / "engine.yaml"
    if not path.exists():
        return {}

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except Exception as exc:
        logger.warning("Failed to parse engine.yaml: %s", exc)
        return {}

    if not isinstance(data, dict):
        logger.warning("Ignoring engine.yaml: top level must be a mapping")
        return {}
    return data


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def load_config() -> Config:
    """Load configuration from environment variables."""
    load_dotenv()

    config_dir = Path(os.getenv("CONFIG_DIR", "./config"))
    overrides = _load_overrides(config_dir)

    platforms_str = os.getenv("MAJOR_PLATFORM_DOMAINS", "")
    platforms = [d.strip().lower() for d in platforms_str.split(",") if d.strip()]
    if not platforms and isinstance(overrides.get("major_platform_domains"), list):
        platforms = [str(d) for d in overrides["major_platform_domains"]]

    kwargs: dict[str, object] = {}
    if platforms:
        kwargs["major_platform_domains"] = tuple(platforms)

    rules_path = _env_path("RULES_PATH")
    if rules_path is None and overrides.get("rules_path"):
        rules_path = Path(str(overrides["rules_path"]))

    return Config(
        rules_path=rules_path,
        rules_url=os.getenv("RULES_URL", str(overrides.get("rules_url") or DEFAULT_RULES_URL)),
        rule_load_timeout=float(os.getenv("RULE_LOAD_TIMEOUT", "10")),
        rogue_apps_path=_env_path("ROGUE_APPS_PATH") or (config_dir / "rogue_apps.yaml"),
        rogue_lookup_timeout=float(os.getenv("ROGUE_LOOKUP_TIMEOUT", "2")),
        settings_path=_env_path("SETTINGS_PATH"),
        settings_timeout=float(os.getenv("SETTINGS_TIMEOUT", "2")),
        enable_page_blocking=_env_flag("ENABLE_PAGE_BLOCKING", "true"),
        enable_valid_page_badge=_env_flag("ENABLE_VALID_PAGE_BADGE", "false"),
        enable_cipp_reporting=_env_flag("ENABLE_CIPP_REPORTING", "false"),
        cipp_server_url=os.getenv("CIPP_SERVER_URL", ""),
        cipp_tenant_id=os.getenv("CIPP_TENANT_ID", ""),
        report_timeout=float(os.getenv("REPORT_TIMEOUT", "10")),
        scan_budget_ms=int(os.getenv("SCAN_BUDGET_MS", str(overrides.get("scan_budget_ms", 500)))),
        max_scan_chars=int(os.getenv("MAX_SCAN_CHARS", str(overrides.get("max_scan_chars", 500_000)))),
        monitor_debounce_seconds=float(os.getenv("MONITOR_DEBOUNCE_SECONDS", "0.5")),
        monitor_cooldown_seconds=float(os.getenv("MONITOR_COOLDOWN_SECONDS", "1")),
        monitor_max_reruns=int(os.getenv("MONITOR_MAX_RERUNS", "10")),
        monitor_periodic_seconds=float(os.getenv("MONITOR_PERIODIC_SECONDS", "5")),
        monitor_ceiling_seconds=float(os.getenv("MONITOR_CEILING_SECONDS", "30")),
        config_dir=config_dir,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        **kwargs,
    )


def validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of error messages."""
    errors: list[str] = []
    if config.rules_path is None and not (config.rules_url or "").strip():
        errors.append("Either RULES_PATH or RULES_URL is required")
    if config.rules_path is not None and not config.rules_path.exists():
        errors.append(f"RULES_PATH does not exist: {config.rules_path}")

    if config.enable_cipp_reporting and not config.cipp_server_url:
        errors.append("CIPP reporting enabled but CIPP_SERVER_URL missing")

    for name in ("rule_load_timeout", "rogue_lookup_timeout", "settings_timeout", "report_timeout"):
        if getattr(config, name) <= 0:
            errors.append(f"{name.upper()} must be positive")

    if config.scan_budget_ms <= 0:
        errors.append("SCAN_BUDGET_MS must be positive")
    if config.monitor_max_reruns < 0:
        errors.append("MONITOR_MAX_RERUNS must not be negative")
    if config.monitor_ceiling_seconds < config.monitor_debounce_seconds:
        errors.append("MONITOR_CEILING_SECONDS must not be shorter than the debounce delay")

    if config.rogue_apps_path is not None and not config.rogue_apps_path.exists():
        # The registry is optional: rogue-app checks simply never match.
        logger.info("No rogue app registry at %s; rogue-app detection disabled", config.rogue_apps_path)

    return errors


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging the way the service entry points expect."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
