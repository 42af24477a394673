"""
Configuration: ``crawler.yml`` for domains and defaults, environment for secrets
and per-deployment overrides.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urljoin, urlparse

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class SiteSettings(BaseModel):
    base_url: str = "https://powerplayusa.net"
    login_path: str = "/login"
    auth_target: str = "/"
    nav_timeout_ms: int = 30_000
    field_timeout_ms: int = 4_000
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = "en-US,en;q=0.9"
    timezone: Optional[str] = None
    cookie_name: str = "ppusa_session"
    wait_until: str = "domcontentloaded"

    def absolute(self, path_or_url: str) -> str:
        return urljoin(self.base_url.rstrip("/") + "/", path_or_url or "/")

    @property
    def host(self) -> str:
        return urlparse(self.base_url).hostname or ""


class Credentials(BaseModel):
    email: Optional[str] = None
    password: Optional[SecretStr] = None
    cookie: Optional[SecretStr] = None

    @property
    def has_login(self) -> bool:
        return bool(self.email) and bool(self.password and self.password.get_secret_value())

    @property
    def cookie_value(self) -> str:
        return self.cookie.get_secret_value() if self.cookie else ""


class BrowserSettings(BaseModel):
    browser_type: str = "chromium"
    headless: bool = True
    stealth: bool = True
    pool_size: int = Field(default=3, ge=1)
    idle_timeout_s: float = Field(default=300.0, gt=0)
    launch_retries: int = Field(default=2, ge=0)
    launch_backoff_s: float = Field(default=2.0, ge=0)
    args: List[str] = Field(default_factory=list)
    block_resources: List[str] = Field(default_factory=lambda: ["image", "media", "font"])


class DomainSettings(BaseModel):
    """ID-space bounds and batching for one crawled domain."""

    name: str
    parser: str
    path: str
    start_id: int = Field(default=1, ge=0)
    max_id: Optional[int] = None
    max_new_per_pass: Optional[int] = None
    consecutive_miss_limit: int = Field(default=20, ge=1)
    batch_size: int = Field(default=10, ge=2)
    concurrency: int = Field(default=3, ge=1)
    discovery_timeout_seconds: Optional[float] = None
    keep_backups: int = Field(default=0, ge=0)
    enabled: bool = True

    @field_validator("max_id", "max_new_per_pass", "discovery_timeout_seconds")
    @classmethod
    def _zero_means_unbounded(cls, value):
        if value is not None and value <= 0:
            return None
        return value

    @field_validator("path")
    @classmethod
    def _path_has_id(cls, value: str) -> str:
        if "{id}" not in value:
            raise ValueError("domain path must contain an '{id}' placeholder")
        return value

    @model_validator(mode="after")
    def _concurrency_below_batch(self) -> "DomainSettings":
        if self.concurrency >= self.batch_size:
            raise ValueError(
                f"concurrency ({self.concurrency}) must be lower than batch_size ({self.batch_size})"
            )
        return self


class CrawlSettings(BaseModel):
    data_dir: Path = Path("data")
    cron: str = "0 * * * *"
    tick_timeout_s: float = Field(default=3600.0, gt=0)
    run_on_startup: bool = False
    timezone: str = "UTC"
    report_limit: int = Field(default=20, ge=1)


class Settings(BaseModel):
    site: SiteSettings = Field(default_factory=SiteSettings)
    credentials: Credentials = Field(default_factory=Credentials)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    crawl: CrawlSettings = Field(default_factory=CrawlSettings)
    domains: List[DomainSettings] = Field(default_factory=list)
    discord_token: Optional[SecretStr] = None
    discord_log_channel_id: Optional[int] = None
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _concurrency_within_pool(self) -> "Settings":
        # fetches beyond the pool size each launch and log in a throwaway browser
        for domain in self.domains:
            if domain.concurrency > self.browser.pool_size:
                raise ValueError(
                    f"domain '{domain.name}' concurrency ({domain.concurrency}) exceeds "
                    f"browser pool_size ({self.browser.pool_size})"
                )
        return self

    def domain(self, name: str) -> DomainSettings:
        for domain in self.domains:
            if domain.name == name:
                return domain
        raise KeyError(f"Unknown domain: {name}")


DEFAULT_DOMAINS: List[Dict[str, Any]] = [
    {
        "name": "profiles",
        "parser": "profiles.ProfileParser",
        "path": "/users/{id}",
        "start_id": 1000,
        "consecutive_miss_limit": 20,
        "batch_size": 5,
        "concurrency": 3,
    },
    {
        "name": "states",
        "parser": "states.StateParser",
        "path": "/states/{id}",
        "start_id": 1,
        "max_id": 60,
        "consecutive_miss_limit": 5,
        "batch_size": 8,
        "concurrency": 3,
    },
]

# env var -> (section, key); None section means top level
_ENV_OVERRIDES: Dict[str, Tuple[Optional[str], str]] = {
    "PPUSA_EMAIL": ("credentials", "email"),
    "PPUSA_PASSWORD": ("credentials", "password"),
    "PPUSA_COOKIE": ("credentials", "cookie"),
    "PPUSA_BASE_URL": ("site", "base_url"),
    "PPUSA_LOGIN_PATH": ("site", "login_path"),
    "PPUSA_AUTH_TARGET": ("site", "auth_target"),
    "PPUSA_NAV_TIMEOUT_MS": ("site", "nav_timeout_ms"),
    "PPUSA_USER_AGENT": ("site", "user_agent"),
    "PPUSA_ACCEPT_LANGUAGE": ("site", "accept_language"),
    "PPUSA_TIMEZONE": ("site", "timezone"),
    "BROWSER_HEADLESS": ("browser", "headless"),
    "BROWSER_POOL_SIZE": ("browser", "pool_size"),
    "BROWSER_IDLE_TIMEOUT_S": ("browser", "idle_timeout_s"),
    "BROWSER_LAUNCH_RETRIES": ("browser", "launch_retries"),
    "BROWSER_LAUNCH_BACKOFF_S": ("browser", "launch_backoff_s"),
    "BROWSER_ARGS": ("browser", "args"),
    "CRAWLER_DATA_DIR": ("crawl", "data_dir"),
    "CRAWL_CRON": ("crawl", "cron"),
    "CRAWL_TICK_TIMEOUT_S": ("crawl", "tick_timeout_s"),
    "CRAWL_RUN_ON_STARTUP": ("crawl", "run_on_startup"),
    "SCHEDULER_TIMEZONE": ("crawl", "timezone"),
    "DISCORD_TOKEN": (None, "discord_token"),
    "DISCORD_LOG_CHANNEL_ID": (None, "discord_log_channel_id"),
    "LOG_LEVEL": (None, "log_level"),
}

# env var -> (domain name, key)
_DOMAIN_ENV_OVERRIDES: Dict[str, Tuple[str, str]] = {
    "PPUSA_START_USER_ID": ("profiles", "start_id"),
    "PPUSA_MAX_USER_ID": ("profiles", "max_id"),
}


def load_config(path: str = "crawler.yml") -> Dict[str, Any]:
    """Load configuration from YAML file; a missing file yields an empty config."""
    config_path = Path(path)
    if not config_path.exists():
        logger.info(f"Config file not found: {path}, using defaults")
        return {}
    with config_path.open() as f:
        return yaml.safe_load(f) or {}


def _apply_env(raw: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        if key == "args":
            value = [part.strip() for part in value.split(",") if part.strip()]
        if section is None:
            raw[key] = value
        else:
            raw.setdefault(section, {})[key] = value

    domains = raw.get("domains") or []
    for var, (domain_name, key) in _DOMAIN_ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        for domain in domains:
            if domain.get("name") == domain_name:
                domain[key] = value
    return raw


def _normalize_domains(raw: Dict[str, Any]) -> Dict[str, Any]:
    domains = raw.get("domains")
    if domains is None:
        raw["domains"] = [dict(d) for d in DEFAULT_DOMAINS]
    elif isinstance(domains, dict):
        # mapping form: {profiles: {...}, states: {...}}
        raw["domains"] = [{**(cfg or {}), "name": name} for name, cfg in domains.items()]
    return raw


def load_settings(
    config_path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build :class:`Settings` from YAML (``CRAWLER_CONFIG``) overlaid with env vars."""
    env = os.environ if env is None else env
    path = config_path or env.get("CRAWLER_CONFIG", "crawler.yml")
    raw = _normalize_domains(load_config(path))
    raw = _apply_env(raw, env)
    settings = Settings.model_validate(raw)
    logger.info(
        "Loaded settings: %d domain(s), pool size %d, cron '%s'",
        len(settings.domains),
        settings.browser.pool_size,
        settings.crawl.cron,
    )
    return settings
