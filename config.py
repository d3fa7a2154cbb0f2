#!/usr/bin/env python3
"""
Configuration and logging for NewsDeck.

Settings are read once at import into the module-level ``config`` object.
Process settings (paths, timeouts, concurrency, tracing) come from the
environment; pipeline defaults (proxy base, default feeds, cooldown and
retention thresholds, aggregator rules) come from ``feeds.yaml``.
"""

from os import environ, path, access, R_OK
from typing import Any, Callable, Dict, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import re
import sys
import yaml
from dotenv import load_dotenv

DEFAULT_PROXY_BASE = "https://rss-proxy.example.workers.dev/?url="
DEFAULT_AGGREGATOR_HOSTS = ["news.google.com"]
DEFAULT_PLACEHOLDER_HOSTS = [
    "news.google.com",
    "gstatic.com",
    "googleusercontent.com",
    "google.com",
]
DEFAULT_PLACEHOLDER_PATTERNS = [
    r"/images/branding/",
    r"/logos?/",
    r"favicon",
    r"/static/",
    r"default[-_]?(image|thumb)",
]

SECRETS_MAX_BYTES = 2 * 1024 * 1024
FEEDS_MAX_BYTES = 5 * 1024 * 1024

LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}


def setup_logging():
    """Configure the root logger once for every NewsDeck module.

    ``LOG_LEVEL`` picks the level (INFO when unset or unknown) and
    ``LOG_TIMESTAMPS=false`` drops the timestamp column, which is handy when
    a supervisor already stamps each line. Output goes to stdout, line
    buffered so ``watch`` mode shows up promptly in service logs.
    """
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)
    fields = ['%(name)s', '%(levelname)s', '%(message)s']
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        fields.insert(0, '%(asctime)s')

    basicConfig(
        level=level,
        format=' - '.join(fields),
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if reconfigure:
            reconfigure(line_buffering=True)

    # aiohttp access chatter is rarely useful here
    getLogger("aiohttp").setLevel(max(level, WARNING))
    return getLogger("NewsDeck")


def get_logger(name: str):
    """Return the ``NewsDeck.<name>`` logger (e.g. "fetcher", "enrichment")."""
    return getLogger(f"NewsDeck.{name}")


logger = setup_logging()


class Config:
    """NewsDeck settings.

    Resolution order for environment settings: real environment variables,
    then a ``.env`` file next to this module for anything still unset, then
    the YAML file named by ``SECRETS_FILE``, which overrides both.
    """

    def __init__(self):
        self._load_environment()
        self._read_process_settings()
        self._load_feed_sources()

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------
    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._apply_secrets_file(environ.get("SECRETS_FILE"))

    def _apply_secrets_file(self, secrets_path: Optional[str]) -> None:
        """Copy ``KEY: value`` pairs from a YAML secrets file into the environment.

        The pairs may sit at the top level or under an ``environment`` key::

            environment:
              USER_AGENT: "MyReader/2.0"
              DATABASE_PATH: "/var/lib/newsdeck/newsdeck.db"
        """
        if not secrets_path:
            logger.debug("SECRETS_FILE not set; using environment and .env only")
            return

        data = self._read_yaml(secrets_path, SECRETS_MAX_BYTES, 'secrets')
        if data is None:
            return
        if not isinstance(data, dict):
            logger.warning(f"Secrets file {secrets_path} must contain a mapping; ignoring it")
            return
        if isinstance(data.get('environment'), dict):
            data = data['environment']

        applied = 0
        for key, value in data.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Skipping invalid secrets entry: {key}")
                continue
            environ[key] = str(value)
            applied += 1
        logger.info(f"Applied {applied} settings from secrets file {secrets_path}")

    def _env_number(self, env_var: str, default, min_val, cast: Callable = int):
        """Read a numeric setting, falling back to ``default`` when invalid or below ``min_val``."""
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw.strip())
        except ValueError:
            logger.warning(f"{env_var}={raw!r} is not a number; using {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}; using {default}")
            return default
        return value

    def _env_flag(self, env_var: str, default: bool = False) -> bool:
        return environ.get(env_var, "true" if default else "false").strip().lower() == "true"

    def _read_process_settings(self):
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "newsdeck.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; NewsDeck/1.0)")

        # Feed and page requests
        self.HTTP_TIMEOUT = self._env_number("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._env_number("MAX_REDIRECTS", 5, 0)

        # Thumbnail enrichment; 0 requests per minute means unthrottled
        self.ENRICH_TIMEOUT = self._env_number("ENRICH_TIMEOUT", 15.0, 0.5, float)
        self.ENRICH_CONCURRENCY = self._env_number("ENRICH_CONCURRENCY", 2, 1)
        self.ENRICH_REQUESTS_PER_MINUTE = self._env_number("ENRICH_REQUESTS_PER_MINUTE", 0, 0)

        # Watch mode polls at least this often, even when the cooldown is longer
        self.WATCH_INTERVAL_SECONDS = self._env_number("WATCH_INTERVAL_SECONDS", 60, 5)

        # Tracing
        self.TELEMETRY_ENABLED = not self._env_flag("DISABLE_TELEMETRY")
        self.OTEL_SERVICE_NAME = environ.get("OTEL_SERVICE_NAME", "newsdeck")
        self.OTEL_ENVIRONMENT = environ.get("OTEL_ENVIRONMENT")
        self.OTEL_CONSOLE_EXPORT = self._env_flag("OTEL_CONSOLE_EXPORT")

        self.FEEDS_CONFIG_PATH = environ.get(
            "FEEDS_CONFIG_PATH",
            path.join(path.dirname(path.abspath(__file__)), "feeds.yaml"),
        )

    # ------------------------------------------------------------------
    # feeds.yaml
    # ------------------------------------------------------------------
    def _read_yaml(self, file_path: str, max_size: int, kind: str) -> Any:
        """Parse a small YAML file, or return None (after logging why) when that is not possible."""
        if not path.isfile(file_path):
            logger.warning(f"No {kind} file at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"Cannot read {kind} file {file_path}")
            return None
        try:
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"Refusing {kind} file {file_path}: {size} bytes exceeds {max_size}")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in {kind} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Error reading {kind} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"{kind.capitalize()} file {file_path} is empty")
            return None
        return data

    def _read_threshold(self, section: Dict[str, Any], key: str, default: int, min_val: int = 1) -> int:
        raw = section.get(key) if isinstance(section, dict) else None
        if raw is None:
            return default
        try:
            value = int(str(raw).strip())
        except ValueError:
            logger.warning(f"Invalid {key} value '{raw}' in feeds.yaml; using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{key} must be >={min_val}; keeping default {default} (got {raw})")
            return default
        return value

    def _read_string_list(self, section: Dict[str, Any], key: str, default: List[str]) -> List[str]:
        raw = section.get(key) if isinstance(section, dict) else None
        if raw is None:
            return list(default)
        if not isinstance(raw, list):
            logger.warning(f"{key} in feeds.yaml must be a list; using defaults")
            return list(default)
        return [str(item).strip() for item in raw if str(item).strip()]

    def _read_proxy_base(self, section: Any) -> str:
        if section in (None, False):
            return DEFAULT_PROXY_BASE
        base = section.get('base') if isinstance(section, dict) else None
        if isinstance(base, str) and base.strip():
            return base.strip()
        logger.warning(f"proxy.base in {self.FEEDS_CONFIG_PATH} must be a non-empty string; using default")
        return DEFAULT_PROXY_BASE

    def _read_feed_list(self, section: Any) -> List[Dict[str, str]]:
        if section is None:
            return []
        if not isinstance(section, list):
            logger.warning(f"feeds in {self.FEEDS_CONFIG_PATH} must be a list of {{title, url}} mappings")
            return []
        sources = []
        for entry in section:
            if isinstance(entry, dict) and entry.get('title') and entry.get('url'):
                sources.append({'title': str(entry['title']).strip(), 'url': str(entry['url']).strip()})
            else:
                logger.warning(f"Skipping invalid feed entry: {entry}")
        return sources

    def _load_feed_sources(self) -> None:
        """Populate the proxy base, default feeds, thresholds and aggregator rules.

        Anything missing or invalid falls back to the built-in defaults.
        """
        data = self._read_yaml(self.FEEDS_CONFIG_PATH, FEEDS_MAX_BYTES, 'feeds')
        if not isinstance(data, dict):
            data = {}

        self.PROXY_BASE = self._read_proxy_base(data.get('proxy'))
        self.FEED_SOURCES = self._read_feed_list(data.get('feeds'))

        thresholds = data.get('thresholds') or {}
        self.COOLDOWN_MINUTES = self._read_threshold(thresholds, 'cooldown_minutes', 30, 0)
        self.RETENTION_DAYS = self._read_threshold(thresholds, 'retention_days', 7, 1)

        aggregators = data.get('aggregators') or {}
        self.AGGREGATOR_HOSTS = self._read_string_list(aggregators, 'hosts', DEFAULT_AGGREGATOR_HOSTS)
        self.PLACEHOLDER_IMAGE_HOSTS = self._read_string_list(aggregators, 'placeholder_hosts', DEFAULT_PLACEHOLDER_HOSTS)
        self.PLACEHOLDER_IMAGE_PATTERNS = []
        for pattern in self._read_string_list(aggregators, 'placeholder_patterns', DEFAULT_PLACEHOLDER_PATTERNS):
            try:
                self.PLACEHOLDER_IMAGE_PATTERNS.append(re.compile(pattern, re.I))
            except re.error as e:
                logger.warning(f"Ignoring invalid placeholder pattern '{pattern}': {e}")

        logger.info(
            "Loaded %d default feeds; COOLDOWN_MINUTES=%s RETENTION_DAYS=%s",
            len(self.FEED_SOURCES),
            self.COOLDOWN_MINUTES,
            self.RETENTION_DAYS,
        )

    @property
    def COOLDOWN_MS(self) -> int:
        return self.COOLDOWN_MINUTES * 60 * 1000

    @property
    def RETENTION_MS(self) -> int:
        return self.RETENTION_DAYS * 24 * 60 * 60 * 1000

    def get_config_summary(self) -> Dict[str, Any]:
        """Non-secret settings, for ``newsdeck status`` and debug logging."""
        return {
            "database_path": self.DATABASE_PATH,
            "feeds_config_path": self.FEEDS_CONFIG_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "enrich_timeout": self.ENRICH_TIMEOUT,
            "enrich_concurrency": self.ENRICH_CONCURRENCY,
            "enrich_requests_per_minute": self.ENRICH_REQUESTS_PER_MINUTE,
            "cooldown_minutes": self.COOLDOWN_MINUTES,
            "retention_days": self.RETENTION_DAYS,
            "default_feed_count": len(self.FEED_SOURCES),
            "aggregator_hosts": list(self.AGGREGATOR_HOSTS),
            "telemetry_enabled": self.TELEMETRY_ENABLED,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


config = Config()
