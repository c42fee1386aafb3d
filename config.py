#!/usr/bin/env python3
"""
Configuration management for the Feed Ingester.

Owns the process-wide logging setup and the ``config`` singleton. Values come
from, in order of precedence:

1. Environment variables (optionally seeded from a ``.env`` file)
2. A YAML secrets file named by ``SECRETS_FILE``
3. Built-in defaults

The feed list itself is read from feeds.yaml into ``config.FEED_SOURCES``.
"""

from os import environ, path, access, R_OK
from typing import Any, Callable, Dict, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from models import FeedSource, SchedulingMode

LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}
SECRETS_MAX_BYTES = 2 * 1024 * 1024
FEEDS_MAX_BYTES = 5 * 1024 * 1024


def _setup_global_logger():
    """Configure the root logger once for every ``FeedIngester.*`` logger.

    LOG_LEVEL picks the level (default INFO) and LOG_TIMESTAMPS=false drops
    the time prefix, which keeps container and test output compact.
    """
    environ["PYTHONUNBUFFERED"] = "1"
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)

    fields = ['%(name)s', '%(levelname)s', '%(message)s']
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        fields.insert(0, '%(asctime)s')

    basicConfig(
        level=level,
        format=' - '.join(fields),
        handlers=[StreamHandler(sys.stdout)],
        force=True,
    )

    # pytest and some embedders replace stdout with objects lacking reconfigure()
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(line_buffering=True)

    return getLogger("FeedIngester")


def get_logger(name: str):
    """Return the ``FeedIngester.{name}`` logger (e.g. "fetcher", "ingester")."""
    return getLogger(f"FeedIngester.{name}")


logger = _setup_global_logger()


class Config:
    """Validated settings plus the feed list.

    Example feeds.yaml:
    ```yaml
    feeds:
      bbc-world:
        url: https://feeds.bbci.co.uk/news/world/rss.xml
        title: BBC World
        interval_minutes: 10
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Environment seeded from {dotenv_path}")
        self._load_secrets_file()

    def _env_number(self, env_var: str, default, min_val, cast: Callable[[str], Any]):
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw.strip())
        except (ValueError, TypeError):
            logger.warning(f"{env_var}={raw!r} is not a number; falling back to {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var}={value} is below the minimum of {min_val}; falling back to {default}")
            return default
        return value

    def _env_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._env_number(env_var, default, min_val, int)

    def _env_float(self, env_var: str, default: float, min_val: float = 0.0) -> float:
        return self._env_number(env_var, default, min_val, float)

    def _validate_and_set_config(self):
        # HTTP transport
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedIngester/1.0)")
        self.HTTP_CONNECT_TIMEOUT = self._env_int("HTTP_CONNECT_TIMEOUT", 15)
        self.HTTP_TIMEOUT = self._env_int("HTTP_TIMEOUT", 30)
        self.MAX_REDIRECTS = self._env_int("MAX_REDIRECTS", 5, 0)

        # Scheduling
        self.DEFAULT_POLL_INTERVAL_SECONDS = self._env_int("DEFAULT_POLL_INTERVAL_SECONDS", 300)
        self.MAX_CONCURRENT_POLLS = self._env_int("MAX_CONCURRENT_POLLS", 4)
        mode = environ.get("SCHEDULING_MODE", SchedulingMode.BURSTY.value).strip().lower()
        try:
            self.SCHEDULING_MODE = SchedulingMode(mode)
        except ValueError:
            logger.warning(f"Unknown SCHEDULING_MODE '{mode}', using bursty")
            self.SCHEDULING_MODE = SchedulingMode.BURSTY
        self.MIN_LAUNCH_SPACING_SECONDS = self._env_float("MIN_LAUNCH_SPACING_SECONDS", 1.0)
        self.SMOOTH_MAX_INITIAL_SPREAD_SECONDS = self._env_int("SMOOTH_MAX_INITIAL_SPREAD_SECONDS", 300)

        self.FEEDS_CONFIG_PATH = environ.get(
            "FEEDS_CONFIG_PATH",
            path.join(path.dirname(path.abspath(__file__)), "feeds.yaml"),
        )

    def _read_yaml(self, file_path: str, max_bytes: int, label: str) -> Any | None:
        """Load a bounded-size YAML file, returning None (after logging) on any problem."""
        if not path.isfile(file_path):
            logger.warning(f"No {label} file at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"Cannot read {label} file {file_path}: permission denied")
            return None
        try:
            size = path.getsize(file_path)
            if size > max_bytes:
                logger.error(f"Refusing {label} file {file_path}: {size} bytes exceeds {max_bytes}")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Malformed YAML in {label} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Failed to read {label} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"{label.capitalize()} file {file_path} is empty")
            return None
        return data

    def _load_secrets_file(self):
        """Export the mapping in SECRETS_FILE (top level or under ``environment:``)."""
        secrets_path = environ.get("SECRETS_FILE")
        if not secrets_path:
            return

        data = self._read_yaml(secrets_path, SECRETS_MAX_BYTES, 'secrets')
        if data is None:
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring secrets file {secrets_path}: expected a mapping")
            return

        env_vars = data.get('environment')
        if not isinstance(env_vars, dict):
            env_vars = data

        exported = 0
        for key, value in env_vars.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Skipping secrets entry {key!r}")
                continue
            environ[key] = str(value)
            exported += 1
        logger.info(f"Exported {exported} variables from secrets file {secrets_path}")

    def _parse_interval(self, feed_slug: str, feed_cfg: Dict[str, Any]) -> Optional[int]:
        """Resolve interval_seconds, or interval_minutes converted to seconds."""
        raw = feed_cfg.get('interval_seconds')
        factor = 1
        if raw is None:
            raw = feed_cfg.get('interval_minutes', feed_cfg.get('refresh_interval_minutes'))
            factor = 60
        if raw is None:
            return None
        try:
            return int(str(raw).strip()) * factor
        except ValueError:
            logger.warning(f"Invalid poll interval '{raw}' for feed '{feed_slug}'; using default")
            return None

    def _build_feed_source(self, feed_slug: str, feed_cfg: Any) -> Optional[FeedSource]:
        if not isinstance(feed_cfg, dict) or not feed_cfg.get('url'):
            logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")
            return None
        tags = feed_cfg.get('tags')
        priority = feed_cfg.get('priority')
        return FeedSource(
            feed_id=str(feed_slug),
            url=str(feed_cfg['url']).strip(),
            title=feed_cfg.get('title') or None,
            enabled=bool(feed_cfg.get('enabled', True)),
            poll_interval_seconds=self._parse_interval(feed_slug, feed_cfg),
            tags=[str(t) for t in tags] if isinstance(tags, list) else None,
            priority=priority if isinstance(priority, int) else None,
            notes=feed_cfg.get('notes'),
        )

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES from feeds.yaml; problems leave it empty."""
        feeds_path = self.FEEDS_CONFIG_PATH
        self.FEED_SOURCES: List[FeedSource] = []
        data = self._read_yaml(feeds_path, FEEDS_MAX_BYTES, 'feeds')
        if data is None:
            return

        feeds = data.get('feeds') if isinstance(data, dict) else None
        if not isinstance(feeds, dict):
            logger.warning(f"{feeds_path} has no 'feeds' mapping")
            return

        for feed_slug, feed_cfg in feeds.items():
            source = self._build_feed_source(feed_slug, feed_cfg)
            if source is not None:
                self.FEED_SOURCES.append(source)
                logger.debug(f"Loaded feed {source.feed_id}: {source.url}")

        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def reload_feed_sources(self, feeds_path: Optional[str] = None):
        """Re-read the feed list, optionally from a different file."""
        if feeds_path:
            self.FEEDS_CONFIG_PATH = feeds_path
        logger.info(f"Reloading feeds from {self.FEEDS_CONFIG_PATH}")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        return {
            "feeds_config_path": self.FEEDS_CONFIG_PATH,
            "feed_count": len(self.FEED_SOURCES),
            "enabled_feed_count": sum(1 for s in self.FEED_SOURCES if s.enabled),
            "default_poll_interval_seconds": self.DEFAULT_POLL_INTERVAL_SECONDS,
            "max_concurrent_polls": self.MAX_CONCURRENT_POLLS,
            "scheduling_mode": self.SCHEDULING_MODE.value,
            "min_launch_spacing_seconds": self.MIN_LAUNCH_SPACING_SECONDS,
            "smooth_max_initial_spread_seconds": self.SMOOTH_MAX_INITIAL_SPREAD_SECONDS,
            "http_connect_timeout": self.HTTP_CONNECT_TIMEOUT,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


config = Config()
