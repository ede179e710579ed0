"""
YAML configuration with defaults, .env loading and ${VAR} substitution.

The file is created with defaults on first run. Sections missing from the file
(or keys missing from a section) take their default values, so an old config
keeps working when new settings are added. start_watching() reloads the file
on change and notifies registered callbacks.
"""
import copy
import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml
from watchdog.events import FileModifiedEvent, FileSystemEventHandler
from watchdog.observers import Observer

from pltracker.core.db import DEFAULT_DATA_DIR

logger = logging.getLogger(__name__)

# Keys whose values never reach the log.
SECRET_KEYS = frozenset({"cookies", "password", "token", "secret", "api_key"})

# (section, key) pairs holding filesystem paths.
PATH_KEYS = (("logging", "file"), ("database", "path"), ("browser", "profile_path"))

_ENV_LINE_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")


def default_config() -> Dict[str, Any]:
    return {
        "tracker": {
            "origin": None,
            "course_instance_ids": [],
            "concurrency": 3,
            "request_timeout": 30,
            "cookies": {},
            "user_agent": None,
            "refresh_interval": 3600,
            "refresh_at": None,  # "HH:MM" switches to a daily refresh
        },
        "browser": {
            "enabled": True,
            "profile_path": str(DEFAULT_DATA_DIR / "profile"),
            "headless": True,
            "existing_tab_timeout": 10000,  # milliseconds
            "new_tab_timeout": 20000,
        },
        "database": {
            "path": str(DEFAULT_DATA_DIR / "tracker.db"),
        },
        "api": {
            "enabled": False,
            "host": "127.0.0.1",
            "port": 8765,
        },
        "logging": {
            "level": "INFO",
            "file": str(DEFAULT_DATA_DIR / "tracker.log"),
        },
    }


def load_env_file(candidates: Iterable[Path]) -> Optional[Path]:
    """Load KEY=VALUE lines from the first existing file. Variables already set win."""
    env_file = next((path for path in candidates if path.is_file()), None)
    if env_file is None:
        return None

    logger.info(f"Loading environment variables from: {env_file}")
    with open(env_file, "r") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            match = _ENV_LINE_RE.match(line)
            if not match:
                continue
            key, value = match.groups()
            os.environ.setdefault(key, value.strip('"').strip("'"))
    return env_file


def substitute_env_vars(data: Any) -> Any:
    """Replace "${NAME}" / "$NAME" string values with the environment value, when set."""
    if isinstance(data, dict):
        return {key: substitute_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [substitute_env_vars(item) for item in data]
    if isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            return os.environ.get(data[2:-1], data)
        if data.startswith("$") and len(data) > 1:
            return os.environ.get(data[1:], data)
    return data


def merge_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    merged = default_config()
    for section, values in data.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def diff_config(old: Dict[str, Any], new: Dict[str, Any], path: str = "") -> List[str]:
    """Human-readable changes between two configs; secret values are masked."""
    changes = []
    for key in sorted(set(old) | set(new), key=str):
        current = f"{path}.{key}" if path else str(key)
        if key not in new:
            changes.append(f"removed {current}")
        elif key not in old:
            changes.append(f"added {current}")
        elif isinstance(old[key], dict) and isinstance(new[key], dict) and key not in SECRET_KEYS:
            changes.extend(diff_config(old[key], new[key], current))
        elif old[key] != new[key]:
            if key in SECRET_KEYS:
                changes.append(f"changed {current}")
            else:
                changes.append(f"changed {current}: {old[key]!r} -> {new[key]!r}")
    return changes


class ConfigChangeHandler(FileSystemEventHandler):
    def __init__(self, config: "Config", cooldown: float = 1.0):
        self.config = config
        self.cooldown = cooldown
        self.last_modified = 0.0

    def on_modified(self, event):
        if not isinstance(event, FileModifiedEvent) or event.src_path != str(self.config.config_file):
            return
        now = time.time()
        if now - self.last_modified < self.cooldown:
            return
        self.last_modified = now
        self.config.reload()


class Config:
    def __init__(self, config_path: Optional[str] = None):
        if config_path:
            self.config_file = Path(config_path).expanduser().resolve()
        else:
            self.config_file = DEFAULT_DATA_DIR / "config.yaml"
        self.config_dir = self.config_file.parent

        self.change_callbacks: List[Callable[[Dict[str, Any]], None]] = []
        self.observer: Optional[Observer] = None
        self._reloading = False
        self.data: Dict[str, Any] = default_config()

        logger.debug(f"Using config file: {self.config_file}")
        load_env_file([self.config_dir / ".env", self.config_dir.parent / ".env", Path.cwd() / ".env"])
        self._ensure_config_exists()
        self._load_config()

    @property
    def tracker(self) -> Dict[str, Any]:
        return self.data.get("tracker") or {}

    @property
    def browser(self) -> Dict[str, Any]:
        return self.data.get("browser") or {}

    def register_change_callback(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        self.change_callbacks.append(callback)

    def start_watching(self) -> None:
        """Reload when the config file changes (watchdog observer on its directory)."""
        if self.observer is not None:
            return
        self.observer = Observer()
        self.observer.schedule(ConfigChangeHandler(self), str(self.config_dir), recursive=False)
        self.observer.start()
        logger.info(f"Watching {self.config_file} for changes")

    def reload(self) -> None:
        if self._reloading:
            return
        self._reloading = True
        try:
            logger.info("Config file changed - reloading")
            time.sleep(0.1)  # let the editor finish writing
            old = copy.deepcopy(self.data)
            self._load_config()
            for change in diff_config(old, self.data):
                logger.info(f"Config {change}")
            for callback in self.change_callbacks:
                try:
                    callback(self.data)
                except Exception as e:
                    logger.error(f"Error in config change callback: {e}", exc_info=True)
        finally:
            self._reloading = False

    def cleanup(self) -> None:
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None

    def _ensure_config_exists(self) -> None:
        if self.config_file.exists():
            return
        self.config_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Creating default config file: {self.config_file}")
        self.config_file.write_text(yaml.safe_dump(default_config(), sort_keys=False))

    def _load_config(self) -> None:
        """Read the file; on a bad file keep the current data (defaults on first load)."""
        try:
            with open(self.config_file) as f:
                raw = yaml.safe_load(f)
            if not isinstance(raw, dict):
                raise ValueError("Invalid config format: root must be a dictionary")
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading config {self.config_file}: {e}; keeping current settings")
            return

        data = merge_defaults(substitute_env_vars(raw))
        for section, key in PATH_KEYS:
            value = (data.get(section) or {}).get(key)
            if value:
                data[section][key] = os.path.expanduser(value)

        self.data = data
        logger.debug(f"Loaded config sections: {sorted(self.data)}")
