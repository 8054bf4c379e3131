#!/usr/bin/env python3
"""
Configuration for etrace runs

Defaults for the external tools and report filters, optionally overridden by a
JSON config file and then by environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional, get_args, get_origin

from file_access import DEFAULT_EXCLUDE_PROGRAMS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path.home() / ".config" / "etrace" / "config.json"

# These syscalls are excluded because they make strace hang on all or
# some architectures (gettimeofday on arm64).
DEFAULT_EXCLUDED_SYSCALLS = "!select,pselect6,_newselect,clock_gettime,sigaltstack,gettid,gettimeofday,nanosleep"

ENVIRONMENT_OVERRIDES = {
    "ETRACE_STRACE": "strace_binary",
    "ETRACE_NEO4J_URI": "neo4j_uri",
    "ETRACE_NEO4J_USER": "neo4j_user",
    "ETRACE_NEO4J_PASSWORD": "neo4j_password",
}


def _matches_type(expected, value) -> bool:
    """Check a decoded JSON value against a config field type."""
    if get_origin(expected) is list:
        item_type, = get_args(expected)
        return isinstance(value, list) and all(isinstance(item, item_type) for item in value)
    # bool is an int subclass, JSON true/false only fits bool fields
    if isinstance(value, bool):
        return expected is bool
    if expected is float:
        return isinstance(value, (int, float))
    return isinstance(value, expected)


@dataclass
class EtraceConfig:
    """Settings shared by every etrace subcommand"""
    strace_binary: str = "strace"
    merge_binary: str = "strace-log-merge"
    excluded_syscalls: str = DEFAULT_EXCLUDED_SYSCALLS
    exclude_programs: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_PROGRAMS))
    window_wait_attempts: int = 10
    window_wait_timeout: float = 60.0
    drop_caches: bool = True
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = "password"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConfigManager:
    """Loads the effective configuration"""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self.config = EtraceConfig()
        self._load_user_config()
        self._apply_environment()

    def _load_user_config(self):
        """Overlay values from the JSON config file, if there is one"""
        if not self.config_file.exists():
            logger.debug(f"No config file at {self.config_file}")
            return

        try:
            with open(self.config_file, 'r') as f:
                user_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load config file {self.config_file}: {e}")
            return

        if not isinstance(user_config, dict):
            logger.warning(f"Ignoring config file {self.config_file}: expected a JSON object")
            return

        known = {f.name: f for f in fields(EtraceConfig)}
        for key, value in user_config.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            expected = known[key].type
            if not _matches_type(expected, value):
                logger.warning(f"Ignoring config key {key}: expected {getattr(expected, '__name__', expected)}, "
                               f"got {type(value).__name__}")
                continue
            if expected is float:
                value = float(value)
            setattr(self.config, key, value)
        logger.info(f"Loaded config from {self.config_file}")

    def _apply_environment(self):
        for variable, key in ENVIRONMENT_OVERRIDES.items():
            value = os.environ.get(variable)
            if value:
                setattr(self.config, key, value)

    def get(self) -> EtraceConfig:
        return self.config

    def save_config(self, path: Optional[Path] = None):
        """Write the effective configuration out as JSON"""
        path = Path(path) if path else self.config_file
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.config.to_dict(), f, indent=2)
