"""Companion configuration — loads from file, env vars, or direct construction."""

from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from .types import EnvironmentProfile, PermissionMode, SessionConfig

logger = logging.getLogger(__name__)

_DEFAULT_STATE_DIR = Path.home() / ".companion"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _default_state_dir() -> str:
    return os.environ.get("COMPANION_STATE_DIR") or str(_DEFAULT_STATE_DIR)


def _to_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


@dataclass
class CompanionConfig:
    """Configuration for the companion client."""

    state_dir: str = field(default_factory=_default_state_dir)
    command: list[str] = field(default_factory=lambda: ["claude"])
    default_cwd: str | None = None
    default_model: str | None = None
    permission_mode: str = "default"
    spawn_timeout: float = 30.0
    eager_spawn: bool = False
    auto_reconnect: bool = False
    interrupt_window: float = 1.5

    @classmethod
    def load(cls, path: str | Path | None = None) -> CompanionConfig:
        """Load config from a JSON file, falling back to env vars and defaults.

        Lookup order for each field:
        1. Environment variable (COMPANION_MODEL, COMPANION_COMMAND, etc.)
        2. JSON file value (``<state_dir>/config.json`` unless ``path`` is given)
        3. Dataclass default
        """
        data: dict = {}

        if path is None:
            path = Path(_default_state_dir()).expanduser() / "config.json"
        else:
            path = Path(path).expanduser()

        if path.is_file():
            with open(path) as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                data = loaded
            else:
                logger.warning("Ignoring %s: top level is not an object", path)

        # Env takes precedence over the file
        env_map = {
            "state_dir": "COMPANION_STATE_DIR",
            "command": "COMPANION_COMMAND",
            "default_cwd": "COMPANION_CWD",
            "default_model": "COMPANION_MODEL",
            "permission_mode": "COMPANION_PERMISSION_MODE",
            "spawn_timeout": "COMPANION_SPAWN_TIMEOUT",
            "eager_spawn": "COMPANION_EAGER_SPAWN",
            "auto_reconnect": "COMPANION_AUTO_RECONNECT",
            "interrupt_window": "COMPANION_INTERRUPT_WINDOW",
        }

        for field_name, env_key in env_map.items():
            env_val = os.environ.get(env_key)
            if env_val is not None:
                data[field_name] = env_val

        # Coerce types
        if isinstance(data.get("command"), str):
            data["command"] = shlex.split(data["command"])
        for key in ("spawn_timeout", "interrupt_window"):
            if data.get(key) is not None:
                data[key] = float(data[key])
        for key in ("eager_spawn", "auto_reconnect"):
            if data.get(key) is not None:
                data[key] = _to_bool(data[key])
        if data.get("permission_mode"):
            data["permission_mode"] = PermissionMode.parse(data["permission_mode"]).value

        # Filter to known fields only
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known and v is not None}

        return cls(**filtered)

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    @property
    def envs_dir(self) -> Path:
        return self.state_path / "envs"

    @property
    def logs_dir(self) -> Path:
        return self.state_path / "logs"

    def session_config(
        self,
        cwd: str | None = None,
        model: str | None = None,
        env_profile: str | None = None,
    ) -> SessionConfig:
        """A fresh SessionConfig seeded from the defaults."""
        return SessionConfig(
            cwd=str(Path(cwd or self.default_cwd or os.getcwd()).expanduser().resolve()),
            model=model or self.default_model,
            permission_mode=PermissionMode.parse(self.permission_mode),
            env_profile=env_profile,
        )


def load_env_profiles(directory: str | Path) -> dict[str, EnvironmentProfile]:
    """Read ``*.json`` environment profiles from ``directory``.

    Each file holds ``{"description": ..., "vars": {...}}``; the profile is
    named after the file stem. Unreadable files are skipped with a warning.
    """
    directory = Path(directory).expanduser()
    profiles: dict[str, EnvironmentProfile] = {}
    if not directory.is_dir():
        return profiles

    for path in sorted(directory.glob("*.json")):
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Skipping env profile %s: %s", path.name, e)
            continue
        if not isinstance(data, dict):
            logger.warning("Skipping env profile %s: not a JSON object", path.name)
            continue
        raw_vars = data.get("vars") or {}
        if not isinstance(raw_vars, dict):
            logger.warning("Skipping env profile %s: 'vars' is not an object", path.name)
            continue
        profiles[path.stem] = EnvironmentProfile(
            name=path.stem,
            vars={str(k): str(v) for k, v in raw_vars.items()},
            description=str(data.get("description", "")),
        )

    return profiles
