"""Build the command line and environment for an assistant process."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field

DEFAULT_COMMAND = ("claude",)


@dataclass(slots=True)
class SpawnConfig:
    """Everything needed to launch one assistant process."""

    cwd: str
    command: tuple[str, ...] = DEFAULT_COMMAND
    model: str | None = None
    permission_mode: str | None = None
    resume_session_id: str | None = None
    env: dict[str, str] = field(default_factory=dict)


def find_binary(name: str) -> str:
    """Resolve ``name`` on PATH, falling back to the bare name."""
    return shutil.which(name) or name


def build_argv(config: SpawnConfig, endpoint: str) -> list[str]:
    """Command line for a process that connects back to ``endpoint``."""
    if not config.command:
        raise ValueError("SpawnConfig.command is empty")
    program, *rest = config.command
    argv = [
        find_binary(program),
        *rest,
        "--sdk-url",
        endpoint,
        "--output-format",
        "stream-json",
        "--input-format",
        "stream-json",
        "--verbose",
    ]
    if config.model:
        argv += ["--model", config.model]
    if config.permission_mode and config.permission_mode != "default":
        argv += ["--permission-mode", config.permission_mode]
    if config.resume_session_id:
        argv += ["--resume", config.resume_session_id]
    return argv


def build_env(config: SpawnConfig, base: dict[str, str] | None = None) -> dict[str, str]:
    """Parent environment plus the marker variable plus profile overrides."""
    env = dict(os.environ if base is None else base)
    env["CLAUDECODE"] = "1"
    env.update(config.env)
    return env
