"""Configuration — Pydantic models for outputbuddy settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field

_TRUTHY = {"1", "true", "yes", "on"}


class BuddyConfig(BaseModel):
    """Top-level outputbuddy configuration."""

    default_log: str = Field(
        default="buddy.log",
        description="File that receives stdout+stderr when no mapping is given",
    )
    use_pty: bool = Field(
        default=True,
        description="Attach the child to pseudo-terminals so it keeps its colors",
    )
    strip_ansi: bool = Field(
        default=False,
        description="Clean escape sequences and progress redraws out of log files",
    )
    chunk_size: int = Field(
        default=32 * 1024, gt=0, description="Bytes read per channel read"
    )
    max_pending: int = Field(
        default=64,
        gt=0,
        description="Chunks queued per channel before reading pauses",
    )
    shutdown_grace: float = Field(
        default=2.0,
        ge=0,
        description="Seconds between forwarding a signal and killing the child",
    )
    drain_timeout: float = Field(
        default=5.0,
        ge=0,
        description=(
            "Seconds to keep draining output after the child exits. A "
            "background grandchild holding the terminal open is cut off here."
        ),
    )

    @classmethod
    def load(cls, config_path: str | None = None) -> BuddyConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            OUTPUTBUDDY_DEFAULT_LOG       - Default combined log file
            OUTPUTBUDDY_NO_PTY            - Use plain pipes instead of ptys
            OUTPUTBUDDY_STRIP_ANSI        - Clean escape sequences in files
            OUTPUTBUDDY_SHUTDOWN_GRACE    - Seconds before SIGKILL on interrupt
            OUTPUTBUDDY_DRAIN_TIMEOUT     - Seconds to drain after child exit
        """
        load_dotenv()

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        env_default_log = os.environ.get("OUTPUTBUDDY_DEFAULT_LOG")
        if env_default_log:
            config_data["default_log"] = env_default_log

        env_no_pty = os.environ.get("OUTPUTBUDDY_NO_PTY")
        if env_no_pty:
            config_data["use_pty"] = env_no_pty.lower() not in _TRUTHY

        env_strip_ansi = os.environ.get("OUTPUTBUDDY_STRIP_ANSI")
        if env_strip_ansi:
            config_data["strip_ansi"] = env_strip_ansi.lower() in _TRUTHY

        env_grace = os.environ.get("OUTPUTBUDDY_SHUTDOWN_GRACE")
        if env_grace:
            config_data["shutdown_grace"] = float(env_grace)

        env_drain = os.environ.get("OUTPUTBUDDY_DRAIN_TIMEOUT")
        if env_drain:
            config_data["drain_timeout"] = float(env_drain)

        return cls.model_validate(config_data)
