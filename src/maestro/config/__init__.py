"""Configuration — Pydantic models for maestro settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class PtyConfig(BaseModel):
    """Pseudo-terminal launch settings."""

    shell: str | None = Field(
        default=None,
        description="Shell to launch. Defaults to $SHELL, then /bin/bash.",
    )
    term: str = Field(default="xterm-256color", description="TERM for the child")
    cols: int = Field(default=80, ge=1, le=65535)
    rows: int = Field(default=24, ge=1, le=65535)
    read_chunk_size: int = Field(default=8192, ge=1, description="Bytes per pty read")


class DetectionConfig(BaseModel):
    """Dev-server URL detection settings."""

    window_chars: int = Field(
        default=256,
        ge=0,
        description=(
            "Characters of trailing output kept between reads so an "
            "announcement split across two reads still matches. 0 disables."
        ),
    )


class MaestroConfig(BaseModel):
    """Top-level maestro configuration."""

    pty: PtyConfig = Field(default_factory=PtyConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    store_path: str = Field(
        default="~/.maestro/sessions.json", description="Session snapshot file"
    )
    auto_launch_cli: bool = Field(
        default=False,
        description="Type the mode's CLI command into a freshly spawned shell",
    )

    @classmethod
    def load(cls, config_path: str | None = None) -> MaestroConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            MAESTRO_SHELL            - Shell to launch in every pty
            MAESTRO_STORE_PATH       - Session snapshot file
            MAESTRO_URL_WINDOW       - Cross-read detection window (chars, 0 = off)
            MAESTRO_AUTO_LAUNCH_CLI  - "1"/"true" to start the mode's CLI on spawn
        """
        load_dotenv()

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        pty_data = config_data.get("pty", {})
        env_shell = os.environ.get("MAESTRO_SHELL")
        if env_shell:
            pty_data["shell"] = env_shell
        if pty_data:
            config_data["pty"] = pty_data

        env_window = os.environ.get("MAESTRO_URL_WINDOW")
        if env_window:
            detection = config_data.get("detection", {})
            detection["window_chars"] = int(env_window)
            config_data["detection"] = detection

        env_store = os.environ.get("MAESTRO_STORE_PATH")
        if env_store:
            config_data["store_path"] = env_store

        env_auto = os.environ.get("MAESTRO_AUTO_LAUNCH_CLI")
        if env_auto:
            config_data["auto_launch_cli"] = env_auto.strip().lower() in (
                "1",
                "true",
                "yes",
                "on",
            )

        return cls.model_validate(config_data)
