"""Configuration loading for ticketflow.

Reads ``<config_dir>/config.yaml``. Pydantic models validate the schema;
a handful of environment variables override deployment-specific values.
"""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class StorageConfig(BaseModel):
    data_dir: str = ".ticketflow-data"
    tickets_file: str = "tickets.json"
    debounce_ms: int = Field(default=500, ge=0)

    def tickets_path(self, root: Path) -> Path:
        data_dir = Path(self.data_dir)
        if not data_dir.is_absolute():
            data_dir = root / data_dir
        return data_dir / self.tickets_file


class AgentConfig(BaseModel):
    """How the external coding agent is launched and observed."""

    command: list[str] = Field(
        default_factory=lambda: ["claude", "--print", "--dangerously-skip-permissions"]
    )
    process_name: str = "claude"  # matched against the OS process table
    completion_sentinel: str = "<promise>COMPLETE</promise>"
    max_log_chars: int = Field(default=10_000, gt=0)
    kill_grace_ms: int = 500  # SIGTERM → SIGKILL escalation window
    prd_path: str = ".claude/prd.md"  # relative to the worktree
    wait_for_output: bool = True  # spawning → running on first output, else immediately
    drain_timeout: float = 1.0  # seconds to drain pipes after the leader exits
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("command")
    @classmethod
    def _validate_command(cls, v: list[str]) -> list[str]:
        if not v or not v[0]:
            raise ValueError("agent.command must name an executable")
        return v

    @field_validator("kill_grace_ms")
    @classmethod
    def _validate_grace(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"agent.kill_grace_ms must be positive, got {v}")
        return v

    @field_validator("prd_path")
    @classmethod
    def _validate_prd_path(cls, v: str) -> str:
        from pathlib import PurePosixPath

        p = PurePosixPath(v)
        if p.is_absolute() or ".." in p.parts:
            raise ValueError(f"agent.prd_path must stay inside the worktree: {v!r}")
        return v

    @property
    def kill_grace(self) -> float:
        return self.kill_grace_ms / 1000


class PortsConfig(BaseModel):
    host: str = "127.0.0.1"
    base_port: int = 8081
    max_attempts: int = Field(default=20, ge=1)
    allocate_for_runs: bool = False  # export a free port to each agent run as $PORT

    @model_validator(mode="after")
    def _validate_range(self) -> "PortsConfig":
        if not 1 <= self.base_port <= 65535:
            raise ValueError(f"ports.base_port out of range: {self.base_port}")
        return self


class MonitorConfig(BaseModel):
    interval: float = Field(default=3.0, gt=0)  # broadcaster tick, seconds
    output_idle_ms: int = 2500  # quiet for longer than this → "waiting"
    ps_timeout: float = 3.0


class TicketFlowConfig(BaseModel):
    """Top-level configuration (matches config.yaml)."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    ports: PortsConfig = Field(default_factory=PortsConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(config_dir: Path) -> TicketFlowConfig:
    """Load configuration from a config directory.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"ticketflow config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = TicketFlowConfig(**raw)
    apply_env_overrides(config)

    logger.info(
        "Loaded ticketflow config: agent=%s, data_dir=%s",
        config.agent.command[0],
        config.storage.data_dir,
    )
    return config


def apply_env_overrides(config: TicketFlowConfig) -> TicketFlowConfig:
    data_dir = os.environ.get("TICKETFLOW_DATA_DIR")
    if data_dir:
        config.storage.data_dir = data_dir

    command = os.environ.get("TICKETFLOW_AGENT_COMMAND")
    if command:
        config.agent.command = shlex.split(command)

    grace = os.environ.get("TICKETFLOW_KILL_GRACE_MS")
    if grace:
        try:
            value = int(grace)
        except ValueError:
            logger.warning("Ignoring non-integer TICKETFLOW_KILL_GRACE_MS=%r", grace)
        else:
            if value > 0:
                config.agent.kill_grace_ms = value
            else:
                logger.warning("Ignoring non-positive TICKETFLOW_KILL_GRACE_MS=%r", grace)

    return config


DEFAULT_CONFIG = """\
# config.yaml — ticketflow configuration

storage:
  data_dir: .ticketflow-data
  tickets_file: tickets.json
  debounce_ms: 500

agent:
  command: [claude, --print, --dangerously-skip-permissions]
  process_name: claude
  completion_sentinel: "<promise>COMPLETE</promise>"
  max_log_chars: 10000
  kill_grace_ms: 500
  prd_path: .claude/prd.md

ports:
  host: 127.0.0.1
  base_port: 8081
  max_attempts: 20
  allocate_for_runs: false

monitor:
  interval: 3.0
  output_idle_ms: 2500
"""
