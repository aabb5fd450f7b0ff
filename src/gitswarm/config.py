from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

WorkerBackendName = Literal["claude", "codex"]
LivenessProbeName = Literal["dns", "none"]


class ConfigError(ValueError):
    """Raised when configuration values cannot be parsed."""


@dataclass(slots=True)
class StoreConfig:
    url: str = ""
    branch: str = "main"
    workdir: str = "/workspace"
    git_user_name: str = ""
    git_user_email: str = ""
    max_append_attempts: int = 3


@dataclass(slots=True)
class LeaseConfig:
    ttl_minutes: float = 30.0
    liveness_probe: LivenessProbeName = "dns"


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 2


@dataclass(slots=True)
class PhaseConfig:
    max_validation_rounds: int = 2
    terminal_prefix: str = "final-"
    spec_file: str = "PROJECT_SPEC.md"
    poll_seconds: float = 10.0
    max_wait_seconds: float = 600.0


@dataclass(slots=True)
class WorkerConfig:
    backend: WorkerBackendName = "claude"
    model: str = "claude-sonnet-4-20250514"
    agent_prompt_file: str = ""
    planner_prompt_file: str = ""
    validator_prompt_file: str = ""
    timeout_minutes: float = 0.0
    log_dir: str = "/tmp"


@dataclass(slots=True)
class AgentConfig:
    agent_id: str = ""
    max_iterations: int = 0
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 3.0
    idle_seconds: float = 10.0
    require_setup: bool = False
    max_phase_failures: int = 2


SECTIONS = ("store", "leases", "retry", "phases", "worker", "agent")

# (environment variable, section, key)
ENV_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("REPO_URL", "store", "url"),
    ("REPO_BRANCH", "store", "branch"),
    ("WORKSPACE", "store", "workdir"),
    ("GIT_USER_NAME", "store", "git_user_name"),
    ("GIT_USER_EMAIL", "store", "git_user_email"),
    ("LOCK_STALE_MINUTES", "leases", "ttl_minutes"),
    ("LIVENESS_PROBE", "leases", "liveness_probe"),
    ("MAX_TASK_RETRIES", "retry", "max_attempts"),
    ("MAX_VALIDATION_ROUNDS", "phases", "max_validation_rounds"),
    ("WORKER_BACKEND", "worker", "backend"),
    ("CLAUDE_MODEL", "worker", "model"),
    ("AGENT_PROMPT_FILE", "worker", "agent_prompt_file"),
    ("PLANNER_PROMPT_FILE", "worker", "planner_prompt_file"),
    ("VALIDATOR_PROMPT_FILE", "worker", "validator_prompt_file"),
    ("WORKER_TIMEOUT_MINUTES", "worker", "timeout_minutes"),
    ("MAX_ITERATIONS", "agent", "max_iterations"),
)


@dataclass(slots=True)
class SwarmConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    leases: LeaseConfig = field(default_factory=LeaseConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    phases: PhaseConfig = field(default_factory=PhaseConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)

    @classmethod
    def default(cls) -> SwarmConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SwarmConfig:
        return cls(
            store=StoreConfig(**data.get("store", {})),
            leases=LeaseConfig(**data.get("leases", {})),
            retry=RetryConfig(**data.get("retry", {})),
            phases=PhaseConfig(**data.get("phases", {})),
            worker=WorkerConfig(**data.get("worker", {})),
            agent=AgentConfig(**data.get("agent", {})),
        )

    def to_dict(self) -> dict:
        payload: dict[str, dict[str, Any]] = {}
        for section in SECTIONS:
            section_value = getattr(self, section)
            payload[section] = {
                item.name: getattr(section_value, item.name) for item in fields(section_value)
            }
        return payload

    @property
    def workdir(self) -> Path:
        return Path(self.store.workdir).expanduser()

    def apply_env(self, environ: Mapping[str, str]) -> SwarmConfig:
        for variable, section, key in ENV_OVERRIDES:
            raw = environ.get(variable)
            if raw is None or raw == "":
                continue
            section_value = getattr(self, section)
            current = getattr(section_value, key)
            setattr(section_value, key, _coerce(raw, current, variable))
        if not self.agent.agent_id:
            self.agent.agent_id = environ.get("SWARM_AGENT_ID") or environ.get("HOSTNAME") or ""
        return self

    def resolved_agent_id(self) -> str:
        return self.agent.agent_id or f"agent-{os.getpid()}"


def _coerce(raw: str, current: object, variable: str) -> object:
    try:
        if isinstance(current, bool):
            return raw.strip().lower() in {"1", "true", "yes", "on"}
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid value for {variable}: {raw!r}") from exc
    return raw


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SwarmConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, environ: Mapping[str, str] | None = None) -> SwarmConfig:
    if path.exists():
        try:
            config = SwarmConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
        except (tomllib.TOMLDecodeError, TypeError) as exc:
            raise ConfigError(f"Invalid config file {path}: {exc}") from exc
    else:
        config = SwarmConfig.default()
    return config.apply_env(os.environ if environ is None else environ)


def save_config(path: Path, config: SwarmConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
