import os
import tomllib
from pathlib import Path

import pytest

from gitswarm import __version__
from gitswarm.config import ConfigError, SwarmConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "gitswarm.toml"
    config = SwarmConfig.default()
    config.store.url = "git@example.com:team/project.git"
    config.store.workdir = "/srv/agents/a"
    config.leases.ttl_minutes = 45
    config.leases.liveness_probe = "none"
    config.retry.max_attempts = 4
    config.phases.max_validation_rounds = 3
    config.worker.backend = "codex"
    config.worker.timeout_minutes = 12.5
    config.agent.require_setup = True

    save_config(config_path, config)
    loaded = load_config(config_path, environ={})

    assert loaded.store.url == "git@example.com:team/project.git"
    assert loaded.store.branch == "main"
    assert loaded.workdir == Path("/srv/agents/a")
    assert loaded.leases.ttl_minutes == 45
    assert loaded.leases.liveness_probe == "none"
    assert loaded.retry.max_attempts == 4
    assert loaded.phases.max_validation_rounds == 3
    assert loaded.phases.terminal_prefix == "final-"
    assert loaded.worker.backend == "codex"
    assert loaded.worker.timeout_minutes == 12.5
    assert loaded.agent.require_setup is True


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(SwarmConfig.default())

    for section in ("[store]", "[leases]", "[retry]", "[phases]", "[worker]", "[agent]"):
        assert section in rendered
    assert "ttl_minutes = 30.0" in rendered
    assert "max_attempts = 2" in rendered
    assert 'terminal_prefix = "final-"' in rendered
    assert "require_setup = false" in rendered


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml", environ={})

    assert config.store.workdir == "/workspace"
    assert config.leases.ttl_minutes == 30.0
    assert config.retry.max_attempts == 2
    assert config.phases.max_validation_rounds == 2
    assert config.worker.backend == "claude"


def test_environment_overrides_file_values(tmp_path: Path) -> None:
    config_path = tmp_path / "gitswarm.toml"
    save_config(config_path, SwarmConfig.default())

    config = load_config(
        config_path,
        environ={
            "REPO_URL": "/srv/remote.git",
            "WORKSPACE": "/tmp/agent",
            "LOCK_STALE_MINUTES": "5",
            "LIVENESS_PROBE": "none",
            "MAX_TASK_RETRIES": "3",
            "MAX_VALIDATION_ROUNDS": "0",
            "WORKER_BACKEND": "codex",
            "MAX_ITERATIONS": "",
        },
    )

    assert config.store.url == "/srv/remote.git"
    assert config.store.workdir == "/tmp/agent"
    assert config.leases.ttl_minutes == 5.0
    assert config.leases.liveness_probe == "none"
    assert config.retry.max_attempts == 3
    assert config.phases.max_validation_rounds == 0
    assert config.worker.backend == "codex"
    assert config.agent.max_iterations == 0


def test_invalid_numeric_environment_value_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="MAX_TASK_RETRIES"):
        load_config(tmp_path / "gitswarm.toml", environ={"MAX_TASK_RETRIES": "many"})


def test_invalid_config_file_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "gitswarm.toml"
    config_path.write_text("[store]\nunknown_key = 1\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path, environ={})


def test_agent_id_comes_from_environment(tmp_path: Path) -> None:
    path = tmp_path / "gitswarm.toml"

    assert load_config(path, environ={"SWARM_AGENT_ID": "a1", "HOSTNAME": "h"}).agent.agent_id == (
        "a1"
    )
    assert load_config(path, environ={"HOSTNAME": "box-7"}).resolved_agent_id() == "box-7"
    assert load_config(path, environ={}).resolved_agent_id() == f"agent-{os.getpid()}"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
