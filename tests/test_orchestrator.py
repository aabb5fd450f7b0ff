import asyncio
import json
import random
from pathlib import Path

from conftest import SPEC_TEXT, ScriptedWorker, run_git, task_payload
from gitswarm.config import SwarmConfig
from gitswarm.orchestrator import AgentLoop
from gitswarm.state import assume_alive


async def _no_sleep(_seconds: float) -> None:
    return None


def _config(remote: Path, tmp_path: Path, name: str = "agent-a") -> SwarmConfig:
    config = SwarmConfig.default()
    config.store.url = str(remote)
    config.store.workdir = str(tmp_path / "agents" / name)
    config.store.git_user_name = name
    config.store.git_user_email = f"{name}@example.com"
    config.agent.agent_id = name
    config.agent.idle_seconds = 0
    config.agent.backoff_min_seconds = 0
    config.agent.backoff_max_seconds = 0
    config.phases.poll_seconds = 0
    config.worker.log_dir = str(tmp_path / "logs")
    return config


def _loop(config: SwarmConfig, worker: ScriptedWorker) -> AgentLoop:
    return AgentLoop.from_config(
        config, worker=worker, probe=assume_alive, sleep=_no_sleep, rng=random.Random(0)
    )


def _write_file(name: str, content: str = "done\n"):
    def _action(workdir: Path) -> bool:
        (workdir / name).write_text(content, encoding="utf-8")
        return True

    return _action


def test_full_run_plans_executes_and_validates(remote, tmp_path, publisher) -> None:
    config = _config(remote, tmp_path)

    def plan(workdir: Path) -> bool:
        tasks = [task_payload("t1"), task_payload("final-check"), task_payload("t2")]
        (workdir / "tasks.json").write_text(json.dumps(tasks, indent=2), encoding="utf-8")
        (workdir / "init.sh").write_text("exit 0\n", encoding="utf-8")
        return True

    def find_gap(workdir: Path) -> bool:
        tasks = json.loads((workdir / "tasks.json").read_text(encoding="utf-8"))
        tasks.append(task_payload("fix-1"))
        (workdir / "tasks.json").write_text(json.dumps(tasks, indent=2), encoding="utf-8")
        return True

    worker = ScriptedWorker(
        config.workdir,
        {
            "planner": plan,
            "validator-1": find_gap,
            "validator-2": _write_file("VALIDATION_PASSED", "Looks complete.\n"),
            "t1_": _write_file("t1.txt"),
        },
    )

    summary = asyncio.run(_loop(config, worker).run())

    assert summary.outcome == "validated"
    assert summary.completed == ["t1", "t2", "final-check", "fix-1"]
    assert summary.failed == []
    assert [label.split("_")[0] for label in worker.labels] == [
        "planner",
        "t1",
        "t2",
        "final-check",
        "validator-1",
        "fix-1",
        "validator-2",
    ]
    task_prompt = worker.calls[1][1]
    assert "## Your Current Task" in task_prompt
    assert "**Task ID:** t1" in task_prompt
    assert "1. write t1" in task_prompt
    assert SPEC_TEXT.strip() in task_prompt

    tasks = publisher.read_tasks()
    assert {task_id: task["status"] for task_id, task in tasks.items()} == {
        "t1": "done",
        "final-check": "done",
        "t2": "done",
        "fix-1": "done",
    }
    assert publisher.read("t1.txt") == "done\n"
    assert publisher.read(".validation_round") == "1\n"
    assert publisher.read("VALIDATION_PASSED") == "Looks complete.\n"


def test_failing_task_exhausts_retries_then_validation_rounds(remote, tmp_path, publisher) -> None:
    publisher.push_tasks([task_payload("t1")])
    config = _config(remote, tmp_path)
    config.retry.max_attempts = 1
    config.phases.max_validation_rounds = 1
    worker = ScriptedWorker(config.workdir, {"t1_": lambda workdir: False})

    summary = asyncio.run(_loop(config, worker).run())

    assert summary.outcome == "rounds_exhausted"
    assert summary.failed == ["t1", "t1"]
    assert [label.split("_")[0] for label in worker.labels] == ["t1", "t1", "validator-1"]
    task = publisher.read_tasks()["t1"]
    assert (task["status"], task["attempt_count"]) == ("failed", 1)
    assert publisher.read(".validation_round") == "1\n"


def test_iteration_cap_stops_the_loop(remote, tmp_path, publisher) -> None:
    publisher.push_tasks([task_payload("t1"), task_payload("t2")])
    config = _config(remote, tmp_path)
    config.agent.max_iterations = 1
    worker = ScriptedWorker(config.workdir)

    summary = asyncio.run(_loop(config, worker).run())

    assert summary.outcome == "iteration_cap"
    assert summary.iterations == 1
    assert summary.completed == ["t1"]
    assert publisher.read_tasks()["t2"]["status"] == "pending"


def test_repeated_phase_failures_stop_the_agent(remote, tmp_path, publisher) -> None:
    config = _config(remote, tmp_path)
    config.agent.max_phase_failures = 2
    worker = ScriptedWorker(config.workdir)

    summary = asyncio.run(_loop(config, worker).run())

    assert summary.outcome == "phase_failed"
    assert summary.phase_failures == 2
    assert worker.labels == ["planner", "planner"]
    assert publisher.read("tasks.json") is None
    assert publisher.read("current_tasks/_planning.lock") is None


def test_required_setup_failure_stops_before_any_task(remote, tmp_path, publisher) -> None:
    publisher.push_tasks([task_payload("t1")])
    publisher.push({"init.sh": "exit 3\n"})
    config = _config(remote, tmp_path)
    config.agent.require_setup = True
    worker = ScriptedWorker(config.workdir)

    summary = asyncio.run(_loop(config, worker).run())

    assert summary.outcome == "setup_failed"
    assert worker.calls == []
    assert publisher.read_tasks()["t1"]["status"] == "pending"


def test_two_agents_share_the_backlog(remote, tmp_path, publisher) -> None:
    publisher.push_tasks([task_payload("t1"), task_payload("t2"), task_payload("t3")])
    publisher.push({"VALIDATION_PASSED": "pre-approved\n"})
    config_a = _config(remote, tmp_path, "agent-a")
    config_b = _config(remote, tmp_path, "agent-b")
    config_a.agent.max_iterations = 1
    worker_a = ScriptedWorker(config_a.workdir)
    worker_b = ScriptedWorker(config_b.workdir)

    summary_a = asyncio.run(_loop(config_a, worker_a).run())
    summary_b = asyncio.run(_loop(config_b, worker_b).run())

    assert summary_a.completed == ["t1"]
    assert summary_b.completed == ["t2", "t3"]
    assert summary_b.outcome == "validated"
    assert all(task["status"] == "done" for task in publisher.read_tasks().values())


def test_task_ids_with_path_characters_are_worked_normally(remote, tmp_path, publisher) -> None:
    publisher.push_tasks(
        [task_payload("api/users"), task_payload(".env-setup"), task_payload("t2")]
    )
    publisher.push({"VALIDATION_PASSED": "pre-approved\n"})
    config = _config(remote, tmp_path)
    worker = ScriptedWorker(config.workdir)

    summary = asyncio.run(_loop(config, worker).run())

    assert summary.outcome == "validated"
    assert summary.completed == ["api/users", ".env-setup", "t2"]
    assert all(task["status"] == "done" for task in publisher.read_tasks().values())
    assert publisher.read("current_tasks/api%2Fusers.lock") is None
    assert publisher.read("current_tasks/%2E.env-setup.lock") is None


def test_worker_cannot_rewrite_coordination_state(remote, tmp_path, publisher) -> None:
    publisher.push_tasks([task_payload("t1"), task_payload("t2")])
    config = _config(remote, tmp_path)
    config.agent.max_iterations = 1

    def hijack(workdir: Path) -> bool:
        tasks = json.loads((workdir / "tasks.json").read_text(encoding="utf-8"))
        for task in tasks:
            if task["id"] == "t2":
                task["status"] = "done"
                task["description"] = "hijacked"
        (workdir / "tasks.json").write_text(json.dumps(tasks, indent=2), encoding="utf-8")
        (workdir / "VALIDATION_PASSED").write_text("trust me\n", encoding="utf-8")
        (workdir / "current_tasks" / "t2.lock").write_text("{}\n", encoding="utf-8")
        (workdir / "current_tasks" / "t1.lock").unlink()
        (workdir / "feature.py").write_text("print('t1')\n", encoding="utf-8")
        run_git(workdir, "add", "-A")
        run_git(
            workdir,
            "-c",
            "user.name=worker",
            "-c",
            "user.email=worker@example.com",
            "commit",
            "-q",
            "-m",
            "worker commit",
        )
        return True

    worker = ScriptedWorker(config.workdir, {"t1_": hijack})

    summary = asyncio.run(_loop(config, worker).run())

    assert summary.completed == ["t1"]
    tasks = publisher.read_tasks()
    assert tasks["t1"]["status"] == "done"
    assert (tasks["t2"]["status"], tasks["t2"]["description"]) == ("pending", "Implement t2")
    assert publisher.read("feature.py") == "print('t1')\n"
    assert publisher.read("VALIDATION_PASSED") is None
    assert publisher.read("current_tasks/t1.lock") is None
    assert publisher.read("current_tasks/t2.lock") is None


def test_corrupt_registry_stops_the_agent_without_crashing(remote, tmp_path, publisher) -> None:
    publisher.push({"tasks.json": "[{\"id\": \"_planning\"}]\n"})
    config = _config(remote, tmp_path)
    worker = ScriptedWorker(config.workdir)

    summary = asyncio.run(_loop(config, worker).run())

    assert summary.outcome == "phase_failed"
    assert worker.calls == []
