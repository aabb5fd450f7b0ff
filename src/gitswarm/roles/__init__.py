from gitswarm.roles.base import AgentRole
from gitswarm.roles.executor import TaskExecutor
from gitswarm.roles.planner import Planner
from gitswarm.roles.validator import Validator

__all__ = [
    "AgentRole",
    "Planner",
    "TaskExecutor",
    "Validator",
]
