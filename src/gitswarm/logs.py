"""Agent-prefixed, level-coloured log output."""

from __future__ import annotations

import logging
import sys

import click

LEVEL_COLORS = {
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


class AgentLogFormatter(logging.Formatter):
    """Formats records as ``[component/agent] HH:MM:SS message``."""

    def __init__(self, agent_id: str, *, color: bool = True) -> None:
        super().__init__(datefmt="%H:%M:%S")
        self.agent_id = agent_id
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.rsplit(".", maxsplit=1)[-1]
        prefix = f"[{component}/{self.agent_id}] {self.formatTime(record, self.datefmt)}"
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if not self.color:
            return f"{prefix} {message}"
        color = LEVEL_COLORS.get(record.levelno)
        if record.levelno <= logging.DEBUG:
            message = click.style(message, dim=True)
        elif color:
            message = click.style(message, fg=color, bold=record.levelno >= logging.CRITICAL)
        return f"{click.style(prefix, dim=True)} {message}"


def configure_logging(agent_id: str, *, verbose: bool = False, color: bool | None = None) -> None:
    stream = sys.stderr
    if color is None:
        color = stream.isatty()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(AgentLogFormatter(agent_id, color=color))

    root = logging.getLogger("gitswarm")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False
