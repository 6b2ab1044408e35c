from enum import IntEnum
from typing import Any, Optional

import click


class Level(IntEnum):
    DEBUG = 10
    INFO = 20
    SUCCESS = 25
    WARNING = 30
    ERROR = 40


LEVEL_COLORS = {
    Level.DEBUG: "white",
    Level.INFO: "cyan",
    Level.SUCCESS: "green",
    Level.WARNING: "yellow",
    Level.ERROR: "red",
}

LEVEL_PREFIXES = {
    Level.DEBUG: "(.)",
    Level.INFO: "(i)",
    Level.SUCCESS: "(✓)",
    Level.WARNING: "(!)",
    Level.ERROR: "(x)",
}


def _format_fields(fields: dict) -> str:
    return " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)


class Logger:
    """
    Console logger shared by every component.

    Messages are rendered with click so colours degrade gracefully when the
    output is not a terminal. Structured fields are appended as key=value.
    """

    def __init__(self, name: str = "", level: Level = Level.INFO, err: bool = False):
        self.name = name
        self.level = level
        self.err = err

    def child(self, name: str) -> "Logger":
        child_name = f"{self.name}.{name}" if self.name else name
        child = Logger(name=child_name, level=self.level, err=self.err)
        return child

    def set_level(self, level: Level) -> None:
        self.level = level

    def log(self, level: Level, message: str, **fields: Any) -> None:
        if level < self.level:
            return
        parts = [LEVEL_PREFIXES[level]]
        if self.name:
            parts.append(f"[{self.name}]")
        parts.append(message)
        rendered_fields = _format_fields(fields)
        if rendered_fields:
            parts.append(f"({rendered_fields})")
        click.secho(" ".join(parts), fg=LEVEL_COLORS[level], err=self.err or level >= Level.ERROR)

    def debug(self, message: str, **fields: Any) -> None:
        self.log(Level.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(Level.INFO, message, **fields)

    def success(self, message: str, **fields: Any) -> None:
        self.log(Level.SUCCESS, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log(Level.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log(Level.ERROR, message, **fields)

    def section(self, title: str) -> None:
        if self.level > Level.INFO:
            return
        click.secho(f"\n{title}", fg="green", bold=True)


def get_logger(name: Optional[str] = None, verbose: bool = False, quiet: bool = False) -> Logger:
    if verbose:
        level = Level.DEBUG
    elif quiet:
        level = Level.WARNING
    else:
        level = Level.INFO
    return Logger(name=name or "", level=level)
