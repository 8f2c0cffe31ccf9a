import sys
from contextlib import contextmanager
from typing import Iterator, List, Optional, TextIO

_prefix = "[AWS Helper]"


class Logger:
    colors = {
        "INFO": "\033[32m",
        "WARN": "\033[33m",
        "ERROR": "\033[31m",
    }
    reset = "\033[0m"

    def __init__(self, out_file: Optional[TextIO] = None, *, color: bool = True) -> None:
        self._out_file = out_file
        self._color = color
        self._silent = False
        self.messages: List[str] = []

    @property
    def silent(self) -> bool:
        return self._silent

    @contextmanager
    def silenced(self, enabled: bool = True) -> Iterator["Logger"]:
        """Suppresses every message for the duration of the block, then restores the previous state."""
        previous = self._silent
        self._silent = previous or enabled
        try:
            yield self
        finally:
            self._silent = previous

    def log(self, level: str, message: str, /, end: str = "\n") -> None:
        if self._silent:
            return
        level = level.upper()
        self.messages.append(f"[{level}] {message}")
        if self._color:
            line = f"{_prefix} {self.colors.get(level, '')}[{level}] {message}{self.reset}"
        else:
            line = f"{_prefix} [{level}] {message}"
        print(line, file=self._out_file or sys.stderr, end=end, flush=True)

    def write(self, line: str) -> None:
        """Prints an unadorned line, e.g. one row of a listing."""
        if self._silent:
            return
        self.messages.append(line)
        print(line, file=self._out_file or sys.stderr, flush=True)

    def info(self, message: str, /, end: str = "\n") -> None:
        self.log("info", message, end=end)

    def warn(self, message: str, /, end: str = "\n") -> None:
        self.log("warn", message, end=end)

    def error(self, message: str, /, end: str = "\n") -> None:
        self.log("error", message, end=end)
