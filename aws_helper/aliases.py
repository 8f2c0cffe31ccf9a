"""Alias file access.

The alias file holds named shortcuts for ``assume-role``::

    [prod]
    12345678912 my-production-role --duration 900

The first non-blank line after a header is the alias body. The file is read on
every call and its content is not validated here. A file that cannot be read
or decoded as UTF-8 raises ``HelperError``.
"""
from pathlib import Path
from typing import Dict, Optional

from aws_helper.errors import ErrorKind, HelperError


def _is_comment(line: str) -> bool:
    return line.startswith("#") or line.startswith(";")


def read_aliases(path: Path) -> Dict[str, str]:
    if not path.is_file():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as alias_file:
            lines = alias_file.readlines()
    except (OSError, UnicodeDecodeError) as error:
        raise HelperError(ErrorKind.TOOL_UNAVAILABLE, f"Unable to read alias file {path}: {error}") from error
    aliases: Dict[str, str] = {}
    current: Optional[str] = None
    for raw_line in lines:
        line = raw_line.strip()
        if not line or _is_comment(line):
            continue
        if line.startswith("[") and line.endswith("]"):
            current = line[1:-1]
            continue
        if current is not None and current not in aliases:
            aliases[current] = line
        current = None
    return aliases


class AliasStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def lookup(self, name: str) -> Optional[str]:
        return read_aliases(self.path).get(name)

    def entries(self) -> Dict[str, str]:
        return read_aliases(self.path)
