"""Text and JSON output modes for command results.

Commands hold one :class:`Formatter` chosen at start-up and call all four
methods unconditionally; each mode turns the other mode's calls into no-ops.
"""

from __future__ import annotations

import dataclasses
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, TextIO

import typer
from pydantic import BaseModel

from gcsadmin.errors import InvalidArgument
from gcsadmin.timefmt import format_rfc3339


class Formatter(Protocol):
    def is_structured(self) -> bool: ...

    def print_structured(self, value: Any) -> None: ...

    def print_text(self, fmt: str, *args: Any) -> None: ...

    def println(self, *args: Any) -> None: ...


def to_jsonable(value: Any) -> Any:
    """Convert models, dataclasses and datetimes into plain JSON values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {key: to_jsonable(item) for key, item in dataclasses.asdict(value).items()}
    if isinstance(value, datetime):
        return format_rfc3339(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


class TextFormatter:
    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def is_structured(self) -> bool:
        return False

    def print_structured(self, value: Any) -> None:
        return None

    def print_text(self, fmt: str, *args: Any) -> None:
        typer.echo(fmt % args if args else fmt, file=self._stream, nl=False)

    def println(self, *args: Any) -> None:
        typer.echo(" ".join(str(arg) for arg in args), file=self._stream)


class JsonFormatter:
    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def is_structured(self) -> bool:
        return True

    def print_structured(self, value: Any) -> None:
        typer.echo(
            json.dumps(to_jsonable(value), indent=2, ensure_ascii=False), file=self._stream
        )

    def print_text(self, fmt: str, *args: Any) -> None:
        return None

    def println(self, *args: Any) -> None:
        return None


def new_formatter(fmt: str, stream: TextIO | None = None) -> Formatter:
    """Return the formatter for ``fmt`` (``text`` or ``json``)."""
    normalized = fmt.strip().lower()
    if normalized == "text":
        return TextFormatter(stream)
    if normalized == "json":
        return JsonFormatter(stream)
    raise InvalidArgument(f"unsupported output format: {fmt} (use text or json)")
