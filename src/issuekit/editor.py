"""External editor boundary.

The edit engine only needs two things from an editor: the text to start
from and the text the user saved. :func:`run_editor` gets them by writing a
temp file and running ``$VISUAL``/``$EDITOR`` (or ``ed``) on it.
"""

from __future__ import annotations

import os
import shlex
import subprocess  # nosec B404 - the user's editor runs as a child process
import tempfile
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol

_SHELL_CHARS = frozenset("|&;<>()$`\\\"' \t*?[#~=%")


class TextBuffer(Protocol):
    """A single read/write buffer owned by one session."""

    def load(self) -> str: ...

    def put(self, text: str) -> None: ...


class MemoryBuffer:
    """In-process :class:`TextBuffer` (used by scripts and tests)."""

    def __init__(self, text: str = "") -> None:
        self.text = text
        self.puts: list[str] = []

    def load(self) -> str:
        return self.text

    def put(self, text: str) -> None:
        self.text = text
        self.puts.append(text)


def editor_command(configured: str | None = None, env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    return configured or env.get("VISUAL") or env.get("EDITOR") or "ed"


def editor_argv(command: str, path: str | Path) -> list[str]:
    """argv for running ``command`` on ``path``.

    Plain commands run directly; anything with shell metacharacters goes
    through ``sh -c`` with the file as ``$1``.
    """
    if any(ch in _SHELL_CHARS for ch in command.strip()):
        return ["sh", "-c", f'{command} "$1"', command, str(path)]
    return [command, str(path)]


def run_editor(
    text: str,
    *,
    command: str | None = None,
    suffix: str = ".txt",
    runner: Callable[[list[str]], int] | None = None,
) -> str:
    """Let the user edit ``text`` and return what they saved.

    Raises ``RuntimeError`` when the editor exits non-zero.
    """
    cmd = editor_command(command)
    run = runner or (lambda argv: subprocess.call(argv))  # nosec B603
    fd, name = tempfile.mkstemp(prefix="issuekit-", suffix=suffix)
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        status = run(editor_argv(cmd, path))
        if status != 0:
            raise RuntimeError(f"editor {shlex.quote(cmd)} exited with status {status}")
        return path.read_text(encoding="utf-8")
    finally:
        path.unlink(missing_ok=True)


def edit_text(
    text: str,
    *,
    command: str | None = None,
    runner: Callable[[list[str]], int] | None = None,
) -> str | None:
    """Like :func:`run_editor` but returns None when nothing changed."""
    edited = run_editor(text, command=command, runner=runner)
    if edited == text:
        return None
    return edited


__all__ = [
    "MemoryBuffer",
    "TextBuffer",
    "edit_text",
    "editor_argv",
    "editor_command",
    "run_editor",
]
