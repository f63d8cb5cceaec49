# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/runner/base.py
from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Sequence

from converge.errors import (
    ConvergeError,
    ExternalToolFailure,
    NetworkUnreachable,
    PermissionDenied,
    PrerequisiteMissing,
)

REDACTED = "********"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one delegated command. ``cmd`` is already redacted."""

    cmd: str
    rc: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.rc == 0


class CommandRunner(Protocol):
    """
    Executes shell commands on one node. Implementations: LocalRunner
    (subprocess) and SSHRunner (paramiko).
    """

    label: str

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult: ...

    def put_text(self, content: str, remote_path: str, *, mode: int = 0o644, sudo: bool = True) -> None: ...

    def close(self) -> None: ...


def shq(v: str) -> str:
    return shlex.quote(v)


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each (non-empty) secret with a mask."""
    if not text:
        return text
    for s in secrets:
        if s:
            text = text.replace(s, REDACTED)
    return text


_MISSING = re.compile(r"command not found|no such file or directory.*(?:exec|executable)|not installed", re.I)
_DENIED = re.compile(
    r"permission denied|operation not permitted|a password is required|must be run as root"
    r"|are you root|a terminal is required",
    re.I,
)
_NETWORK = re.compile(
    r"network is unreachable|no route to host|could not resolve host|temporary failure in name resolution"
    r"|connection refused|connection timed out|i/o timeout|unable to connect",
    re.I,
)


def classify(result: CommandResult, message: Optional[str] = None) -> ConvergeError:
    """
    Map a failed command onto the error taxonomy. The captured stderr and
    exit code always travel with the error.
    """
    text = f"{result.stderr}\n{result.stdout}"
    msg = message or f"command failed (rc={result.rc}): {result.cmd}"
    kw = dict(command=result.cmd, exit_code=result.rc, stderr=result.stderr.strip())

    if result.rc == 127 or _MISSING.search(text):
        return PrerequisiteMissing(msg, **kw)
    if result.rc == 126 or _DENIED.search(text):
        return PermissionDenied(msg, **kw)
    if _NETWORK.search(text):
        return NetworkUnreachable(msg, **kw)
    return ExternalToolFailure(msg, **kw)


def require_ok(result: CommandResult, message: Optional[str] = None) -> CommandResult:
    if not result.ok:
        raise classify(result, message)
    return result


def wrap_sudo(cmd: str, sudo: bool, *, password_on_stdin: bool = False) -> str:
    """Wrap *cmd* for ``bash -lc``, optionally under non-interactive sudo."""
    if not sudo:
        return f"bash -lc {shq(cmd)}"
    flag = "-S" if password_on_stdin else "-n"
    return f"sudo {flag} -H bash -lc {shq(cmd)}"
