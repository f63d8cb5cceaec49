# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/runner/local.py
from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from converge.errors import PrerequisiteMissing, StepTimeout
from .base import CommandResult, redact, require_ok, shq

log = logging.getLogger("converge")


@dataclass
class LocalRunner:
    """Runs commands on the machine converge itself runs on."""

    label: str = "local"
    use_sudo: bool = True
    default_timeout: Optional[float] = None

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult:
        shown = redact(cmd, secrets)
        argv = ["bash", "-lc", cmd]
        if sudo and self.use_sudo and os.geteuid() != 0:
            argv = ["sudo", "-n", "-H"] + argv

        log.debug("[%s] $ %s%s", self.label, "sudo " if sudo else "", shown)

        start = time.time()
        try:
            cp = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout or self.default_timeout,
            )
        except FileNotFoundError as e:
            raise PrerequisiteMissing(f"[{self.label}] cannot execute {argv[0]}: {e}", command=shown) from e
        except subprocess.TimeoutExpired as e:
            raise StepTimeout(
                f"[{self.label}] command timed out after {e.timeout}s",
                command=shown,
            ) from e

        duration = time.time() - start
        result = CommandResult(
            cmd=shown,
            rc=cp.returncode,
            stdout=redact(cp.stdout or "", secrets),
            stderr=redact(cp.stderr or "", secrets),
            duration=duration,
        )

        if result.stdout:
            log.debug("[%s][stdout]\n%s", self.label, result.stdout.rstrip())
        if result.stderr:
            log.debug("[%s][stderr]\n%s", self.label, result.stderr.rstrip())
        log.debug("[%s][exit %d] (%.2fs)", self.label, result.rc, duration)

        return result

    def put_text(self, content: str, remote_path: str, *, mode: int = 0o644, sudo: bool = True) -> None:
        fd, tmp = tempfile.mkstemp(prefix=".converge.tmp.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            require_ok(
                self.run(f"install -D -m {oct(mode)[2:]} {shq(tmp)} {shq(remote_path)}", sudo=sudo)
            )
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    def close(self) -> None:
        pass
