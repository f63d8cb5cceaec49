# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/runner/ssh.py

from __future__ import annotations

import itertools
import logging
import os
import socket
import time
from typing import Optional, Sequence

import paramiko

from converge.config.models import Node, SshSettings
from converge.errors import NetworkUnreachable, PermissionDenied, StepTimeout
from converge.utils.retry import RetryError, retry
from .base import CommandResult, redact, require_ok, shq, wrap_sudo

log = logging.getLogger("converge")

# simple counter for unique temp names
_counter = itertools.count(1)


class SSHRunner:
    """Runs commands on a remote node over an established paramiko client."""

    def __init__(
        self,
        client: paramiko.SSHClient,
        *,
        label: str,
        sudo_password: Optional[str] = None,
        default_timeout: Optional[float] = None,
    ):
        self.client = client
        self.label = label
        self._sudo_password = sudo_password
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult:
        secrets = tuple(secrets) + ((self._sudo_password,) if self._sudo_password else ())
        shown = redact(cmd, secrets)
        final_cmd = wrap_sudo(cmd, sudo, password_on_stdin=bool(sudo and self._sudo_password))
        log.debug("[%s] $ %s%s", self.label, "sudo " if sudo else "", shown)

        start = time.time()
        try:
            stdin, stdout, stderr = self.client.exec_command(final_cmd, timeout=timeout or self.default_timeout)
            if sudo and self._sudo_password:
                stdin.write(self._sudo_password + "\n")
                stdin.flush()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            rc = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise StepTimeout(f"[{self.label}] command timed out", command=shown) from e
        except (paramiko.SSHException, OSError) as e:
            raise NetworkUnreachable(f"[{self.label}] SSH session failed: {e}", command=shown) from e

        duration = time.time() - start
        result = CommandResult(
            cmd=shown,
            rc=rc,
            stdout=redact(out, secrets),
            stderr=redact(err, secrets),
            duration=duration,
        )
        if result.stdout:
            log.debug("[%s][stdout]\n%s", self.label, result.stdout.rstrip())
        if result.stderr:
            log.debug("[%s][stderr]\n%s", self.label, result.stderr.rstrip())
        log.debug("[%s][exit %d] (%.2fs)", self.label, rc, duration)
        return result

    def put_text(self, content: str, remote_path: str, *, mode: int = 0o644, sudo: bool = True) -> None:
        """
        Upload content to a temp path then ``install`` it into place, so
        root-owned targets can be written by an unprivileged SSH user.
        """
        tmp_remote = f"/tmp/.converge_tmp_{os.getpid()}_{next(_counter)}"
        sftp = self.client.open_sftp()
        try:
            with sftp.file(tmp_remote, "w") as f:
                f.write(content)
        finally:
            sftp.close()
        cmd = f"install -D -m {oct(mode)[2:]} {shq(tmp_remote)} {shq(remote_path)}; rc=$?; rm -f {shq(tmp_remote)}; exit $rc"
        require_ok(self.run(cmd, sudo=sudo))

    def close(self) -> None:
        self.client.close()


def _load_pkey(key_path: str) -> paramiko.PKey:
    for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.SSHException:
            continue
    raise PermissionDenied(f"Unsupported private key format for {key_path}")


def open_ssh(node: Node, settings: SshSettings, *, command_timeout: Optional[float] = None) -> SSHRunner:
    """
    Connect to *node*, retrying while a freshly provisioned machine is
    still booting. Auth failures are not retried.
    """
    pkey = _load_pkey(str(settings.key_path.expanduser())) if settings.key_path else None
    password = settings.password.get_secret_value() if settings.password else None

    def _on_retry(attempt: int, exc: Exception) -> None:
        log.info(
            "[%s] SSH not ready (attempt %d/%d, %s: %s), retrying in %ss...",
            node.hostname, attempt, settings.connect_attempts, type(exc).__name__, exc, settings.connect_backoff,
        )

    @retry(
        retries=settings.connect_attempts,
        delay=settings.connect_backoff,
        retry_on=(paramiko.SSHException, OSError),
        give_up_on=(paramiko.AuthenticationException,),
        on_retry=_on_retry,
    )
    def _connect() -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=node.ip,
                port=settings.port,
                username=settings.user,
                pkey=pkey,
                password=password if not pkey else None,
                timeout=settings.connect_timeout,
                allow_agent=pkey is None,
                look_for_keys=pkey is None,
            )
        except Exception:
            client.close()
            raise
        return client

    try:
        client = _connect()
    except paramiko.AuthenticationException as e:
        raise PermissionDenied(f"SSH authentication failed for {settings.user}@{node.ip}: {e}") from e
    except RetryError as e:
        raise NetworkUnreachable(
            f"Failed to SSH into {node.ip} as '{settings.user}' after {settings.connect_attempts} attempts: {e.__cause__}"
        ) from e

    return SSHRunner(
        client,
        label=node.hostname,
        sudo_password=password if settings.sudo else None,
        default_timeout=command_timeout,
    )
