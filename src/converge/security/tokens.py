# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/security/tokens.py
from __future__ import annotations

import logging
import re
import secrets
import string
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Set

from pydantic import BaseModel, ConfigDict, SecretStr

from converge.config.models import JoinCredential
from converge.errors import ExternalToolFailure, TokenExpired, TokenReused, TokenUnavailable
from converge.runner.base import CommandRunner, require_ok, shq

log = logging.getLogger("converge")

_ALPHABET = string.ascii_lowercase + string.digits
_JOIN_RE = re.compile(r"kubeadm join\s+(?P<endpoint>\S+).*?--discovery-token-ca-cert-hash\s+(?P<hash>\S+)", re.S)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClusterJoinToken(BaseModel):
    """
    Bootstrap credential a worker presents to the control plane.
    ``token`` is a SecretStr so it never shows up in repr/str/model_dump_json.
    """
    model_config = ConfigDict(frozen=True)

    token: SecretStr
    discovery_hash: str
    endpoint: str
    issued_at: datetime
    expires_at: datetime

    @property
    def token_id(self) -> str:
        """Public half of the token (``abcdef`` in ``abcdef.0123...``); safe to log."""
        return self.token.get_secret_value().split(".", 1)[0]

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def remaining(self, now: Optional[datetime] = None) -> timedelta:
        return max(self.expires_at - (now or utcnow()), timedelta(0))

    def join_command(self) -> str:
        return (
            f"kubeadm join {shq(self.endpoint)} --token {shq(self.token.get_secret_value())}"
            f" --discovery-token-ca-cert-hash {shq(self.discovery_hash)}"
        )


def generate_token_value() -> str:
    """kubeadm bootstrap token format: [a-z0-9]{6}.[a-z0-9]{16}"""
    tid = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    tsecret = "".join(secrets.choice(_ALPHABET) for _ in range(16))
    return f"{tid}.{tsecret}"


def parse_join_command(output: str) -> tuple[str, str]:
    m = _JOIN_RE.search(output)
    if not m:
        raise ExternalToolFailure(f"could not parse join command from kubeadm output: {output.strip()[:200]}")
    return m.group("endpoint"), m.group("hash")


def issue_join_token(
    runner: CommandRunner,
    *,
    ttl_hours: int,
    kubeconfig: str,
    now: Optional[datetime] = None,
) -> ClusterJoinToken:
    """
    Create a fresh bootstrap token on a master. The token value is generated
    here and passed as a registered secret so it is masked in every log line
    and in the captured output.
    """
    value = generate_token_value()
    cmd = (
        f"kubeadm token create {value} --ttl {ttl_hours}h --print-join-command"
        f" --kubeconfig {shq(kubeconfig)}"
    )
    res = require_ok(runner.run(cmd, sudo=True, secrets=[value]), "kubeadm token create failed")
    endpoint, discovery_hash = parse_join_command(res.stdout)
    issued = now or utcnow()
    return ClusterJoinToken(
        token=SecretStr(value),
        discovery_hash=discovery_hash,
        endpoint=endpoint,
        issued_at=issued,
        expires_at=issued + timedelta(hours=ttl_hours),
    )


def token_from_credential(
    cred: JoinCredential,
    *,
    endpoint: str,
    ttl_hours: int,
    now: Optional[datetime] = None,
) -> ClusterJoinToken:
    """
    Wrap an operator-supplied join credential. Without an explicit expiry the
    token is assumed to live for the configured TTL from now; kubeadm has the
    final word either way.
    """
    issued = now or utcnow()
    return ClusterJoinToken(
        token=cred.token,
        discovery_hash=cred.discovery_hash,
        endpoint=cred.endpoint or endpoint,
        issued_at=issued,
        expires_at=cred.expires_at or issued + timedelta(hours=ttl_hours),
    )


class JoinTokenBroker:
    """
    Holds the single join token of a run. Workers redeem it read-only; each
    node may redeem a given token once. Only ``rotate``/``publish`` replace it.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._lock = threading.Lock()
        self._clock = clock
        self._token: Optional[ClusterJoinToken] = None
        self._redeemed: Set[str] = set()

    def publish(self, token: ClusterJoinToken) -> None:
        with self._lock:
            self._token = token
            self._redeemed = set()
        log.info(
            "join token %s issued, valid until %s (%s remaining)",
            token.token_id, token.expires_at.isoformat(timespec="seconds"), token.remaining(self._clock()),
        )

    rotate = publish

    @property
    def current(self) -> Optional[ClusterJoinToken]:
        with self._lock:
            return self._token

    def redeem(self, hostname: str) -> ClusterJoinToken:
        with self._lock:
            token = self._token
            if token is None:
                raise TokenUnavailable(f"[{hostname}] no join token available (control plane not converged in this run)")
            if token.is_expired(self._clock()):
                raise TokenExpired(
                    f"[{hostname}] join token {token.token_id} expired at {token.expires_at.isoformat(timespec='seconds')}"
                )
            if hostname in self._redeemed:
                raise TokenReused(
                    f"[{hostname}] join token {token.token_id} was already used by this node; rotate before retrying"
                )
            self._redeemed.add(hostname)
            return token

    def redeemed(self) -> Set[str]:
        with self._lock:
            return set(self._redeemed)
