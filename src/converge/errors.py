# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/converge/errors.py
from __future__ import annotations

from enum import Enum
from typing import Optional


class Kind(str, Enum):
    """Classification attached to every ExecutionResult that is not Applied."""

    ALREADY_CONVERGED = "already-converged"     # informational, never a failure
    PREREQUISITE_MISSING = "prerequisite-missing"
    PERMISSION_DENIED = "permission-denied"
    NETWORK_UNREACHABLE = "network-unreachable"
    TOKEN_EXPIRED = "token-expired"
    TOKEN_REUSED = "token-reused"
    TIMEOUT = "timeout"
    EXTERNAL_TOOL_FAILURE = "external-tool-failure"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


EXIT_CODES = {
    Kind.PREREQUISITE_MISSING: 10,
    Kind.PERMISSION_DENIED: 11,
    Kind.NETWORK_UNREACHABLE: 12,
    Kind.TOKEN_EXPIRED: 13,
    Kind.TOKEN_REUSED: 14,
    Kind.TIMEOUT: 15,
    Kind.EXTERNAL_TOOL_FAILURE: 16,
    Kind.UNEXPECTED: 17,
    Kind.CANCELLED: 130,
}


def exit_code_for(kind: Kind) -> int:
    return EXIT_CODES.get(kind, 0)


class ConvergeError(RuntimeError):
    """Base class for step-level failures. Carries the originating command."""

    kind: Kind = Kind.UNEXPECTED

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class PrerequisiteMissing(ConvergeError):
    kind = Kind.PREREQUISITE_MISSING


class PermissionDenied(ConvergeError):
    kind = Kind.PERMISSION_DENIED


class NetworkUnreachable(ConvergeError):
    kind = Kind.NETWORK_UNREACHABLE


class TokenExpired(ConvergeError):
    kind = Kind.TOKEN_EXPIRED


class TokenReused(ConvergeError):
    kind = Kind.TOKEN_REUSED


class TokenUnavailable(ConvergeError):
    """No join token was published for this run (master failed or absent)."""
    kind = Kind.PREREQUISITE_MISSING


class StepTimeout(ConvergeError):
    kind = Kind.TIMEOUT


class ExternalToolFailure(ConvergeError):
    kind = Kind.EXTERNAL_TOOL_FAILURE


# ---------------------------------------------------------------------
# Registry / configuration errors (raised before any node is touched)
# ---------------------------------------------------------------------
class DuplicateStepID(ValueError):
    pass


class UnknownDependencyError(ValueError):
    pass


class CyclicDependencyError(ValueError):
    pass


class ConfigError(ValueError):
    pass
