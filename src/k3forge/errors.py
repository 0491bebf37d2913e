# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/k3forge/errors.py

from __future__ import annotations

from typing import Iterable, Optional


class K3ForgeError(RuntimeError):
    """Base class for all k3forge failures."""


class ConfigError(K3ForgeError):
    """Invalid cluster configuration. Raised before any resource is touched."""

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None):
        self.problems = list(problems or [])
        if self.problems:
            message = message + "\n" + "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message)


# ---------------------------------------------------------------------
# Cloud provider
# ---------------------------------------------------------------------
class CloudError(K3ForgeError):
    pass


class ResourceNotFoundError(CloudError):
    pass


class ActionFailedError(CloudError):
    def __init__(self, action_id: int, command: str, message: str):
        self.action_id = action_id
        self.command = command
        super().__init__(f"action {action_id} ({command}) failed: {message}")


# ---------------------------------------------------------------------
# Remote execution
# ---------------------------------------------------------------------
class SSHError(K3ForgeError):
    pass


class SSHConnectionError(SSHError):
    pass


class SSHCommandError(SSHError):
    def __init__(self, host: str, command: str, exit_status: int, output: str):
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.output = output
        first_line = command.strip().splitlines()[0] if command.strip() else command
        super().__init__(
            f"[{host}] command exited with status {exit_status}: {first_line}\n{output.strip()}"
        )


class SSHTimeoutError(SSHError, TimeoutError):
    pass


# ---------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------
class ReadinessTimeoutError(K3ForgeError, TimeoutError):
    """A bounded poll ran out of attempts before its condition held."""


class AggregateError(K3ForgeError):
    """One or more independent operations failed; holds one entry per failure."""

    def __init__(self, summary: str, errors: Iterable[BaseException]):
        self.errors = list(errors)
        lines = [f"{summary} ({len(self.errors)} error(s))"]
        lines.extend(f"  - {e}" for e in self.errors)
        super().__init__("\n".join(lines))


class ConfirmationDeclined(K3ForgeError):
    pass


class DeletionProtectedError(K3ForgeError):
    pass


class NodeOperationError(K3ForgeError):
    """Failure of a single node inside a parallel step."""

    def __init__(self, node: str, error: BaseException):
        self.node = node
        self.error = error
        super().__init__(f"{node}: {error}")


class PipelineCancelled(K3ForgeError):
    """The pipeline's cancel flag was set; raised at the next step boundary."""
