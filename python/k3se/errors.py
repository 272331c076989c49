"""
k3se/errors.py

Exception hierarchy for the cluster engine. Every public operation raises a
subclass of K3seError so callers (the CLI in particular) can report failures
without inspecting library-specific exceptions.
"""

from __future__ import annotations

from typing import Dict, List, Optional


class K3seError(Exception):
    """Base class for all k3se errors."""


class ConfigInvalid(K3seError):
    """The cluster configuration failed validation.

    Attributes:
        errors (List[str]): Every violated check, in the order they were run.
    """

    def __init__(self, errors: List[str]) -> None:
        super().__init__("invalid configuration: " + "; ".join(errors))
        self.errors = errors


class ConnectError(K3seError):
    """An SSH session to a node or the proxy could not be established."""

    def __init__(self, message: str, host: str = "") -> None:
        super().__init__(message)
        self.host = host


class RemoteCommandError(K3seError):
    """Represents a failure when executing a command on a remote host.

    Attributes:
        return_code (Optional[int]): The exit status if available.
        stderr (str): Captured standard error of the command.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


class UploadError(K3seError):
    """A file could not be transferred to a remote host."""


class FetchError(K3seError):
    """The installation script could not be downloaded."""


class CredError(K3seError):
    """The kubeconfig could not be read, parsed, merged or written."""


class EngineStateError(K3seError):
    """An engine operation was invoked in the wrong lifecycle state."""


class _AggregateError(K3seError):
    """Collects one failure per host."""

    def __init__(self, summary: str, failures: Dict[str, BaseException]) -> None:
        details = ", ".join(f"{host}: {exc}" for host, exc in failures.items())
        super().__init__(f"{summary}: {details}")
        self.failures = failures


class InstallError(_AggregateError):
    """One or more worker nodes failed to install."""


class DisconnectError(_AggregateError):
    """One or more sessions failed to clean up or close."""
