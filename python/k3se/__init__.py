"""
k3se/__init__.py

A lightweight engine that deploys k3s clusters declaratively over SSH.

Exports the public API:
  - Config / load_config / verify_config for the cluster document
  - Engine for driving the nodes through connect, install and disconnect
  - the K3seError hierarchy
"""

from k3se.deployment.engine import Engine, EngineState
from k3se.errors import (
    ConfigInvalid,
    ConnectError,
    CredError,
    DisconnectError,
    EngineStateError,
    FetchError,
    InstallError,
    K3seError,
    RemoteCommandError,
    UploadError,
)
from k3se.models.k3s import Config, Role, verify_config
from k3se.utils.config import load_config

__all__ = [
    "Config",
    "ConfigInvalid",
    "ConnectError",
    "CredError",
    "DisconnectError",
    "Engine",
    "EngineState",
    "EngineStateError",
    "FetchError",
    "InstallError",
    "K3seError",
    "RemoteCommandError",
    "Role",
    "UploadError",
    "load_config",
    "verify_config",
]
