"""
k3se/models/settings.py

Tunables of the cluster engine. Every field maps to an environment variable
prefixed with `K3SE_`, for example `K3SE_CONNECT_TIMEOUT=10`.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from k3se.models.k3s import PROGRAM
from k3se.utils.installer import INSTALLER_URL


class EngineSettings(BaseSettings):
    """
    Pydantic settings for the engine.

    Attributes:
        connect_timeout: Seconds allowed to establish each SSH session.
        command_timeout: Upper bound for a single remote command; None waits forever.
        installer_url: Where the k3s installation script is downloaded from.
        remote_dir: Scratch directory created on every node, removed on disconnect.
        config_dir: Directory of the k3s configuration file on the node.
        api_port: Default port of the Kubernetes API server.
    """

    model_config = SettingsConfigDict(env_prefix="K3SE_")

    connect_timeout: float = Field(default=5.0, gt=0)
    command_timeout: Optional[float] = Field(default=None, gt=0)
    installer_url: str = INSTALLER_URL
    remote_dir: str = f"/tmp/{PROGRAM}"
    config_dir: str = "/etc/rancher/k3s"
    api_port: int = Field(default=6443, ge=1, le=65535)
