"""
k3se/models/ssh.py

Defines the SSH connection model shared by cluster nodes and the optional
bastion host ("ssh-proxy" in the cluster config).
"""

from __future__ import annotations

import shlex
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class SSHConfig(BaseModel):
    """
    SSH configuration for connecting to a remote host.

    Exactly one credential is used, in this order of precedence:
    an inline private key, a private key file, a password. The passphrase
    decrypts whichever private key is chosen. If fingerprint is empty the
    host key is not verified.
    """

    model_config = ConfigDict(populate_by_name=True)

    host: str = ""
    port: int = Field(default=22, ge=1, le=65535)
    user: str = "root"
    password: str = ""
    key: str = ""
    key_file: str = Field(default="", alias="key-file")
    passphrase: str = ""
    fingerprint: str = ""

    @field_validator("port", mode="before")
    @classmethod
    def default_port(cls, val: Optional[int]) -> int:
        # An explicit 0 or null in YAML means "use the default".
        return val or 22

    @field_validator("user", mode="before")
    @classmethod
    def default_user(cls, val: Optional[str]) -> str:
        return val or "root"

    @property
    def address(self) -> str:
        """host:port, as used in log records and error messages."""
        return f"{self.host}:{self.port}"


class RemoteCommand(BaseModel):
    """
    Describes a command to run on a remote host.

    Environment variables are injected with "env", which needs the command
    wrapped in a shell; `shell` forces the wrapper for commands that rely on
    PATH lookup or shell syntax.
    """

    cmd: str
    env: Dict[str, str] = Field(default_factory=dict)
    shell: bool = False

    def build(self, redact: bool = False) -> str:
        """
        Compile the command line sent over the SSH channel.

        Args:
            redact: Replace environment values with '***', for logs and errors.

        Returns:
            e.g. "env K3S_TOKEN=abc sh -c /tmp/k3se/install.sh"
        """
        cmd = self.cmd
        if self.shell or self.env:
            cmd = "sh -c " + shlex.quote(self.cmd)

        if self.env:
            assignments = [
                f"{k}={'***' if redact else shlex.quote(v)}"
                for k, v in sorted(self.env.items())
            ]
            cmd = " ".join(["env"] + assignments + [cmd])

        return cmd
