import logging

import asyncssh
import pytest

from k3se.errors import ConnectError
from k3se.models.ssh import RemoteCommand, SSHConfig
from k3se.utils.ssh import RemoteSession, _auth_options


def test_plain_command():
    assert RemoteCommand(cmd="chmod +x /tmp/k3se/install.sh").build() == (
        "chmod +x /tmp/k3se/install.sh"
    )


def test_shell_command():
    assert RemoteCommand(cmd="k3s-uninstall.sh", shell=True).build() == (
        "sh -c k3s-uninstall.sh"
    )


def test_env_command_is_quoted_and_sorted():
    cmd = RemoteCommand(
        cmd="/tmp/k3se/install.sh",
        env={"INSTALL_K3S_EXEC": "server --cluster-init", "K3S_TOKEN": "s3cr3t"},
    )
    assert cmd.build() == (
        "env INSTALL_K3S_EXEC='server --cluster-init' K3S_TOKEN=s3cr3t "
        "sh -c /tmp/k3se/install.sh"
    )


def test_redacted_command_hides_values():
    cmd = RemoteCommand(cmd="/tmp/k3se/install.sh", env={"K3S_TOKEN": "s3cr3t"})
    built = cmd.build(redact=True)
    assert "s3cr3t" not in built
    assert built == "env K3S_TOKEN=*** sh -c /tmp/k3se/install.sh"


def test_ssh_defaults():
    cfg = SSHConfig.model_validate({"host": "10.0.0.1", "port": 0, "user": None})
    assert cfg.port == 22
    assert cfg.user == "root"


def test_ssh_port_range():
    with pytest.raises(ValueError):
        SSHConfig(host="10.0.0.1", port=70000)


def test_auth_password_warns(caplog):
    cfg = SSHConfig(host="10.0.0.1", password="hunter2")
    with caplog.at_level(logging.WARNING):
        options = _auth_options(cfg, logging.getLogger("test"))

    assert options == {"client_keys": None, "password": "hunter2"}
    assert "insecure" in caplog.text


def test_auth_requires_a_credential():
    with pytest.raises(ConnectError) as exc_info:
        _auth_options(SSHConfig(host="10.0.0.1"), logging.getLogger("test"))
    assert exc_info.value.host == "10.0.0.1"


def test_auth_bad_key_file(tmp_path):
    key_file = tmp_path / "id_broken"
    key_file.write_text("not a key")

    cfg = SSHConfig(host="10.0.0.1", key_file=str(key_file), password="fallback")
    with pytest.raises(ConnectError):
        _auth_options(cfg, logging.getLogger("test"))


class PasswordRecorder(asyncssh.SSHServer):
    """Accepts any password and remembers it."""

    def __init__(self, received):
        self.received = received

    def begin_auth(self, username):
        return True

    def password_auth_supported(self):
        return True

    def validate_password(self, username, password):
        self.received.append(password)
        return True


@pytest.fixture
def host_key():
    return asyncssh.generate_private_key("ssh-ed25519")


async def _serve(host_key, received):
    return await asyncssh.create_server(
        lambda: PasswordRecorder(received),
        "127.0.0.1",
        0,
        server_host_keys=[host_key],
    )


@pytest.mark.asyncio
async def test_fingerprint_mismatch_sends_no_credentials(host_key):
    received = []
    server = await _serve(host_key, received)
    try:
        cfg = SSHConfig(
            host="127.0.0.1",
            port=server.get_port(),
            password="s3cret",
            fingerprint="SHA256:doesnotmatch",
        )
        with pytest.raises(ConnectError) as exc_info:
            await RemoteSession.connect(cfg)
    finally:
        server.close()
        await server.wait_closed()

    assert "Fingerprint mismatch" in str(exc_info.value)
    assert host_key.get_fingerprint("sha256") in str(exc_info.value)
    assert received == []


@pytest.mark.asyncio
async def test_fingerprint_match_connects(host_key):
    received = []
    server = await _serve(host_key, received)
    try:
        cfg = SSHConfig(
            host="127.0.0.1",
            port=server.get_port(),
            password="s3cret",
            fingerprint=host_key.get_fingerprint("sha256"),
        )
        session = await RemoteSession.connect(cfg)
        await session.close()
    finally:
        server.close()
        await server.wait_closed()

    assert received == ["s3cret"]
