import pytest

from k3se.errors import ConfigInvalid
from k3se.models.k3s import Config, Role, verify_config
from k3se.utils.config import load_config, parse_config

CLUSTER_YAML = """
version: stable
ssh-proxy:
  host: bastion.example.com
  user: jump
  key-file: ~/.ssh/bastion
cluster:
  server:
    tls-san:
      - k3s.example.com
    disable:
      - traefik
  agent:
    node-label:
      - tier=worker
nodes:
  - role: server
    ssh:
      host: 10.0.0.1
      key-file: ~/.ssh/id_ed25519
      fingerprint: SHA256:abc
  - role: agent
    ssh:
      host: 10.0.0.2
      port: 2222
      password: hunter2
"""


def test_parse_config_reads_dashed_keys():
    cfg = parse_config(CLUSTER_YAML)

    assert cfg.has_proxy
    assert cfg.ssh_proxy.user == "jump"
    assert cfg.ssh_proxy.key_file == "~/.ssh/bastion"
    assert cfg.cluster.server.tls_san == ["k3s.example.com"]
    assert cfg.cluster.server.disable == ["traefik"]
    assert cfg.cluster.agent.node_label == ["tier=worker"]

    server, agent = cfg.nodes
    assert server.role is Role.SERVER
    assert server.ssh.user == "root"
    assert server.ssh.port == 22
    assert server.ssh.fingerprint == "SHA256:abc"
    assert agent.role is Role.AGENT
    assert agent.ssh.port == 2222
    assert agent.ssh.address == "10.0.0.2:2222"

    assert verify_config(cfg) is cfg


def test_nodes_by_role_returns_stored_nodes(make_config):
    cfg = make_config(servers=3, agents=2)

    servers = cfg.nodes_by_role(Role.SERVER)
    assert [n.ssh.host for n in servers] == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    assert servers[0] is cfg.nodes[0]
    assert [n.ssh.host for n in cfg.nodes_by_role("agent")] == ["10.0.0.4", "10.0.0.5"]
    assert len(cfg.nodes_by_role(Role.ANY)) == 5


def test_verify_config_none():
    with pytest.raises(ConfigInvalid) as exc_info:
        verify_config(None)
    assert exc_info.value.errors == ["configuration empty"]


def test_verify_config_no_nodes():
    with pytest.raises(ConfigInvalid) as exc_info:
        verify_config(Config(version="stable"))
    assert exc_info.value.errors == [
        "no nodes specified",
        "no control-plane nodes specified",
    ]


@pytest.mark.parametrize("servers", [1, 3, 5])
def test_verify_config_odd_control_planes(make_config, servers):
    verify_config(make_config(servers=servers, agents=1))


@pytest.mark.parametrize("servers", [2, 4])
def test_verify_config_even_control_planes(make_config, servers):
    with pytest.raises(ConfigInvalid) as exc_info:
        verify_config(make_config(servers=servers))
    assert exc_info.value.errors == [
        f"number of control-plane nodes must be odd to maintain quorum, got {servers}"
    ]


def test_verify_config_agents_only(make_config):
    with pytest.raises(ConfigInvalid) as exc_info:
        verify_config(make_config(servers=0, agents=2))
    assert exc_info.value.errors == ["no control-plane nodes specified"]


def test_verify_config_collects_every_error(make_config):
    cfg = make_config(servers=2, version="v1.28")
    with pytest.raises(ConfigInvalid) as exc_info:
        verify_config(cfg)

    errors = exc_info.value.errors
    assert len(errors) == 2
    assert errors[0] == "unsupported version must be one of: stable, latest, testing"
    assert "must be odd" in errors[1]


@pytest.mark.parametrize("channel", ["stable", "latest", "testing"])
def test_verify_config_channels(make_config, channel):
    verify_config(make_config(version=channel))


def test_role_any_is_not_a_node_role():
    with pytest.raises(ConfigInvalid) as exc_info:
        parse_config(
            "version: stable\nnodes:\n  - role: any\n    ssh:\n      host: 10.0.0.1\n"
        )
    assert any("role" in e for e in exc_info.value.errors)


def test_parse_config_unknown_role():
    with pytest.raises(ConfigInvalid):
        parse_config(
            "version: stable\nnodes:\n  - role: master\n    ssh:\n      host: 10.0.0.1\n"
        )


def test_parse_config_malformed_yaml():
    with pytest.raises(ConfigInvalid) as exc_info:
        parse_config("nodes: [\n")
    assert exc_info.value.errors[0].startswith("malformed YAML")


def test_parse_config_empty_document():
    with pytest.raises(ConfigInvalid) as exc_info:
        parse_config("")
    assert exc_info.value.errors == ["configuration empty"]


@pytest.mark.asyncio
async def test_load_config(tmp_path):
    path = tmp_path / "k3se.yml"
    path.write_text(CLUSTER_YAML)

    cfg = await load_config(str(path))
    assert len(cfg.nodes) == 2


@pytest.mark.asyncio
async def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigInvalid) as exc_info:
        await load_config(str(tmp_path / "missing.yml"))
    assert "cannot read" in exc_info.value.errors[0]
