import pytest

from k3se.models.k3s import AgentConfig, ServerConfig
from k3se.utils.merge import merge_fragments


def test_merge_with_empty_override_keeps_base():
    base = ServerConfig(
        cluster_cidr="10.42.0.0/16",
        https_listen_port=7443,
        tls_san=["k3s.example.com"],
        secrets_encryption=True,
    )
    assert merge_fragments(base, ServerConfig()) == base


def test_merge_with_empty_base_takes_override():
    override = AgentConfig(node_name="worker-1", node_label=["zone=a"], rootless=True)
    assert merge_fragments(AgentConfig(), override) == override


def test_merge_override_scalars_win():
    base = ServerConfig(node_name="cp", https_listen_port=6443, data_dir="/var/lib/k3s")
    override = ServerConfig(node_name="cp-1", https_listen_port=7443)

    merged = merge_fragments(base, override)
    assert merged.node_name == "cp-1"
    assert merged.https_listen_port == 7443
    assert merged.data_dir == "/var/lib/k3s"


def test_merge_zero_values_do_not_override():
    base = AgentConfig(v=2, debug=True, node_ip=["192.168.1.10"])
    merged = merge_fragments(base, AgentConfig(v=0, debug=False))
    assert merged.v == 2
    assert merged.debug is True


def test_merge_concatenates_lists():
    base = AgentConfig(node_label=["a", "b"], kubelet_arg=["max-pods=200"])
    override = AgentConfig(node_label=["c", "a"])

    merged = merge_fragments(base, override)
    assert merged.node_label == ["a", "b", "c", "a"]
    assert merged.kubelet_arg == ["max-pods=200"]


def test_merge_leaves_inputs_untouched():
    base = ServerConfig(disable=["traefik"])
    override = ServerConfig(disable=["servicelb"])

    merged = merge_fragments(base, override)
    merged.disable.append("metrics-server")

    assert base.disable == ["traefik"]
    assert override.disable == ["servicelb"]


def test_merge_rejects_mixed_fragments():
    with pytest.raises(TypeError):
        merge_fragments(ServerConfig(), AgentConfig())


def test_fragment_renders_only_set_fields():
    cfg = ServerConfig(tls_san=["k3s.example.com"], disable=["traefik"], https_listen_port=7443)
    assert cfg.to_config_yaml() == (
        "https-listen-port: 7443\n"
        "tls-san:\n"
        "- k3s.example.com\n"
        "disable:\n"
        "- traefik\n"
    )


def test_empty_fragment_renders_empty_mapping():
    assert AgentConfig().to_config_yaml() == "{}\n"
