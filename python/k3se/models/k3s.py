"""
k3se/models/k3s.py

Defines the pydantic models describing the desired state of a k3s cluster:
 - ServerConfig / AgentConfig: the k3s configuration-file flags for each role
 - ClusterConfig: cluster-wide server and agent settings
 - Node: one target machine with its role, SSH access and overrides
 - Config: the root document loaded from k3se.yml

Field aliases carry the exact k3s / k3se key names, so documents written for
the k3s configuration file can be pasted in unchanged.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from k3se.errors import ConfigInvalid
from k3se.models.ssh import SSHConfig

PROGRAM = "k3se"

# Release channels understood by the k3s installation script.
CHANNELS = ["stable", "latest", "testing"]


class Role(str, Enum):
    """Role of a node. ANY is only a selector and never a stored role."""

    SERVER = "server"
    AGENT = "agent"
    ANY = "any"


class Fragment(BaseModel):
    """Base for the per-role k3s configuration fragments."""

    model_config = ConfigDict(populate_by_name=True)

    def to_config_yaml(self) -> str:
        """
        Render the fragment as a k3s config.yaml document. Zero values are
        dropped so k3s applies its own defaults.
        """
        data = self.model_dump(by_alias=True, exclude_defaults=True)
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


class ServerConfig(Fragment):
    """
    Configuration of a k3s server. For reference, see:
    https://docs.k3s.io/cli/server

    Token and clustering flags such as "cluster-init" are managed by the engine.
    """

    v: int = 0
    vmodule: str = ""
    log: str = ""
    also_log_to_stderr: bool = Field(default=False, alias="also-log-to-stderr")
    bind_address: str = Field(default="", alias="bind-address")
    https_listen_port: int = Field(default=0, alias="https-listen-port")
    advertise_address: str = Field(default="", alias="advertise-address")
    advertise_port: int = Field(default=0, alias="advertise-port")
    tls_san: List[str] = Field(default_factory=list, alias="tls-san")
    data_dir: str = Field(default="", alias="data-dir")
    cluster_cidr: str = Field(default="", alias="cluster-cidr")
    service_cidr: List[str] = Field(default_factory=list, alias="service-cidr")
    service_node_port_range: str = Field(default="", alias="service-node-port-range")
    cluster_dns: List[str] = Field(default_factory=list, alias="cluster-dns")
    cluster_domain: str = Field(default="", alias="cluster-domain")
    flannel_backend: str = Field(default="", alias="flannel-backend")
    write_kubeconfig: str = Field(default="", alias="write-kubeconfig")
    write_kubeconfig_mode: str = Field(default="", alias="write-kubeconfig-mode")
    etcd_arg: List[str] = Field(default_factory=list, alias="etcd-arg")
    kube_apiserver_arg: List[str] = Field(
        default_factory=list, alias="kube-apiserver-arg"
    )
    kube_scheduler_arg: List[str] = Field(
        default_factory=list, alias="kube-scheduler-arg"
    )
    kube_controller_manager_arg: List[str] = Field(
        default_factory=list, alias="kube-controller-manager-arg"
    )
    kube_cloud_controller_manager_arg: List[str] = Field(
        default_factory=list, alias="kube-cloud-controller-manager-arg"
    )
    datastore_endpoint: str = Field(default="", alias="datastore-endpoint")
    datastore_cafile: str = Field(default="", alias="datastore-cafile")
    datastore_certfile: str = Field(default="", alias="datastore-certfile")
    datastore_keyfile: str = Field(default="", alias="datastore-keyfile")
    etcd_expose_metrics: bool = Field(default=False, alias="etcd-expose-metrics")
    etcd_disable_snapshots: bool = Field(default=False, alias="etcd-disable-snapshots")
    etcd_snapshot_name: str = Field(default="", alias="etcd-snapshot-name")
    etcd_snapshot_schedule_cron: str = Field(
        default="", alias="etcd-snapshot-schedule-cron"
    )
    etcd_snapshot_retention: int = Field(default=0, alias="etcd-snapshot-retention")
    etcd_snapshot_dir: str = Field(default="", alias="etcd-snapshot-dir")
    etcd_s3: bool = Field(default=False, alias="etcd-s3")
    etcd_s3_endpoint: str = Field(default="", alias="etcd-s3-endpoint")
    etcd_s3_endpoint_ca: str = Field(default="", alias="etcd-s3-endpoint-ca")
    etcd_s3_skip_ssl_verify: bool = Field(default=False, alias="etcd-s3-skip-ssl-verify")
    etcd_s3_access_key: str = Field(default="", alias="etcd-s3-access-key")
    etcd_s3_secret_key: str = Field(default="", alias="etcd-s3-secret-key")
    etcd_s3_bucket: str = Field(default="", alias="etcd-s3-bucket")
    etcd_s3_region: str = Field(default="", alias="etcd-s3-region")
    etcd_s3_folder: str = Field(default="", alias="etcd-s3-folder")
    default_local_storage_path: str = Field(
        default="", alias="default-local-storage-path"
    )
    disable: List[str] = Field(default_factory=list)
    disable_scheduler: bool = Field(default=False, alias="disable-scheduler")
    disable_cloud_controller: bool = Field(
        default=False, alias="disable-cloud-controller"
    )
    disable_kube_proxy: bool = Field(default=False, alias="disable-kube-proxy")
    disable_network_policy: bool = Field(default=False, alias="disable-network-policy")
    node_name: str = Field(default="", alias="node-name")
    with_node_id: bool = Field(default=False, alias="with-node-id")
    node_label: List[str] = Field(default_factory=list, alias="node-label")
    node_taint: List[str] = Field(default_factory=list, alias="node-taint")
    image_credential_provider_bin_dir: str = Field(
        default="", alias="image-credential-provider-bin-dir"
    )
    image_credential_provider_config: str = Field(
        default="", alias="image-credential-provider-config"
    )
    docker: bool = False
    container_runtime_endpoint: str = Field(
        default="", alias="container-runtime-endpoint"
    )
    pause_image: str = Field(default="", alias="pause-image")
    snapshotter: str = ""
    private_registry: str = Field(default="", alias="private-registry")
    node_ip: List[str] = Field(default_factory=list, alias="node-ip")
    node_external_ip: List[str] = Field(default_factory=list, alias="node-external-ip")
    resolv_conf: str = Field(default="", alias="resolv-conf")
    kubelet_arg: List[str] = Field(default_factory=list, alias="kubelet-arg")
    kube_proxy_arg: List[str] = Field(default_factory=list, alias="kube-proxy-arg")
    protect_kernel_defaults: bool = Field(
        default=False, alias="protect-kernel-defaults"
    )
    rootless: bool = False
    cluster_reset_restore_path: str = Field(
        default="", alias="cluster-reset-restore-path"
    )
    secrets_encryption: bool = Field(default=False, alias="secrets-encryption")
    system_default_registry: str = Field(default="", alias="system-default-registry")
    selinux: bool = False
    lb_server_port: int = Field(default=0, alias="lb-server-port")


class AgentConfig(Fragment):
    """
    Configuration of a k3s agent. For reference, see:
    https://docs.k3s.io/cli/agent

    The "server" and token flags are filled in by the engine at install time.
    """

    debug: bool = False
    v: int = 0
    vmodule: str = ""
    log: str = ""
    also_log_to_stderr: bool = Field(default=False, alias="also-log-to-stderr")
    data_dir: str = Field(default="", alias="data-dir")
    node_name: str = Field(default="", alias="node-name")
    with_node_id: bool = Field(default=False, alias="with-node-id")
    node_label: List[str] = Field(default_factory=list, alias="node-label")
    node_taint: List[str] = Field(default_factory=list, alias="node-taint")
    image_credential_provider_bin_dir: str = Field(
        default="", alias="image-credential-provider-bin-dir"
    )
    image_credential_provider_config: str = Field(
        default="", alias="image-credential-provider-config"
    )
    docker: bool = False
    container_runtime_endpoint: str = Field(
        default="", alias="container-runtime-endpoint"
    )
    pause_image: str = Field(default="", alias="pause-image")
    snapshotter: str = ""
    private_registry: str = Field(default="", alias="private-registry")
    node_ip: List[str] = Field(default_factory=list, alias="node-ip")
    node_external_ip: List[str] = Field(default_factory=list, alias="node-external-ip")
    resolv_conf: str = Field(default="", alias="resolv-conf")
    flannel_iface: str = Field(default="", alias="flannel-iface")
    flannel_conf: str = Field(default="", alias="flannel-conf")
    kubelet_arg: List[str] = Field(default_factory=list, alias="kubelet-arg")
    kube_proxy_arg: List[str] = Field(default_factory=list, alias="kube-proxy-arg")
    protect_kernel_defaults: bool = Field(
        default=False, alias="protect-kernel-defaults"
    )
    rootless: bool = False
    lb_server_port: int = Field(default=0, alias="lb-server-port")


class ClusterConfig(BaseModel):
    """Settings shared by every server and every agent of the cluster."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)


class Node(BaseModel):
    """
    One target machine. Only the fragment matching `role` is used; it is
    merged on top of the cluster-wide fragment of the same role.
    """

    role: Role
    ssh: SSHConfig
    server: ServerConfig = Field(default_factory=ServerConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    @field_validator("role")
    @classmethod
    def validate_role(cls, val: Role) -> Role:
        if val is Role.ANY:
            raise ValueError("role 'any' is a selector, use 'server' or 'agent'")
        return val


class Config(BaseModel):
    """
    Root document describing the desired state of the cluster.

    Attributes:
        version: The k3s release channel to install.
        cluster: Settings shared by all nodes of a role.
        nodes: The machines to deploy on, in configuration order.
        ssh_proxy: Optional bastion host every node connection is tunnelled through.
    """

    model_config = ConfigDict(populate_by_name=True)

    version: str = ""
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    nodes: List[Node] = Field(default_factory=list)
    ssh_proxy: Optional[SSHConfig] = Field(default=None, alias="ssh-proxy")

    @property
    def has_proxy(self) -> bool:
        return self.ssh_proxy is not None and bool(self.ssh_proxy.host)

    def nodes_by_role(self, selector: Union[Role, str]) -> List[Node]:
        """
        Return the stored nodes matching `selector`, in configuration order.
        Role.ANY matches every node. The returned objects are the ones held
        by this config, not copies.
        """
        selector = Role(selector)
        return [n for n in self.nodes if selector is Role.ANY or n.role is selector]


def verify_config(config: Optional[Config]) -> Config:
    """
    Run every validation check and report all failures together.

    Checks, in order: config present, version is a known channel, nodes are
    present, at least one control-plane node, an odd number of control-plane
    nodes (etcd quorum).

    Returns:
        The validated config, unchanged.

    Raises:
        ConfigInvalid: listing every failed check.
    """
    if config is None:
        raise ConfigInvalid(["configuration empty"])

    errors: List[str] = []
    if config.version not in CHANNELS:
        errors.append("unsupported version must be one of: " + ", ".join(CHANNELS))

    if not config.nodes:
        errors.append("no nodes specified")

    control_planes = len(config.nodes_by_role(Role.SERVER))
    if control_planes == 0:
        errors.append("no control-plane nodes specified")
    elif control_planes % 2 == 0:
        errors.append(
            f"number of control-plane nodes must be odd to maintain quorum, got {control_planes}"
        )

    if errors:
        raise ConfigInvalid(errors)
    return config
