"""
k3se/deployment/engine.py

Drives a set of machines to the k3s cluster described by a Config. The
engine walks through a fixed lifecycle:

  set_spec -> connect -> install | uninstall | kubeconfig -> disconnect

Installation order:
  1) Control-plane nodes, one after another in configuration order. The first
     one bootstraps the cluster ("--cluster-init" when more than one control
     plane is configured), every later one joins it with the token read back
     from its predecessor.
  2) Worker nodes, all at once. A failing worker does not stop the others;
     the failures are collected and reported together once all are done.

The join URL and token are written only during step 1 and only read during
step 2, so they need no lock. The installer cache has its own lock because
workers fetch it concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    MutableMapping,
    Optional,
    Tuple,
    Union,
)

from k3se.errors import (
    DisconnectError,
    EngineStateError,
    InstallError,
    K3seError,
    CredError,
    RemoteCommandError,
)
from k3se.models.k3s import (
    AgentConfig,
    Config,
    Node,
    Role,
    ServerConfig,
    verify_config,
)
from k3se.models.kubeconfig import KubeConfig
from k3se.models.settings import EngineSettings
from k3se.models.ssh import RemoteCommand
from k3se.utils.installer import InstallerCache
from k3se.utils.kubeconfig import reconcile_kubeconfig
from k3se.utils.merge import merge_fragments
from k3se.utils.ssh import RemoteSession

TOKEN_PATH = "/var/lib/rancher/k3s/server/token"

logger = logging.getLogger(__name__)

# Same signature as RemoteSession.connect; tests substitute an in-memory fake.
Connector = Callable[..., Awaitable[RemoteSession]]


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SPEC_SET = "spec-set"
    CONNECTED = "connected"
    INSTALLING = "installing"
    INSTALLED = "installed"
    DISCONNECTED = "disconnected"


class NodeLogger(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Prefixes every record with the node's host:port."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['host']}] {msg}", kwargs  # type: ignore[index]


class NodeHandle:
    """
    Pairs a configured Node (a reference into the engine's Config, not a
    copy) with its logger and, while connected, its remote session.
    """

    def __init__(self, node: Node) -> None:
        self.node = node
        self.log = NodeLogger(logger, {"host": node.ssh.address})
        self.session: Optional[RemoteSession] = None

    @property
    def host(self) -> str:
        return self.node.ssh.host

    @property
    def address(self) -> str:
        """host:port; unique per node even when several nodes share a host."""
        return self.node.ssh.address

    @property
    def role(self) -> Role:
        return self.node.role

    def require_session(self) -> RemoteSession:
        if self.session is None:
            raise EngineStateError(f"node {self.address} is not connected")
        return self.session


class Engine:
    """
    Encapsulates the installation logic for one run against one Config.

    Args:
        settings: Timeouts and paths; read from K3SE_* environment variables by default.
        connector: Opens a RemoteSession; defaults to RemoteSession.connect.
        installer: Shared installer cache; one is created from the settings if omitted.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        connector: Optional[Connector] = None,
        installer: Optional[InstallerCache] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self._connector: Connector = connector or RemoteSession.connect
        self._installer = installer or InstallerCache(self.settings.installer_url)

        self.state = EngineState.UNINITIALIZED
        self.spec: Optional[Config] = None
        self.failed_nodes: Dict[str, BaseException] = {}

        self._handles: List[NodeHandle] = []
        self._proxy: Optional[RemoteSession] = None
        self._server_url = ""
        self._cluster_token = ""
        self._cleanup_pending = False

    @property
    def server_url(self) -> str:
        """Advertised API server URL; also the join URL for joining nodes."""
        return self._server_url

    @property
    def cluster_token(self) -> str:
        return self._cluster_token

    @property
    def installer_path(self) -> str:
        return posixpath.join(self.settings.remote_dir, "install.sh")

    def _require(self, *states: EngineState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise EngineStateError(
                f"operation requires engine state {allowed}, current state is {self.state.value}"
            )

    def filter_nodes(self, selector: Union[Role, str]) -> List[NodeHandle]:
        """
        Return the handles of all nodes matching `selector` in configuration
        order. Role.ANY matches every node.
        """
        selector = Role(selector)
        return [
            h for h in self._handles if selector is Role.ANY or h.role is selector
        ]

    def set_spec(self, config: Optional[Config]) -> None:
        """
        Validate and adopt the desired cluster state, and derive the API
        server URL from it.

        The URL host is the first cluster-wide TLS SAN if any, else the first
        control-plane's SSH host. The port is the cluster-wide advertise-port,
        else https-listen-port, else the default API port.

        Raises:
            EngineStateError: If a spec was already set.
            ConfigInvalid: If validation fails; the engine stays uninitialized.
        """
        self._require(EngineState.UNINITIALIZED)
        spec = verify_config(config)

        server = spec.cluster.server
        port = server.advertise_port or server.https_listen_port or self.settings.api_port
        host = server.tls_san[0] if server.tls_san else spec.nodes_by_role(Role.SERVER)[0].ssh.host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"

        self.spec = spec
        self._handles = [NodeHandle(node) for node in spec.nodes]
        self._server_url = f"https://{host}:{port}"
        self.state = EngineState.SPEC_SET

    async def connect(self) -> None:
        """
        Open a session to every node, in configuration order. If an SSH proxy
        is configured, one session to it is opened first and every node
        connection is tunnelled through it.

        Raises:
            ConnectError: Naming the first host that could not be reached.
                Sessions opened so far are closed before the error propagates.
        """
        self._require(EngineState.SPEC_SET)
        assert self.spec is not None

        timeouts = {
            "timeout": self.settings.connect_timeout,
            "command_timeout": self.settings.command_timeout,
        }

        try:
            if self.spec.has_proxy:
                assert self.spec.ssh_proxy is not None
                logger.info("Connecting to SSH proxy %s", self.spec.ssh_proxy.address)
                self._proxy = await self._connector(
                    self.spec.ssh_proxy, log=logger, **timeouts
                )

            for handle in self._handles:
                handle.log.info("Connecting")
                handle.session = await self._connector(
                    handle.node.ssh, proxy=self._proxy, log=handle.log, **timeouts
                )
        except K3seError:
            await self._abandon_sessions()
            raise

        self.state = EngineState.CONNECTED

    async def _abandon_sessions(self) -> None:
        """Best-effort close of every open session after a failed connect."""
        for handle in self._handles:
            if handle.session is not None:
                try:
                    await handle.session.close()
                except K3seError as exc:
                    handle.log.warning("Failed to close session: %s", exc)
                handle.session = None

        if self._proxy is not None:
            try:
                await self._proxy.close()
            except K3seError as exc:
                logger.warning("Failed to close SSH proxy session: %s", exc)
            self._proxy = None

    def effective_config(self, node: Node) -> Union[ServerConfig, AgentConfig]:
        """
        Merge the cluster-wide fragment for the node's role with the node's
        own fragment. A control-plane advertises its SSH host unless an
        advertise-address is configured, so workers behind NAT or on hosts
        with several interfaces can still reach it.
        """
        assert self.spec is not None
        if node.role is Role.SERVER:
            server = merge_fragments(self.spec.cluster.server, node.server)
            if not server.advertise_address:
                server = server.model_copy(update={"advertise_address": node.ssh.host})
            return server
        return merge_fragments(self.spec.cluster.agent, node.agent)

    async def configure_node(self, handle: NodeHandle) -> None:
        """
        Upload the installer and the node's effective k3s configuration, then
        move the configuration to its system path owned by root.
        """
        session = handle.require_session()
        self._cleanup_pending = True
        handle.log.info("Configuring node")

        installer = await self._installer.fetch()
        await session.upload(self.installer_path, installer)
        await session.run(RemoteCommand(cmd=f"chmod +x {self.installer_path}"))

        staged = posixpath.join(self.settings.remote_dir, "config.yaml")
        target = posixpath.join(self.settings.config_dir, "config.yaml")
        rendered = self.effective_config(handle.node).to_config_yaml()
        await session.upload(staged, rendered.encode("utf-8"))

        await session.run(
            RemoteCommand(cmd=f"sudo mkdir -m 755 -p {self.settings.config_dir}")
        )
        await session.run(
            RemoteCommand(
                cmd=f"sudo chown root:root {staged} && sudo chmod 644 {staged} && sudo mv {staged} {target}"
            )
        )

    def _install_env(self, exec_: str) -> Dict[str, str]:
        assert self.spec is not None
        return {
            "INSTALL_K3S_FORCE_RESTART": "true",
            "INSTALL_K3S_EXEC": exec_,
            "INSTALL_K3S_CHANNEL": self.spec.version,
        }

    async def install(self) -> None:
        """
        Install k3s on all nodes: control planes sequentially, then workers
        concurrently.

        Raises:
            K3seError: The first control-plane failure, immediately.
            InstallError: After all workers finished, if any of them failed;
                `failed_nodes` holds the same mapping.
        """
        self._require(EngineState.CONNECTED)
        self.state = EngineState.INSTALLING
        logger.info("Detected server URL %s", self._server_url)

        await self._install_control_planes()
        await self._install_workers()

        self.state = EngineState.INSTALLED

    async def _install_control_planes(self) -> None:
        servers = self.filter_nodes(Role.SERVER)
        # Embedded etcd is only needed with more than one control plane.
        bootstrap_exec = "server --cluster-init" if len(servers) > 1 else "server"

        for index, handle in enumerate(servers):
            await self.configure_node(handle)

            if index == 0:
                env = self._install_env(bootstrap_exec)
            else:
                env = self._install_env("server")
                env["K3S_URL"] = self._server_url
                env["K3S_TOKEN"] = self._cluster_token

            handle.log.info("Running installation script")
            await handle.require_session().run(
                RemoteCommand(cmd=self.installer_path, env=env)
            )
            self._cluster_token = await self._fetch_cluster_token(handle)

    async def _fetch_cluster_token(self, handle: NodeHandle) -> str:
        """Read the join token written by k3s on a control-plane node."""
        token = (await handle.require_session().read(TOKEN_PATH)).strip()
        if not token:
            raise RemoteCommandError(f"Empty cluster token on {handle.address}")
        return token

    async def _install_worker(self, handle: NodeHandle) -> None:
        await self.configure_node(handle)

        env = self._install_env("agent")
        env["K3S_URL"] = self._server_url
        env["K3S_TOKEN"] = self._cluster_token

        handle.log.info("Running installation script")
        await handle.require_session().run(
            RemoteCommand(cmd=self.installer_path, env=env)
        )

    async def _install_workers(self) -> None:
        agents = self.filter_nodes(Role.AGENT)
        if not agents:
            return

        results = await asyncio.gather(
            *(self._install_worker(h) for h in agents), return_exceptions=True
        )

        failures: Dict[str, BaseException] = {}
        for handle, result in zip(agents, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                handle.log.error("Failed to install node: %s", result)
                failures[handle.address] = result

        self.failed_nodes = failures
        if failures:
            raise InstallError("Failed to install worker nodes", failures)

    async def uninstall(self) -> None:
        """
        Run the k3s uninstallation script on every node, stopping at the
        first failure. The script's stderr is logged by the session.
        """
        self._require(EngineState.CONNECTED, EngineState.INSTALLED)

        for handle in self.filter_nodes(Role.ANY):
            script = "k3s-uninstall.sh"
            if handle.role is Role.AGENT:
                script = "k3s-agent-uninstall.sh"

            handle.log.info("Running uninstallation script")
            await handle.require_session().run(RemoteCommand(cmd=script, shell=True))

    async def kubeconfig(
        self, output_path: str, *, machine_mode: bool = False
    ) -> KubeConfig:
        """
        Download the admin kubeconfig from the first control plane and merge
        it into the local file at `output_path`.

        Args:
            output_path: Local kubeconfig path; a leading '~' is expanded.
            machine_mode: Keep k3s' "default" entry names for automation.

        Raises:
            CredError: If the download, parsing, merge or write fails.
        """
        self._require(EngineState.CONNECTED, EngineState.INSTALLED)

        server = self.filter_nodes(Role.SERVER)[0]
        server.log.info("Downloading kubeconfig")
        remote_path = posixpath.join(self.settings.config_dir, "k3s.yaml")
        try:
            text = await server.require_session().read(remote_path)
        except K3seError as exc:
            raise CredError(f"Failed to download kubeconfig from {server.address}: {exc}") from exc

        return await reconcile_kubeconfig(
            text,
            self._server_url,
            output_path,
            machine_mode=machine_mode,
            default_port=self.settings.api_port,
        )

    async def disconnect(self) -> None:
        """
        Remove the remote scratch directory (if anything was uploaded) and
        close every session, including the proxy. A failure on one node does
        not stop the others.

        Raises:
            DisconnectError: Listing every node that failed to clean up or close.
        """
        self._require(
            EngineState.CONNECTED, EngineState.INSTALLING, EngineState.INSTALLED
        )

        failures: Dict[str, BaseException] = {}
        for handle in self._handles:
            if handle.session is None:
                continue

            if self._cleanup_pending:
                handle.log.info("Cleaning up temporary files")
                try:
                    await handle.session.run(
                        RemoteCommand(cmd=f"rm -rf {self.settings.remote_dir}")
                    )
                except K3seError as exc:
                    handle.log.error("Failed to clean up temporary files: %s", exc)
                    failures[handle.address] = exc

            try:
                await handle.session.close()
            except K3seError as exc:
                handle.log.error("Failed to close session: %s", exc)
                failures.setdefault(handle.address, exc)
            handle.session = None

        if self._proxy is not None:
            try:
                await self._proxy.close()
            except K3seError as exc:
                logger.error("Failed to close SSH proxy session: %s", exc)
                failures["ssh-proxy"] = exc
            self._proxy = None

        self.state = EngineState.DISCONNECTED
        if failures:
            raise DisconnectError("Failed to disconnect cleanly", failures)
