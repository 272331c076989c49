"""
k3se/utils/kubeconfig.py

Reconciles the admin kubeconfig generated by k3s on a control-plane node with
a local kubeconfig file:
  - point the cluster entry at the advertised API server URL
  - in interactive mode, rename the "default" entries after the API server host
  - merge into an existing local file, replacing same-named entries only
  - write atomically (temporary file + rename) with mode 0600
"""

from __future__ import annotations

import logging
import os
import tempfile
from typing import Any, List, Optional, TypeVar
from urllib.parse import urlsplit

import aiofiles
import yaml
from pydantic import BaseModel

from k3se.errors import CredError
from k3se.models.kubeconfig import KubeConfig
from k3se.models.validator import validate_type

# k3s names its cluster, user and context "default".
DEFAULT_NAME = "default"
DEFAULT_KUBECONFIG_PATH = "~/.kube/config"

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BaseModel)


def _cred_error(errors: List[str]) -> CredError:
    return CredError("invalid kubeconfig: " + "; ".join(errors))


def parse_kubeconfig(text: str) -> KubeConfig:
    """
    Parse kubeconfig YAML. An empty document yields an empty KubeConfig.

    Raises:
        CredError: If the YAML is malformed or not kubeconfig-shaped.
    """
    try:
        raw: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CredError(f"Failed to parse kubeconfig: {exc}") from exc
    return validate_type(raw or {}, KubeConfig, _cred_error)


def dump_kubeconfig(cfg: KubeConfig) -> str:
    return yaml.safe_dump(cfg.to_dict(), default_flow_style=False, sort_keys=False)


def cluster_name_for(server_url: str, default_port: int = 6443) -> str:
    """
    Derive a human-readable cluster name from the API server URL: its host,
    with ":<port>" appended only when the port is not the default API port.
    """
    parts = urlsplit(server_url)
    host = parts.hostname or ""
    if parts.port is not None and parts.port != default_port:
        return f"{host}:{parts.port}"
    return host


def point_to_server(cfg: KubeConfig, server_url: str) -> KubeConfig:
    """
    Return a copy whose "default" cluster uses `server_url`. k3s writes a
    loopback address, which is unreachable from outside the node.

    Raises:
        CredError: If the document has no "default" cluster.
    """
    cfg = cfg.model_copy(deep=True)
    cluster = cfg.cluster(DEFAULT_NAME)
    if cluster is None:
        raise CredError(f"kubeconfig has no cluster named '{DEFAULT_NAME}'")
    cluster.cluster.server = server_url
    return cfg


def rename_for_humans(
    cfg: KubeConfig, server_url: str, default_port: int = 6443
) -> KubeConfig:
    """
    Return a copy with the "default" cluster, user and context renamed to
    `<cluster>` and `admin@<cluster>`, cross-references updated and the
    current context pointing at the renamed context.

    Raises:
        CredError: If any of the three "default" entries is missing.
    """
    cfg = cfg.model_copy(deep=True)
    cluster = cfg.cluster(DEFAULT_NAME)
    user = cfg.user(DEFAULT_NAME)
    context = cfg.context(DEFAULT_NAME)
    if cluster is None or user is None or context is None:
        raise CredError(
            f"kubeconfig must contain a cluster, user and context named '{DEFAULT_NAME}'"
        )

    cluster_name = cluster_name_for(server_url, default_port)
    context_name = f"admin@{cluster_name}"

    cluster.name = cluster_name
    user.name = context_name
    context.name = context_name
    context.context.cluster = cluster_name
    context.context.user = context_name
    cfg.current_context = context_name
    return cfg


def _upsert(existing: List[E], incoming: List[E]) -> List[E]:
    """Replace entries with the same name in place, append the others."""
    by_name = {getattr(e, "name"): e for e in incoming}
    merged = [by_name.pop(getattr(e, "name"), e) for e in existing]
    return merged + [e for e in incoming if getattr(e, "name") in by_name]


def merge_kubeconfigs(old: KubeConfig, new: KubeConfig) -> KubeConfig:
    """
    Merge `new` into `old`. Every cluster, user and context of `new` wins
    over a same-named entry of `old`; entries only in `old` are kept as they
    are. The current context of `new` is selected when it has one.
    """
    merged = old.model_copy(deep=True)
    incoming = new.model_copy(deep=True)
    merged.clusters = _upsert(merged.clusters, incoming.clusters)
    merged.users = _upsert(merged.users, incoming.users)
    merged.contexts = _upsert(merged.contexts, incoming.contexts)
    if incoming.current_context:
        merged.current_context = incoming.current_context
    return merged


def resolve_path(path: str) -> str:
    """Expand a leading '~' against the invoking user's home directory."""
    return os.path.expanduser(path)


async def read_kubeconfig(path: str) -> Optional[KubeConfig]:
    """
    Load a local kubeconfig, or return None if the file does not exist.

    Raises:
        CredError: If the file exists but cannot be read or parsed.
    """
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            text = await f.read()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise CredError(f"Failed to read kubeconfig {path}: {exc}") from exc
    return parse_kubeconfig(text)


async def write_kubeconfig(path: str, cfg: KubeConfig) -> None:
    """
    Write `cfg` to `path` atomically: the document goes to a temporary file
    in the same directory which then replaces the target. A symlinked path
    is resolved first so the link itself survives.

    Raises:
        CredError: If the directory or file cannot be written.
    """
    content = dump_kubeconfig(cfg)
    path = os.path.realpath(path)
    directory = os.path.dirname(path)
    tmp_path = ""
    try:
        os.makedirs(directory, mode=0o700, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".kubeconfig-")
        os.close(fd)
        os.chmod(tmp_path, 0o600)
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(content)
        os.replace(tmp_path, path)
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise CredError(f"Failed to write kubeconfig {path}: {exc}") from exc


async def reconcile_kubeconfig(
    remote_text: str,
    server_url: str,
    output_path: str,
    *,
    machine_mode: bool,
    default_port: int = 6443,
) -> KubeConfig:
    """
    Turn the kubeconfig downloaded from a control-plane into a usable local one.

    Args:
        remote_text: Content of the node's k3s.yaml.
        server_url: Advertised API server URL to put into the cluster entry.
        output_path: Local kubeconfig path, '~' allowed.
        machine_mode: Keep the "default" names for downstream automation
            instead of renaming them for humans.
        default_port: API port omitted from derived cluster names.

    Returns:
        The document that was written.

    Raises:
        CredError: On any read, parse or write failure; the local file is
            left untouched in that case.
    """
    new_cfg = point_to_server(parse_kubeconfig(remote_text), server_url)
    if not machine_mode:
        new_cfg = rename_for_humans(new_cfg, server_url, default_port)

    path = resolve_path(output_path)
    old_cfg = await read_kubeconfig(path)
    if old_cfg is None:
        logger.info("Writing new kubeconfig to %s", path)
        result = new_cfg
    else:
        logger.info("Merging kubeconfig into %s", path)
        result = merge_kubeconfigs(old_cfg, new_cfg)

    await write_kubeconfig(path, result)
    return result
