"""
k3se/deployment/ops.py

High-level operations run by the CLI. Each one loads the configuration,
walks an Engine through its lifecycle and always disconnects, even when the
operation itself fails:
  - up: deploy or upgrade the cluster, optionally writing a kubeconfig
  - down: uninstall k3s from every node
  - kubeconfig: merge the cluster's admin kubeconfig into a local file
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from k3se.deployment.engine import Engine
from k3se.errors import DisconnectError
from k3se.models.settings import EngineSettings
from k3se.utils.config import DEFAULT_CONFIG_PATH, load_config
from k3se.utils.kubeconfig import DEFAULT_KUBECONFIG_PATH

logger = logging.getLogger(__name__)


def is_machine_mode() -> bool:
    """True when running in CI, where kubeconfig names must stay predictable."""
    return bool(os.environ.get("CI"))


@asynccontextmanager
async def connected_engine(
    config_path: str, engine: Optional[Engine] = None
) -> AsyncGenerator[Engine, None]:
    """
    Yield an engine connected to every node of the cluster at `config_path`,
    disconnecting on exit. A disconnect failure is logged rather than raised
    when the body already failed, so the original error reaches the caller.
    """
    config = await load_config(config_path)
    engine = engine or Engine(EngineSettings())
    engine.set_spec(config)
    await engine.connect()

    try:
        yield engine
    except BaseException:
        try:
            await engine.disconnect()
        except DisconnectError as exc:
            logger.error("%s", exc)
        raise
    else:
        await engine.disconnect()


async def up(
    config_path: str = DEFAULT_CONFIG_PATH,
    kubeconfig_path: Optional[str] = None,
    *,
    engine: Optional[Engine] = None,
) -> None:
    """Deploy a new cluster or upgrade an existing one."""
    async with connected_engine(config_path, engine) as eng:
        await eng.install()
        if kubeconfig_path:
            await eng.kubeconfig(kubeconfig_path, machine_mode=is_machine_mode())


async def down(
    config_path: str = DEFAULT_CONFIG_PATH, *, engine: Optional[Engine] = None
) -> None:
    """Remove k3s from every node. All data stored in the cluster is lost."""
    async with connected_engine(config_path, engine) as eng:
        await eng.uninstall()


async def kubeconfig(
    config_path: str = DEFAULT_CONFIG_PATH,
    kubeconfig_path: str = DEFAULT_KUBECONFIG_PATH,
    *,
    engine: Optional[Engine] = None,
) -> None:
    """Write the cluster's admin kubeconfig into `kubeconfig_path`."""
    async with connected_engine(config_path, engine) as eng:
        await eng.kubeconfig(kubeconfig_path, machine_mode=is_machine_mode())
