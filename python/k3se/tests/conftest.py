"""
Shared fixtures: a fake cluster reachable without a network, an engine wired
to it and a builder for cluster configurations.
"""

from __future__ import annotations

from typing import Any, Callable, Dict

import pytest

from k3se.deployment.engine import Engine
from k3se.models.k3s import Config
from k3se.models.settings import EngineSettings
from k3se.tests.fakes import FakeCluster, StaticInstaller


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def installer() -> StaticInstaller:
    return StaticInstaller()


@pytest.fixture
def engine(cluster: FakeCluster, installer: StaticInstaller) -> Engine:
    return Engine(EngineSettings(), connector=cluster.connect, installer=installer)


def _node(role: str, host: str) -> Dict[str, Any]:
    return {"role": role, "ssh": {"host": host, "user": "ubuntu", "key-file": "~/.ssh/id_ed25519"}}


@pytest.fixture
def make_config() -> Callable[..., Config]:
    """
    Build a Config with `servers` control planes at 10.0.0.1.. followed by
    `agents` workers. Extra keyword arguments are merged into the document.
    """

    def _make(servers: int = 1, agents: int = 0, **extra: Any) -> Config:
        nodes = [_node("server", f"10.0.0.{i + 1}") for i in range(servers)]
        nodes += [_node("agent", f"10.0.0.{servers + i + 1}") for i in range(agents)]
        doc: Dict[str, Any] = {"version": "stable", "nodes": nodes}
        doc.update(extra)
        return Config.model_validate(doc)

    return _make
