"""
k3se/models/kubeconfig.py

Defines Pydantic models for the parts of a kubeconfig the engine edits:
 - NamedCluster / ClusterEntry: API server endpoint (plus CA data, kept as-is)
 - NamedUser: credentials, kept opaque
 - NamedContext / ContextEntry: (cluster, user) pair
 - KubeConfig: the whole document with its current-context pointer

Keys not modelled here are preserved on every entry so a read-modify-write
cycle never drops certificate data, namespaces or preferences.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClusterEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    server: str = ""


class NamedCluster(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    cluster: ClusterEntry = Field(default_factory=ClusterEntry)


class NamedUser(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    user: Dict[str, Any] = Field(default_factory=dict)


class ContextEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    cluster: str = ""
    user: str = ""


class NamedContext(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    context: ContextEntry = Field(default_factory=ContextEntry)


class KubeConfig(BaseModel):
    """A kubeconfig document, as written by k3s to /etc/rancher/k3s/k3s.yaml."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str = "Config"
    clusters: List[NamedCluster] = Field(default_factory=list)
    contexts: List[NamedContext] = Field(default_factory=list)
    users: List[NamedUser] = Field(default_factory=list)
    current_context: str = Field(default="", alias="current-context")
    preferences: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("clusters", "contexts", "users", mode="before")
    @classmethod
    def null_as_empty(cls, val: Optional[List[Any]]) -> List[Any]:
        # kubectl writes "clusters: null" for an emptied kubeconfig.
        return val or []

    @field_validator("current_context", mode="before")
    @classmethod
    def null_as_blank(cls, val: Optional[str]) -> str:
        return val or ""

    def cluster(self, name: str) -> Optional[NamedCluster]:
        return next((c for c in self.clusters if c.name == name), None)

    def user(self, name: str) -> Optional[NamedUser]:
        return next((u for u in self.users if u.name == name), None)

    def context(self, name: str) -> Optional[NamedContext]:
        return next((c for c in self.contexts if c.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
