from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from .models import GroupSpec, GroupTopology, ProxySpec
from .settings import settings

LABEL_GROUP = "gsr.dev/group"
LABEL_PROXY = "gsr.dev/proxy"
LABEL_INDEX = "gsr.dev/index"
ANNOTATION_ENGINE_VERSION = "gsr.dev/engine-version"
ANNOTATION_GROUP_GENERATION = "gsr.dev/group-generation"
# Stamped on pods at creation; a pod whose stamp no longer matches is replaced.
ANNOTATION_CONFIG_REVISION = "gsr.dev/config-revision"
ANNOTATION_OWNER_GENERATION = "gsr.dev/owner-generation"

KIND_GROUP = "ServerGroup"
KIND_PROXY = "Proxy"

STATE_READY = "Ready"
STATE_NOT_READY = "NotReady"


def instance_name(owner: str, index: int) -> str:
    return f"{owner}-{index}"


def artifact_name(group: str) -> str:
    return f"{group}-config"


@dataclass(frozen=True)
class ResourceKey:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class InstanceSnapshot:
    """Partial status computed from live pods."""

    instance_addresses: tuple[str, ...]
    observed_generation: int | None
    # Non-terminating pods built from an older template.
    stale_instances: tuple[str, ...] = ()

    @property
    def state(self) -> str:
        return STATE_READY if self.instance_addresses else STATE_NOT_READY


@dataclass(frozen=True)
class ArtifactSnapshot:
    """Partial status computed from the group's config artifact."""

    observed_config_generation: str | None


@dataclass(frozen=True)
class GroupStatus:
    state: str = STATE_NOT_READY
    instance_addresses: tuple[str, ...] = ()
    observed_generation: int | None = None
    observed_config_generation: str | None = None

    @classmethod
    def from_object(cls, raw: dict[str, Any] | None) -> GroupStatus:
        raw = raw or {}
        return cls(
            state=raw.get("state") or STATE_NOT_READY,
            instance_addresses=tuple(sorted(set(raw.get("instanceAddresses") or []))),
            observed_generation=raw.get("observedGeneration"),
            observed_config_generation=raw.get("observedConfigGeneration"),
        )

    def to_object(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "instanceAddresses": list(self.instance_addresses),
            "observedGeneration": self.observed_generation,
            "observedConfigGeneration": self.observed_config_generation,
        }

    def merge(self, instances: InstanceSnapshot, artifact: ArtifactSnapshot) -> GroupStatus:
        return replace(
            self,
            state=instances.state,
            instance_addresses=instances.instance_addresses,
            observed_generation=instances.observed_generation,
            observed_config_generation=artifact.observed_config_generation,
        )


@dataclass(frozen=True)
class ProxyStatus:
    state: str = STATE_NOT_READY
    instance_addresses: tuple[str, ...] = ()
    observed_generation: int | None = None

    @classmethod
    def from_object(cls, raw: dict[str, Any] | None) -> ProxyStatus:
        raw = raw or {}
        return cls(
            state=raw.get("state") or STATE_NOT_READY,
            instance_addresses=tuple(sorted(set(raw.get("instanceAddresses") or []))),
            observed_generation=raw.get("observedGeneration"),
        )

    def to_object(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "instanceAddresses": list(self.instance_addresses),
            "observedGeneration": self.observed_generation,
        }

    def merge(self, instances: InstanceSnapshot) -> ProxyStatus:
        return replace(
            self,
            state=instances.state,
            instance_addresses=instances.instance_addresses,
            observed_generation=instances.observed_generation,
        )


def _owner_reference(kind: str, name: str, uid: str | None) -> list[dict[str, Any]]:
    if not uid:
        return []
    return [
        {
            "apiVersion": f"{settings.api_group}/{settings.api_version}",
            "kind": kind,
            "name": name,
            "uid": uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
    ]


@dataclass(frozen=True)
class ServerGroup:
    name: str
    namespace: str
    generation: int
    spec: GroupSpec
    status: GroupStatus = field(default_factory=GroupStatus)
    uid: str | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ServerGroup:
        meta = obj.get("metadata") or {}
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace") or settings.namespace,
            generation=int(meta.get("generation") or 0),
            spec=GroupSpec.model_validate(obj.get("spec") or {}),
            status=GroupStatus.from_object(obj.get("status")),
            uid=meta.get("uid"),
        )

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(KIND_GROUP, self.namespace, self.name)

    @property
    def active(self) -> bool:
        return self.status.state == STATE_READY

    def selector(self) -> dict[str, str]:
        return {LABEL_GROUP: self.name}

    def labels(self, index: int | None = None) -> dict[str, str]:
        out = {LABEL_GROUP: self.name}
        if index is not None:
            out[LABEL_INDEX] = str(index)
        return out

    def owner_references(self) -> list[dict[str, Any]]:
        return _owner_reference(KIND_GROUP, self.name, self.uid)

    def topology(self, status: GroupStatus | None = None) -> GroupTopology:
        st = status or self.status
        return GroupTopology(
            name=self.name,
            instance_addresses=list(st.instance_addresses),
            is_force=self.spec.force_recreate,
        )


@dataclass(frozen=True)
class Proxy:
    name: str
    namespace: str
    generation: int
    spec: ProxySpec
    status: ProxyStatus = field(default_factory=ProxyStatus)
    uid: str | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Proxy:
        meta = obj.get("metadata") or {}
        return cls(
            name=meta["name"],
            namespace=meta.get("namespace") or settings.namespace,
            generation=int(meta.get("generation") or 0),
            spec=ProxySpec.model_validate(obj.get("spec") or {}),
            status=ProxyStatus.from_object(obj.get("status")),
            uid=meta.get("uid"),
        )

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(KIND_PROXY, self.namespace, self.name)

    def selector(self) -> dict[str, str]:
        return {LABEL_PROXY: self.name}

    def labels(self, index: int | None = None) -> dict[str, str]:
        out = {LABEL_PROXY: self.name}
        if index is not None:
            out[LABEL_INDEX] = str(index)
        return out

    def owner_references(self) -> list[dict[str, Any]]:
        return _owner_reference(KIND_PROXY, self.name, self.uid)


@dataclass(frozen=True)
class Instance:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    phase: str | None = None
    address: str | None = None
    terminating: bool = False
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def index(self) -> int | None:
        raw = self.labels.get(LABEL_INDEX)
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None

    @property
    def serving(self) -> bool:
        return self.phase == "Running" and bool(self.address) and not self.terminating

    def stamped_other_than(self, key: str, value: str | None) -> bool:
        """True if the pod carries ``key`` with a value other than ``value``. Unstamped pods never match."""
        if value is None or key not in self.annotations:
            return False
        return self.annotations[key] != value


@dataclass(frozen=True)
class ConfigArtifact:
    name: str
    data: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    revision: str | None = None

    @property
    def engine_version(self) -> str | None:
        return self.annotations.get(ANNOTATION_ENGINE_VERSION)

    @property
    def group_generation(self) -> int | None:
        raw = self.annotations.get(ANNOTATION_GROUP_GENERATION)
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None


@dataclass(frozen=True)
class Endpoint:
    name: str
    ports: tuple[tuple[str, int], ...] = ()
    address: str | None = None
