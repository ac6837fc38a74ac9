from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from .cluster import ClusterError
from .db import log_event
from .resources import (
    ANNOTATION_CONFIG_REVISION,
    KIND_GROUP,
    Instance,
    InstanceSnapshot,
    ServerGroup,
    artifact_name,
    instance_name,
)
from .settings import settings

# configMap volumes are read-only symlink trees; the engine wants a writable
# /data, so the files are copied once before it starts.
SEED_CONFIG_SCRIPT = (
    "set -e; mkdir -p /data/config; "
    "cp -L /config-template/server.properties /config-template/spigot.yml /data/; "
    "cp -L /config-template/paper-global.yml /config-template/paper-world-defaults.yml /data/config/"
)


@dataclass(frozen=True)
class ScalePlan:
    create: list[int] = field(default_factory=list)
    delete: list[Instance] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.create and not self.delete


def _deletion_order(inst: Instance) -> tuple[bool, int]:
    # Unindexed strays first, then highest index downward.
    return (inst.index is not None, -(inst.index or 0))


def plan_scale(
    existing: list[Instance],
    desired: int,
    name_for: Callable[[int], str],
    is_stale: Callable[[Instance], bool] | None = None,
) -> ScalePlan:
    """Diff live pods against ``[0, desired)``.

    Missing indices are created lowest first; pods outside the range are
    deleted highest index first. Pods for which ``is_stale`` is true are
    deleted even when in range; their names stay occupied until the delete
    has gone through. Pods already being deleted keep their name occupied
    and are not deleted again.
    """
    desired = max(0, int(desired))
    wanted = {name_for(i): i for i in range(desired)}
    present = {inst.name for inst in existing}
    stale = is_stale or (lambda inst: False)

    create = [i for i in range(desired) if name_for(i) not in present]
    delete = sorted(
        (inst for inst in existing if not inst.terminating and (inst.name not in wanted or stale(inst))),
        key=_deletion_order,
    )
    return ScalePlan(create=create, delete=delete)


class PodSet:
    """Index-addressed set of pods owned by one custom resource.

    Every pod is stamped with ``stamp_key`` at creation. A pod whose stamp
    differs from the value passed to ``sync`` was built from an older
    template and gets replaced.
    """

    kind = ""
    stamp_key = ""

    def __init__(self, cluster: Any):
        self.cluster = cluster

    def manifest(self, owner: Any, index: int, stamp: str | None = None) -> dict[str, Any]:
        raise NotImplementedError

    def annotations(self, stamp: str | None) -> dict[str, str]:
        return {self.stamp_key: stamp} if stamp is not None else {}

    def instances(self, owner: Any) -> list[Instance]:
        return self.cluster.list_instances(owner.namespace, owner.selector())

    def _plan(self, owner: Any, existing: list[Instance], desired: int, stamp: str | None) -> ScalePlan:
        return plan_scale(
            existing,
            desired,
            lambda i: instance_name(owner.name, i),
            lambda inst: inst.stamped_other_than(self.stamp_key, stamp),
        )

    def sync(self, owner: Any, desired: int, stamp: str | None = None) -> bool:
        """Create/delete pods until exactly ``desired`` current ones exist. Returns True if anything changed."""
        existing = self.instances(owner)
        plan = self._plan(owner, existing, desired, stamp)
        if plan.empty:
            return False

        log_event(
            "INFO",
            f"Scaling: current {len(existing)}, desired {desired} (create {plan.create}, delete {[p.name for p in plan.delete]})",
            group_name=owner.name,
            kind=self.kind,
        )
        changed = False
        for inst in plan.delete:
            try:
                self.cluster.delete_instance(owner.namespace, inst.name)
                changed = True
                log_event("INFO", f"Deleted pod {inst.name}", group_name=owner.name, kind=self.kind)
            except ClusterError as e:
                log_event("ERROR", f"Deleting pod {inst.name} failed, retrying next cycle: {e}", group_name=owner.name, kind=self.kind)

        if plan.delete:
            # Pods that are fully gone free their names now; terminating ones wait for the next pass.
            plan = self._plan(owner, self.instances(owner), desired, stamp)

        for index in plan.create:
            name = instance_name(owner.name, index)
            try:
                self.cluster.create_instance(owner.namespace, self.manifest(owner, index, stamp))
                changed = True
                log_event("INFO", f"Created pod {name}", group_name=owner.name, kind=self.kind)
            except ClusterError as e:
                log_event("ERROR", f"Creating pod {name} failed, retrying next cycle: {e}", group_name=owner.name, kind=self.kind)
        return changed

    def delete(self, owner: Any) -> None:
        try:
            pods = self.instances(owner)
        except ClusterError as e:
            log_event("ERROR", f"Listing pods for teardown failed: {e}", group_name=owner.name, kind=self.kind)
            return
        for inst in pods:
            if inst.terminating:
                continue
            try:
                self.cluster.delete_instance(owner.namespace, inst.name)
                log_event("INFO", f"Deleted pod {inst.name}", group_name=owner.name, kind=self.kind)
            except ClusterError as e:
                log_event("ERROR", f"Deleting pod {inst.name} failed: {e}", group_name=owner.name, kind=self.kind)

    def snapshot(self, owner: Any, stamp: str | None = None) -> InstanceSnapshot:
        pods = self.instances(owner)
        addresses = sorted({inst.address for inst in pods if inst.serving})
        stale = sorted(p.name for p in pods if not p.terminating and p.stamped_other_than(self.stamp_key, stamp))
        return InstanceSnapshot(
            instance_addresses=tuple(addresses),
            observed_generation=owner.generation,
            stale_instances=tuple(stale),
        )


class WorkloadSetReconciler(PodSet):
    """Engine pods of a server group, stamped with the artifact revision they mount."""

    kind = KIND_GROUP
    stamp_key = ANNOTATION_CONFIG_REVISION

    def sync(self, group: ServerGroup, desired: int | None = None, revision: str | None = None) -> bool:
        return super().sync(group, group.spec.replicas if desired is None else desired, revision)

    def update_status(self, group: ServerGroup, revision: str | None = None) -> InstanceSnapshot:
        return self.snapshot(group, revision)

    def manifest(self, group: ServerGroup, index: int, stamp: str | None = None) -> dict[str, Any]:
        spec = group.spec
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": instance_name(group.name, index),
                "namespace": group.namespace,
                "labels": group.labels(index),
                "annotations": self.annotations(stamp),
                "ownerReferences": group.owner_references(),
            },
            "spec": {
                "restartPolicy": "Always",
                "initContainers": [
                    {
                        "name": "seed-config",
                        "image": settings.init_image,
                        "command": ["sh", "-c", SEED_CONFIG_SCRIPT],
                        "volumeMounts": [
                            {"name": "data", "mountPath": "/data"},
                            {"name": "config-template", "mountPath": "/config-template", "readOnly": True},
                        ],
                    }
                ],
                "containers": [
                    {
                        "name": "engine",
                        "image": settings.server_image,
                        "env": [
                            {"name": "TYPE", "value": "PAPER"},
                            {"name": "EULA", "value": str(spec.eula).upper()},
                            {"name": "ONLINE_MODE", "value": "FALSE"},
                            {"name": "VERSION", "value": spec.engine_version},
                        ],
                        "ports": [{"name": "game", "containerPort": settings.server_port}],
                        "volumeMounts": [{"name": "data", "mountPath": "/data"}],
                        "resources": spec.resources.to_manifest(),
                    }
                ],
                "volumes": [
                    {"name": "data", "emptyDir": {}},
                    {"name": "config-template", "configMap": {"name": artifact_name(group.name)}},
                ],
            },
        }
