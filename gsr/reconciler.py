from __future__ import annotations

import queue
import time
from enum import Enum
from threading import Thread, Timer
from typing import Any, Protocol

from .artifacts import ConfigArtifactManager
from .change import ChangeKind, detect_group, requires_teardown
from .db import log_event, prune_events
from .models import GroupSpec, GroupTopology, ProxySpec
from .notifications import NotificationHub
from .proxies import ProxyReconciler
from .resources import (
    KIND_GROUP,
    KIND_PROXY,
    LABEL_GROUP,
    LABEL_PROXY,
    Proxy,
    ResourceKey,
    ServerGroup,
)
from .runtime import RuntimeState
from .settings import settings
from .templates import TemplateSource
from .workloads import WorkloadSetReconciler


class Outcome(str, Enum):
    UPDATED = "updated"
    NO_CHANGE = "no-change"
    DELETED = "deleted"
    FAILED = "failed"


class Controller(Protocol):
    kind: str

    def keys(self, namespace: str) -> list[ResourceKey]: ...

    def reconcile(self, key: ResourceKey) -> Outcome: ...


class GroupController:
    """One reconcile pass for a ServerGroup.

    Order within a pass: drift check, optional teardown, config artifact,
    pods, then status. Status is computed from immutable snapshots and only
    persisted once everything before it succeeded, so a failed pass leaves
    the observed markers where they were and the next trigger starts over.
    """

    kind = KIND_GROUP

    def __init__(
        self,
        cluster: Any,
        hub: NotificationHub,
        artifacts: ConfigArtifactManager | None = None,
        workloads: WorkloadSetReconciler | None = None,
        source: TemplateSource | None = None,
    ):
        self.cluster = cluster
        self.hub = hub
        self.artifacts = artifacts or ConfigArtifactManager(cluster, source)
        self.workloads = workloads or WorkloadSetReconciler(cluster)

    def keys(self, namespace: str) -> list[ResourceKey]:
        return [g.key for g in self.cluster.list_groups(namespace)]

    def reconcile(self, key: ResourceKey) -> Outcome:
        try:
            group = self.cluster.get_group(key.namespace, key.name)
            if group is None:
                self.cleanup(key)
                return Outcome.DELETED
            return self._reconcile(group)
        except Exception as e:
            log_event("ERROR", f"Reconcile failed: {type(e).__name__}: {e}", group_name=key.name, kind=self.kind)
            return Outcome.FAILED

    def _reconcile(self, group: ServerGroup) -> Outcome:
        artifact = self.artifacts.get_artifact(group)
        change = detect_group(group, artifact)
        if change is not ChangeKind.NO_CHANGE:
            log_event(
                "INFO",
                f"{change.value}: generation {group.status.observed_generation} -> {group.generation}",
                group_name=group.name,
                kind=self.kind,
            )

        if requires_teardown(change, group, artifact):
            log_event(
                "INFO",
                f"Tearing down for engine {artifact.engine_version} -> {group.spec.engine_version}",
                group_name=group.name,
                kind=self.kind,
            )
            if not self._teardown(group):
                return Outcome.FAILED

        # Pods mount the artifact, so it must exist before any of them is created.
        self.artifacts.sync(group)
        observed = self.artifacts.update_status(group)
        # Pods stamped with another artifact revision are replaced, which is
        # also how an edited artifact reaches running instances.
        revision = observed.observed_config_generation
        self.workloads.sync(group, revision=revision)

        instances = self.workloads.update_status(group, revision)
        if instances.stale_instances:
            log_event(
                "ERROR",
                f"Pods {list(instances.stale_instances)} still run an older config revision, retrying",
                group_name=group.name,
                kind=self.kind,
            )
            return Outcome.FAILED

        status = group.status.merge(instances, observed)
        if status == group.status:
            return Outcome.NO_CHANGE

        self.cluster.patch_group_status(group.namespace, group.name, status.to_object())
        log_event(
            "INFO",
            f"Status {status.state}, {len(status.instance_addresses)} running instance(s)",
            group_name=group.name,
            kind=self.kind,
        )
        self.hub.publish_change(group.topology(status))
        return Outcome.UPDATED

    def _teardown(self, group: ServerGroup) -> bool:
        """Delete pods, then the artifact. False if anything stale is left behind.

        The artifact outlives any pod that failed to delete, so the next pass
        still sees the old engine version and tears down again.
        """
        self.workloads.delete(group)
        leftover_pods = [p.name for p in self.workloads.instances(group) if not p.terminating]
        if leftover_pods:
            log_event("ERROR", f"Teardown incomplete (pods {leftover_pods}), keeping artifact, retrying", group_name=group.name, kind=self.kind)
            return False
        self.artifacts.delete(group)
        leftover_artifact = self.artifacts.get_artifact(group)
        if leftover_artifact is not None:
            log_event("ERROR", f"Teardown incomplete (artifact {leftover_artifact.name}), retrying", group_name=group.name, kind=self.kind)
            return False
        return True

    def cleanup(self, key: ResourceKey) -> None:
        """The group is gone: remove what it owned and tell subscribers."""
        stub = ServerGroup(name=key.name, namespace=key.namespace, generation=0, spec=GroupSpec())
        if not self.workloads.instances(stub) and self.artifacts.get_artifact(stub) is None:
            return
        log_event("INFO", "Group deleted, removing instances and config artifact", group_name=key.name, kind=self.kind)
        self.workloads.delete(stub)
        self.artifacts.delete(stub)
        self.hub.publish_change(GroupTopology(name=key.name))


class ProxyController:
    kind = KIND_PROXY

    def __init__(self, cluster: Any, proxies: ProxyReconciler | None = None):
        self.cluster = cluster
        self.proxies = proxies or ProxyReconciler(cluster)

    def keys(self, namespace: str) -> list[ResourceKey]:
        return [p.key for p in self.cluster.list_proxies(namespace)]

    def reconcile(self, key: ResourceKey) -> Outcome:
        try:
            proxy = self.cluster.get_proxy(key.namespace, key.name)
            if proxy is None:
                self.cleanup(key)
                return Outcome.DELETED
            self.proxies.sync(proxy)
            instances = self.proxies.update_status(proxy)
            if instances.stale_instances:
                log_event(
                    "ERROR",
                    f"Pods {list(instances.stale_instances)} predate generation {proxy.generation}, retrying",
                    group_name=proxy.name,
                    kind=self.kind,
                )
                return Outcome.FAILED
            status = proxy.status.merge(instances)
            if status == proxy.status:
                return Outcome.NO_CHANGE
            self.cluster.patch_proxy_status(proxy.namespace, proxy.name, status.to_object())
            log_event(
                "INFO",
                f"Status {status.state}, {len(status.instance_addresses)} running instance(s)",
                group_name=proxy.name,
                kind=self.kind,
            )
            return Outcome.UPDATED
        except Exception as e:
            log_event("ERROR", f"Reconcile failed: {type(e).__name__}: {e}", group_name=key.name, kind=self.kind)
            return Outcome.FAILED

    def cleanup(self, key: ResourceKey) -> None:
        stub = Proxy(name=key.name, namespace=key.namespace, generation=0, spec=ProxySpec())
        if not self.proxies.pods.instances(stub) and self.cluster.get_endpoint(key.namespace, key.name) is None:
            return
        log_event("INFO", "Proxy deleted, removing pods and service", group_name=key.name, kind=self.kind)
        self.proxies.delete(stub)


class Dispatcher:
    """Feeds resource keys to controllers.

    Triggers come from watch streams (custom resources and their pods) and a
    periodic resync. Worker threads drain one shared queue; ``RuntimeState``
    keeps each key to a single in-flight reconcile. ``drain()`` runs the same
    path synchronously and is what tests use instead of the threads.
    """

    def __init__(
        self,
        cluster: Any,
        controllers: list[Controller],
        namespace: str | None = None,
        workers: int | None = None,
        runtime: RuntimeState | None = None,
    ):
        self.cluster = cluster
        self.controllers = {c.kind: c for c in controllers}
        self.namespace = namespace or settings.namespace
        self.workers = max(1, int(workers or settings.workers))
        self.runtime = runtime or RuntimeState()
        self._queue: queue.Queue[ResourceKey] = queue.Queue()
        self._stop = False
        self._threads: list[Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads) and not self._stop

    def enqueue(self, key: ResourceKey) -> None:
        if key.kind not in self.controllers:
            return
        if self.runtime.offer(key):
            self._queue.put(key)

    def resync(self) -> int:
        """Enqueue every known resource. Returns the number of keys offered."""
        n = 0
        for ctrl in self.controllers.values():
            for key in ctrl.keys(self.namespace):
                self.enqueue(key)
                n += 1
        return n

    def drain(self, max_runs: int = 1000) -> int:
        """Process queued keys on the calling thread until the queue is empty."""
        runs = 0
        while runs < max_runs:
            try:
                key = self._queue.get_nowait()
            except queue.Empty:
                break
            self._process(key)
            runs += 1
        return runs

    def _process(self, key: ResourceKey) -> Outcome | None:
        if not self.runtime.claim(key):
            return None
        outcome = Outcome.FAILED
        try:
            outcome = self.controllers[key.kind].reconcile(key)
        finally:
            failed = outcome is Outcome.FAILED
            if self.runtime.release(key, outcome.value, failed):
                self._queue.put(key)
            if failed and self.running:
                self._schedule_retry(key)
            if outcome is Outcome.DELETED:
                self.runtime.forget(key)
        return outcome

    def _schedule_retry(self, key: ResourceKey) -> None:
        t = Timer(max(1, settings.retry_delay_s), self.enqueue, args=(key,))
        t.daemon = True
        t.start()

    # -- threads ------------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._stop = False
        self._threads = [Thread(target=self._worker, name=f"gsr-worker-{i}", daemon=True) for i in range(self.workers)]
        self._threads.append(Thread(target=self._resync_loop, name="gsr-resync", daemon=True))
        for kind in list(self.controllers) + ["Pod"]:
            self._threads.append(Thread(target=self._watch_loop, args=(kind,), name=f"gsr-watch-{kind}", daemon=True))
        for t in self._threads:
            t.start()
        log_event("INFO", f"Dispatcher started: {self.workers} worker(s), namespace '{self.namespace}'")

    def stop(self) -> None:
        self._stop = True

    def _worker(self) -> None:
        while not self._stop:
            try:
                key = self._queue.get(timeout=1)
            except queue.Empty:
                continue
            self._process(key)

    def _resync_loop(self) -> None:
        while not self._stop:
            try:
                self.resync()
                prune_events(settings.event_retention)
            except Exception as e:
                log_event("ERROR", f"Resync failed: {type(e).__name__}: {e}")
            time.sleep(max(1, settings.resync_interval_s))

    def _watch_loop(self, kind: str) -> None:
        while not self._stop:
            try:
                for ev in self.cluster.watch(kind, self.namespace, settings.watch_timeout_s):
                    if self._stop:
                        return
                    self.on_event(kind, ev)
            except Exception as e:
                log_event("WARN", f"Watch on {kind} ended: {type(e).__name__}: {e}")
                time.sleep(max(1, settings.retry_delay_s))

    def on_event(self, kind: str, ev: Any) -> None:
        """Map a watch event onto the key of the resource that owns it."""
        if kind != "Pod":
            self.enqueue(ResourceKey(kind, self.namespace, ev.name))
            return
        # Pod changes are folded into a trigger for the parent resource.
        if LABEL_GROUP in ev.labels:
            self.enqueue(ResourceKey(KIND_GROUP, self.namespace, ev.labels[LABEL_GROUP]))
        elif LABEL_PROXY in ev.labels:
            self.enqueue(ResourceKey(KIND_PROXY, self.namespace, ev.labels[LABEL_PROXY]))
