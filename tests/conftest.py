import copy
import dataclasses
import itertools
import os
import sys

import pytest

# Ensure project root is importable (so `import cli` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

import gsr.db as gsr_db  # noqa: E402
from gsr.cluster import ClusterError  # noqa: E402
from gsr.notifications import SubscriberClosed  # noqa: E402
from gsr.resources import ConfigArtifact, Endpoint, Instance, Proxy, ServerGroup  # noqa: E402
from gsr.templates import PAPER_GLOBAL_YML, PAPER_WORLD_DEFAULTS_YML, SPIGOT_YML  # noqa: E402

NS = "default"

PAPER_GLOBAL = """\
proxies:
  bungee-cord:
    online-mode: true
  velocity:
    enabled: false
    online-mode: true
    secret: ''
chunk-loading-basic:
  player-max-chunk-load-rate: 100.0
"""


@pytest.fixture(autouse=True)
def event_db(tmp_path, monkeypatch):
    """Isolated sqlite event log per test."""
    monkeypatch.setattr(gsr_db, "settings", dataclasses.replace(gsr_db.settings, db_path=str(tmp_path / "events.db")))
    gsr_db.init_db()
    return gsr_db


def _matches(labels, selector):
    return all(labels.get(k) == v for k, v in selector.items())


class FakeCluster:
    """In-memory stand-in for KubernetesCluster.

    Generation moves on every spec change, like a CRD with a status
    subresource. Pods start Running with an address unless ``auto_run`` is
    off. ``fail(method, times)`` makes the next calls of a method raise.
    """

    def __init__(self, auto_run=True, graceful_delete=False):
        self.auto_run = auto_run
        self.graceful_delete = graceful_delete
        self.groups = {}
        self.proxies = {}
        self.pods = {}
        self.artifacts = {}
        self.endpoints = {}
        self.calls = []
        self._failures = {}
        self._uid = itertools.count(1)
        self._rv = itertools.count(100)
        self._ip = itertools.count(2)

    # -- test helpers -------------------------------------------------------

    def fail(self, method, times=1, status=500):
        self._failures[method] = [times, status]

    def _maybe_fail(self, method, name=None):
        entry = self._failures.get(method)
        if entry and entry[0] > 0:
            entry[0] -= 1
            raise ClusterError(f"{method} {name} failed: HTTP {entry[1]} injected", status=entry[1])

    def _record(self, method, name):
        self.calls.append((method, name))

    @property
    def mutations(self):
        return [c for c in self.calls if not c[0].startswith(("list", "get"))]

    def _apply(self, store, name, spec, namespace):
        key = (namespace, name)
        obj = store.get(key)
        if obj is None:
            store[key] = {
                "metadata": {"name": name, "namespace": namespace, "generation": 1, "uid": f"uid-{next(self._uid)}"},
                "spec": copy.deepcopy(spec),
                "status": {},
            }
        elif obj["spec"] != spec:
            obj["spec"] = copy.deepcopy(spec)
            obj["metadata"]["generation"] += 1

    def apply_group(self, name, spec=None, namespace=NS):
        self._apply(self.groups, name, spec or {}, namespace)

    def apply_proxy(self, name, spec=None, namespace=NS):
        self._apply(self.proxies, name, spec or {}, namespace)

    def set_group_status(self, name, status, namespace=NS):
        self.groups[(namespace, name)]["status"] = copy.deepcopy(status)

    def remove_group(self, name, namespace=NS):
        self.groups.pop((namespace, name), None)

    def remove_proxy(self, name, namespace=NS):
        self.proxies.pop((namespace, name), None)

    def run_pods(self):
        for pod in self.pods.values():
            if not pod["terminating"]:
                pod["phase"] = "Running"
                pod["address"] = pod["address"] or f"10.0.0.{next(self._ip)}"

    def finish_termination(self):
        self.pods = {k: p for k, p in self.pods.items() if not p["terminating"]}

    def edit_artifact(self, name, data, namespace=NS):
        art = self.artifacts[(namespace, name)]
        self.artifacts[(namespace, name)] = dataclasses.replace(
            art, data={**art.data, **data}, revision=str(next(self._rv))
        )

    def annotate_pod(self, pod_name, annotations, namespace=NS):
        meta = self.pods[(namespace, pod_name)]["manifest"]["metadata"]
        meta["annotations"] = {**(meta.get("annotations") or {}), **annotations}

    def pod_names(self, namespace=NS):
        return sorted(n for (ns, n), p in self.pods.items() if ns == namespace and not p["terminating"])

    def env_of(self, pod_name, container=0, namespace=NS):
        c = self.pods[(namespace, pod_name)]["manifest"]["spec"]["containers"][container]
        return {e["name"]: e["value"] for e in c.get("env", [])}

    # -- custom resources ---------------------------------------------------

    def list_groups(self, namespace):
        self._record("list_groups", namespace)
        self._maybe_fail("list_groups")
        return [ServerGroup.from_object(copy.deepcopy(o)) for (ns, _), o in sorted(self.groups.items()) if ns == namespace]

    def get_group(self, namespace, name):
        self._record("get_group", name)
        self._maybe_fail("get_group", name)
        obj = self.groups.get((namespace, name))
        return ServerGroup.from_object(copy.deepcopy(obj)) if obj else None

    def patch_group_status(self, namespace, name, status):
        self._record("patch_group_status", name)
        self._maybe_fail("patch_group_status", name)
        self.groups[(namespace, name)]["status"] = copy.deepcopy(status)

    def list_proxies(self, namespace):
        self._record("list_proxies", namespace)
        return [Proxy.from_object(copy.deepcopy(o)) for (ns, _), o in sorted(self.proxies.items()) if ns == namespace]

    def get_proxy(self, namespace, name):
        self._record("get_proxy", name)
        self._maybe_fail("get_proxy", name)
        obj = self.proxies.get((namespace, name))
        return Proxy.from_object(copy.deepcopy(obj)) if obj else None

    def patch_proxy_status(self, namespace, name, status):
        self._record("patch_proxy_status", name)
        self._maybe_fail("patch_proxy_status", name)
        self.proxies[(namespace, name)]["status"] = copy.deepcopy(status)

    # -- pods ---------------------------------------------------------------

    def list_instances(self, namespace, selector):
        self._record("list_instances", namespace)
        self._maybe_fail("list_instances")
        return [
            Instance(
                name=name,
                labels=dict(p["manifest"]["metadata"]["labels"]),
                phase=p["phase"],
                address=p["address"],
                terminating=p["terminating"],
                annotations=dict(p["manifest"]["metadata"].get("annotations") or {}),
            )
            for (ns, name), p in sorted(self.pods.items())
            if ns == namespace and _matches(p["manifest"]["metadata"]["labels"], selector)
        ]

    def create_instance(self, namespace, manifest):
        name = manifest["metadata"]["name"]
        self._maybe_fail("create_instance", name)
        if (namespace, name) in self.pods:
            raise ClusterError(f"create pod {name} failed: HTTP 409 AlreadyExists", status=409)
        self._record("create_instance", name)
        self.pods[(namespace, name)] = {
            "manifest": copy.deepcopy(manifest),
            "phase": "Running" if self.auto_run else "Pending",
            "address": f"10.0.0.{next(self._ip)}" if self.auto_run else None,
            "terminating": False,
        }

    def delete_instance(self, namespace, name):
        self._maybe_fail("delete_instance", name)
        self._record("delete_instance", name)
        if self.graceful_delete and (namespace, name) in self.pods:
            self.pods[(namespace, name)]["terminating"] = True
        else:
            self.pods.pop((namespace, name), None)

    # -- config maps --------------------------------------------------------

    def list_artifacts(self, namespace, selector):
        self._record("list_artifacts", namespace)
        self._maybe_fail("list_artifacts")
        return [a for (ns, _), a in sorted(self.artifacts.items()) if ns == namespace and _matches(a.labels, selector)]

    def create_artifact(self, namespace, manifest):
        meta = manifest["metadata"]
        self._maybe_fail("create_artifact", meta["name"])
        if (namespace, meta["name"]) in self.artifacts:
            raise ClusterError(f"create configmap {meta['name']} failed: HTTP 409 AlreadyExists", status=409)
        self._record("create_artifact", meta["name"])
        self.artifacts[(namespace, meta["name"])] = ConfigArtifact(
            name=meta["name"],
            data=dict(manifest["data"]),
            labels=dict(meta["labels"]),
            annotations=dict(meta["annotations"]),
            revision=str(next(self._rv)),
        )

    def delete_artifact(self, namespace, name):
        self._maybe_fail("delete_artifact", name)
        self._record("delete_artifact", name)
        self.artifacts.pop((namespace, name), None)

    # -- services -----------------------------------------------------------

    def get_endpoint(self, namespace, name):
        self._record("get_endpoint", name)
        svc = self.endpoints.get((namespace, name))
        if svc is None:
            return None
        ports = tuple((p["protocol"], p["port"]) for p in svc["spec"]["ports"])
        return Endpoint(name=name, ports=ports)

    def create_endpoint(self, namespace, manifest):
        name = manifest["metadata"]["name"]
        self._maybe_fail("create_endpoint", name)
        self._record("create_endpoint", name)
        self.endpoints[(namespace, name)] = copy.deepcopy(manifest)

    def update_endpoint_ports(self, namespace, name, ports):
        self._maybe_fail("update_endpoint_ports", name)
        self._record("update_endpoint_ports", name)
        self.endpoints[(namespace, name)]["spec"]["ports"] = copy.deepcopy(ports)

    def delete_endpoint(self, namespace, name):
        self._maybe_fail("delete_endpoint", name)
        self._record("delete_endpoint", name)
        self.endpoints.pop((namespace, name), None)

    def watch(self, kind, namespace, timeout_s):
        return iter(())


class RecordingChannel:
    """Subscriber that keeps every event it is sent."""

    def __init__(self, name="rec"):
        self.id = name
        self.events = []
        self.closed = False
        self._callbacks = []

    def send(self, event, payload):
        if self.closed:
            raise SubscriberClosed(f"subscriber {self.id} is closed")
        self.events.append((event, payload))

    def take(self):
        out, self.events = self.events, []
        return out

    def on_close(self, callback):
        if self.closed:
            callback()
        else:
            self._callbacks.append(callback)

    def close(self):
        if self.closed:
            return
        self.closed = True
        for cb in self._callbacks:
            cb()


class FakeTemplateSource:
    """Serves canned templates; files listed in ``missing`` come back empty."""

    def __init__(self, missing=()):
        self.missing = set(missing)
        self.fetched = []

    def fetch(self, version, filename):
        self.fetched.append((version, filename))
        if filename in self.missing:
            return ""
        if filename == PAPER_GLOBAL_YML:
            return PAPER_GLOBAL
        if filename == SPIGOT_YML:
            return f"# spigot {version}\nsettings:\n  bungeecord: false\n"
        if filename == PAPER_WORLD_DEFAULTS_YML:
            return f"# paper world defaults {version}\n"
        return ""


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def source():
    return FakeTemplateSource()
