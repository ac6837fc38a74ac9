from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterator

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from .db import log_event
from .resources import (
    KIND_GROUP,
    KIND_PROXY,
    ConfigArtifact,
    Endpoint,
    Instance,
    Proxy,
    ServerGroup,
)
from .settings import settings

# RFC 1123 label; pod names append "-<index>" so leave room for it.
RESOURCE_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,50}[a-z0-9])?$")


def validate_resource_name(name: str) -> None:
    if not RESOURCE_NAME_RE.match(name):
        raise ValueError(
            "Invalid resource name. Use lowercase letters/numbers and hyphen, start and end alphanumeric (max 52 chars)."
        )


class ClusterError(Exception):
    """A Kubernetes API call failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class WatchEvent:
    type: str  # ADDED|MODIFIED|DELETED
    name: str
    labels: dict[str, str] = field(default_factory=dict)


def selector_string(selector: dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def _error(action: str, e: ApiException) -> ClusterError:
    return ClusterError(f"{action} failed: HTTP {e.status} {e.reason}", status=e.status)


def load_client_config() -> None:
    try:
        config.load_incluster_config()
        log_event("INFO", "Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        log_event("INFO", "Loaded local Kubernetes config")


class KubernetesCluster:
    """Thin adapter over the Kubernetes API used by the reconcilers.

    Everything returned is converted to the small records in ``resources`` so
    the reconcilers never touch client models directly.
    """

    def __init__(self, api_client: client.ApiClient | None = None):
        self.core = client.CoreV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)

    # -- custom resources -------------------------------------------------

    def _crd_args(self, kind: str) -> dict[str, str]:
        plural = settings.group_plural if kind == KIND_GROUP else settings.proxy_plural
        return {"group": settings.api_group, "version": settings.api_version, "plural": plural}

    def _list_custom(self, kind: str, namespace: str) -> list[dict[str, Any]]:
        try:
            res = self.custom.list_namespaced_custom_object(namespace=namespace, **self._crd_args(kind))
        except ApiException as e:
            raise _error(f"list {kind}", e) from e
        return list(res.get("items") or [])

    def _get_custom(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            return self.custom.get_namespaced_custom_object(namespace=namespace, name=name, **self._crd_args(kind))
        except ApiException as e:
            if e.status == 404:
                return None
            raise _error(f"get {kind} {name}", e) from e

    def _patch_status(self, kind: str, namespace: str, name: str, status: dict[str, Any]) -> None:
        try:
            self.custom.patch_namespaced_custom_object_status(
                namespace=namespace,
                name=name,
                body={"status": status},
                **self._crd_args(kind),
            )
        except ApiException as e:
            raise _error(f"patch {kind} status {name}", e) from e

    def _parse_all(self, kind: str, items: list[dict[str, Any]], parse: Any) -> list[Any]:
        out = []
        for o in items:
            try:
                out.append(parse(o))
            except ValidationError as e:
                name = (o.get("metadata") or {}).get("name")
                log_event("ERROR", f"Invalid spec, skipped: {e.error_count()} error(s)", group_name=name, kind=kind)
        return out

    def list_groups(self, namespace: str) -> list[ServerGroup]:
        return self._parse_all(KIND_GROUP, self._list_custom(KIND_GROUP, namespace), ServerGroup.from_object)

    def get_group(self, namespace: str, name: str) -> ServerGroup | None:
        obj = self._get_custom(KIND_GROUP, namespace, name)
        return ServerGroup.from_object(obj) if obj else None

    def patch_group_status(self, namespace: str, name: str, status: dict[str, Any]) -> None:
        self._patch_status(KIND_GROUP, namespace, name, status)

    def list_proxies(self, namespace: str) -> list[Proxy]:
        return self._parse_all(KIND_PROXY, self._list_custom(KIND_PROXY, namespace), Proxy.from_object)

    def get_proxy(self, namespace: str, name: str) -> Proxy | None:
        obj = self._get_custom(KIND_PROXY, namespace, name)
        return Proxy.from_object(obj) if obj else None

    def patch_proxy_status(self, namespace: str, name: str, status: dict[str, Any]) -> None:
        self._patch_status(KIND_PROXY, namespace, name, status)

    # -- pods -------------------------------------------------------------

    def list_instances(self, namespace: str, selector: dict[str, str]) -> list[Instance]:
        try:
            pods = self.core.list_namespaced_pod(namespace=namespace, label_selector=selector_string(selector))
        except ApiException as e:
            raise _error("list pods", e) from e
        out: list[Instance] = []
        for p in pods.items:
            out.append(
                Instance(
                    name=p.metadata.name,
                    labels=dict(p.metadata.labels or {}),
                    phase=p.status.phase if p.status else None,
                    address=p.status.pod_ip if p.status else None,
                    terminating=p.metadata.deletion_timestamp is not None,
                    annotations=dict(p.metadata.annotations or {}),
                )
            )
        return out

    def create_instance(self, namespace: str, manifest: dict[str, Any]) -> None:
        try:
            self.core.create_namespaced_pod(namespace=namespace, body=manifest)
        except ApiException as e:
            raise _error(f"create pod {manifest['metadata']['name']}", e) from e

    def delete_instance(self, namespace: str, name: str) -> None:
        try:
            self.core.delete_namespaced_pod(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return
            raise _error(f"delete pod {name}", e) from e

    # -- config maps ------------------------------------------------------

    def list_artifacts(self, namespace: str, selector: dict[str, str]) -> list[ConfigArtifact]:
        try:
            cms = self.core.list_namespaced_config_map(namespace=namespace, label_selector=selector_string(selector))
        except ApiException as e:
            raise _error("list configmaps", e) from e
        return [
            ConfigArtifact(
                name=cm.metadata.name,
                data=dict(cm.data or {}),
                labels=dict(cm.metadata.labels or {}),
                annotations=dict(cm.metadata.annotations or {}),
                revision=cm.metadata.resource_version,
            )
            for cm in cms.items
        ]

    def create_artifact(self, namespace: str, manifest: dict[str, Any]) -> None:
        try:
            self.core.create_namespaced_config_map(namespace=namespace, body=manifest)
        except ApiException as e:
            raise _error(f"create configmap {manifest['metadata']['name']}", e) from e

    def delete_artifact(self, namespace: str, name: str) -> None:
        try:
            self.core.delete_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return
            raise _error(f"delete configmap {name}", e) from e

    # -- services ---------------------------------------------------------

    def get_endpoint(self, namespace: str, name: str) -> Endpoint | None:
        try:
            svc = self.core.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _error(f"get service {name}", e) from e
        ports = tuple((p.protocol, p.port) for p in (svc.spec.ports or []))
        return Endpoint(name=svc.metadata.name, ports=ports, address=svc.spec.cluster_ip)

    def create_endpoint(self, namespace: str, manifest: dict[str, Any]) -> None:
        try:
            self.core.create_namespaced_service(namespace=namespace, body=manifest)
        except ApiException as e:
            raise _error(f"create service {manifest['metadata']['name']}", e) from e

    def update_endpoint_ports(self, namespace: str, name: str, ports: list[dict[str, Any]]) -> None:
        # JSON patch replaces the whole list; strategic merge keys ports by number.
        body = [{"op": "replace", "path": "/spec/ports", "value": ports}]
        try:
            self.core.patch_namespaced_service(name=name, namespace=namespace, body=body)
        except ApiException as e:
            raise _error(f"update service {name}", e) from e

    def delete_endpoint(self, namespace: str, name: str) -> None:
        try:
            self.core.delete_namespaced_service(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return
            raise _error(f"delete service {name}", e) from e

    # -- watches ----------------------------------------------------------

    def watch(self, kind: str, namespace: str, timeout_s: int) -> Iterator[WatchEvent]:
        """Stream change events for custom resources (``kind``) or pods (``"Pod"``).

        The stream ends after ``timeout_s``; callers loop and re-list.
        """
        w = watch.Watch()
        if kind == "Pod":
            stream = w.stream(self.core.list_namespaced_pod, namespace=namespace, timeout_seconds=timeout_s)
        else:
            stream = w.stream(
                self.custom.list_namespaced_custom_object,
                namespace=namespace,
                timeout_seconds=timeout_s,
                **self._crd_args(kind),
            )
        try:
            for ev in stream:
                obj = ev["object"]
                if isinstance(obj, dict):
                    meta = obj.get("metadata") or {}
                    yield WatchEvent(type=ev["type"], name=meta.get("name", ""), labels=dict(meta.get("labels") or {}))
                else:
                    yield WatchEvent(type=ev["type"], name=obj.metadata.name, labels=dict(obj.metadata.labels or {}))
        except ApiException as e:
            raise _error(f"watch {kind}", e) from e
        finally:
            w.stop()
