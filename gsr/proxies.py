from __future__ import annotations

from typing import Any

from .cluster import ClusterError
from .db import log_event
from .resources import ANNOTATION_OWNER_GENERATION, KIND_PROXY, InstanceSnapshot, Proxy, instance_name
from .settings import settings
from .workloads import PodSet

CONNECT_PATH = "/api/v1/groups/connect"

JAVA_OPTS = (
    "-XX:+UseG1GC -XX:G1HeapRegionSize=4M -XX:+UnlockExperimentalVMOptions "
    "-XX:+ParallelRefProcEnabled -XX:+AlwaysPreTouch -XX:MaxInlineLevel=15"
)


def _flag(value: bool) -> str:
    return "true" if value else "false"


class ProxyPodSet(PodSet):
    kind = KIND_PROXY
    stamp_key = ANNOTATION_OWNER_GENERATION

    def manifest(self, proxy: Proxy, index: int, stamp: str | None = None) -> dict[str, Any]:
        spec = proxy.spec
        env = {
            "BIND": f"0.0.0.0:{spec.port}",
            "MOTD": spec.motd,
            "SHOW_MAX_PLAYERS": str(spec.show_max_players),
            "ONLINE_MODE": _flag(spec.online_mode),
            "FORCE_KEY_AUTHENTICATION": _flag(spec.force_key_authentication),
            "PLAYER_INFO_FORWARDING_MODE": spec.player_info_forwarding_mode,
            "VELOCITY_FORWARDING_SECRET": spec.effective_secret(),
            "COMPRESSION_THRESHOLD": str(spec.compression_threshold),
            "CONNECTION_TIMEOUT": str(spec.connection_timeout),
            "READ_TIMEOUT": str(spec.read_timeout),
            "QUERY_ENABLED": _flag(spec.query_enabled),
            "QUERY_PORT": str(spec.query_port),
            # Where the proxy subscribes for server-group topology.
            "SSE_ENDPOINT": settings.public_api_url.rstrip("/") + CONNECT_PATH,
            "JAVA_OPTS": JAVA_OPTS,
        }
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": instance_name(proxy.name, index),
                "namespace": proxy.namespace,
                "labels": proxy.labels(index),
                "annotations": self.annotations(stamp),
                "ownerReferences": proxy.owner_references(),
            },
            "spec": {
                "restartPolicy": "Always",
                "containers": [
                    {
                        "name": "proxy",
                        "image": settings.proxy_image,
                        "env": [{"name": k, "value": v} for k, v in env.items()],
                        "ports": [
                            {"name": "tcp-port", "containerPort": spec.port, "protocol": "TCP"},
                            {"name": "udp-port", "containerPort": spec.port, "protocol": "UDP"},
                        ],
                        "resources": spec.resources.to_manifest(),
                    }
                ],
            },
        }


class ProxyReconciler:
    """Proxy pods plus the one Service that exposes them.

    Proxies hold no state, so any spec edit replaces every pod: pods are
    stamped with the generation they were built for and any other stamp
    counts as stale.
    """

    def __init__(self, cluster: Any):
        self.cluster = cluster
        self.pods = ProxyPodSet(cluster)

    def sync(self, proxy: Proxy) -> bool:
        changed = self.ensure_endpoint_exists(proxy)
        if self.pods.sync(proxy, proxy.spec.replicas, str(proxy.generation)):
            changed = True
        return changed

    def delete(self, proxy: Proxy) -> None:
        self.pods.delete(proxy)
        try:
            self.cluster.delete_endpoint(proxy.namespace, proxy.name)
            log_event("INFO", f"Deleted service {proxy.name}", group_name=proxy.name, kind=KIND_PROXY)
        except ClusterError as e:
            log_event("ERROR", f"Deleting service failed: {e}", group_name=proxy.name, kind=KIND_PROXY)

    def update_status(self, proxy: Proxy) -> InstanceSnapshot:
        return self.pods.snapshot(proxy, str(proxy.generation))

    def ensure_endpoint_exists(self, proxy: Proxy) -> bool:
        """Create the Service, or bring its ports in line with ``spec.port``."""
        manifest = self.endpoint_manifest(proxy)
        current = self.cluster.get_endpoint(proxy.namespace, proxy.name)
        if current is None:
            self.cluster.create_endpoint(proxy.namespace, manifest)
            log_event("INFO", f"Created service {proxy.name} on port {proxy.spec.port} (TCP+UDP)", group_name=proxy.name, kind=KIND_PROXY)
            return True

        ports = manifest["spec"]["ports"]
        if sorted(current.ports) == sorted((p["protocol"], p["port"]) for p in ports):
            return False
        self.cluster.update_endpoint_ports(proxy.namespace, proxy.name, ports)
        log_event(
            "INFO",
            f"Service {proxy.name} ports {sorted(current.ports)} -> port {proxy.spec.port} (TCP+UDP)",
            group_name=proxy.name,
            kind=KIND_PROXY,
        )
        return True

    def endpoint_manifest(self, proxy: Proxy) -> dict[str, Any]:
        port = proxy.spec.port
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": proxy.name,
                "namespace": proxy.namespace,
                "labels": proxy.labels(),
                "ownerReferences": proxy.owner_references(),
            },
            "spec": {
                "type": settings.proxy_service_type,
                "selector": proxy.selector(),
                "ports": [
                    {"name": "tcp-port", "protocol": "TCP", "port": port, "targetPort": port},
                    {"name": "udp-port", "protocol": "UDP", "port": port, "targetPort": port},
                ],
            },
        }
