from __future__ import annotations

from typing import Any

from .cluster import ClusterError
from .db import log_event
from .resources import (
    ANNOTATION_ENGINE_VERSION,
    ANNOTATION_GROUP_GENERATION,
    KIND_GROUP,
    ArtifactSnapshot,
    ConfigArtifact,
    ServerGroup,
    artifact_name,
)
from .settings import settings
from .templates import TemplateSource, build_bundle


class ConfigArtifactManager:
    """Owns the per-group ConfigMap holding the engine's configuration files.

    The artifact is created lazily and never patched in place: a new engine
    version goes through the teardown path (delete, then ``sync`` rebuilds it).
    """

    def __init__(self, cluster: Any, source: TemplateSource | None = None):
        self.cluster = cluster
        self.source = source or TemplateSource()

    def get_artifact(self, group: ServerGroup) -> ConfigArtifact | None:
        found = self.cluster.list_artifacts(group.namespace, group.selector())
        if not found:
            return None
        found = sorted(found, key=lambda a: a.name)
        if len(found) > 1:
            log_event(
                "WARN",
                f"{len(found)} config artifacts match group, using {found[0].name}",
                group_name=group.name,
                kind=KIND_GROUP,
            )
        return found[0]

    def sync(self, group: ServerGroup) -> bool:
        """Create the artifact if absent. Returns True when one was created."""
        if self.get_artifact(group) is not None:
            return False

        version = group.spec.engine_version
        bundle = build_bundle(self.source, version, settings.forwarding_secret, settings.server_port)
        if bundle.missing:
            log_event(
                "WARN",
                f"Config artifact for {version} built without content for: {', '.join(bundle.missing)}",
                group_name=group.name,
                kind=KIND_GROUP,
            )

        self.cluster.create_artifact(group.namespace, self.manifest(group, bundle.files))
        log_event("INFO", f"Created config artifact {artifact_name(group.name)} ({version})", group_name=group.name, kind=KIND_GROUP)
        return True

    def delete(self, group: ServerGroup) -> None:
        """Best effort: delete every artifact labelled for the group."""
        try:
            names = {a.name for a in self.cluster.list_artifacts(group.namespace, group.selector())}
        except ClusterError as e:
            log_event("ERROR", f"Listing config artifacts for teardown failed: {e}", group_name=group.name, kind=KIND_GROUP)
            return
        for name in sorted(names):
            try:
                self.cluster.delete_artifact(group.namespace, name)
                log_event("INFO", f"Deleted config artifact {name}", group_name=group.name, kind=KIND_GROUP)
            except ClusterError as e:
                log_event("ERROR", f"Deleting config artifact {name} failed: {e}", group_name=group.name, kind=KIND_GROUP)

    def update_status(self, group: ServerGroup) -> ArtifactSnapshot:
        artifact = self.get_artifact(group)
        return ArtifactSnapshot(observed_config_generation=artifact.revision if artifact else None)

    def manifest(self, group: ServerGroup, files: dict[str, str]) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": artifact_name(group.name),
                "namespace": group.namespace,
                "labels": group.labels(),
                "annotations": {
                    ANNOTATION_ENGINE_VERSION: group.spec.engine_version,
                    ANNOTATION_GROUP_GENERATION: str(group.generation),
                },
                "ownerReferences": group.owner_references(),
            },
            "data": dict(files),
        }
