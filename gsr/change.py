from __future__ import annotations

from enum import Enum

from .resources import ConfigArtifact, ServerGroup


class ChangeKind(str, Enum):
    NO_CHANGE = "NoChange"
    SPEC_CHANGED = "SpecChanged"
    CONFIG_CHANGED = "ConfigChanged"
    BOTH = "Both"

    @property
    def spec_changed(self) -> bool:
        return self in (ChangeKind.SPEC_CHANGED, ChangeKind.BOTH)

    @property
    def config_changed(self) -> bool:
        return self in (ChangeKind.CONFIG_CHANGED, ChangeKind.BOTH)


def detect(
    generation: int,
    observed_generation: int | None,
    config_revision: str | None,
    observed_config_revision: str | None,
) -> ChangeKind:
    """Compare current markers with the last observed ones.

    A group that was never observed counts as a spec change. A missing
    artifact never counts as a config change: there is nothing to observe yet.
    """
    spec = observed_generation is None or int(generation) != int(observed_generation)
    cfg = config_revision is not None and config_revision != observed_config_revision
    if spec and cfg:
        return ChangeKind.BOTH
    if spec:
        return ChangeKind.SPEC_CHANGED
    if cfg:
        return ChangeKind.CONFIG_CHANGED
    return ChangeKind.NO_CHANGE


def detect_group(group: ServerGroup, artifact: ConfigArtifact | None) -> ChangeKind:
    return detect(
        group.generation,
        group.status.observed_generation,
        artifact.revision if artifact else None,
        group.status.observed_config_generation,
    )


def requires_teardown(change: ChangeKind, group: ServerGroup, artifact: ConfigArtifact | None) -> bool:
    """Teardown policy for server groups.

    Instances and artifact are rebuilt only when the engine version moved away
    from the one the artifact was built for, or when ``forceRecreate`` is set
    on a group that was already observed. Replica and resource edits are
    applied in place by scaling. An artifact built for the current
    generation means the rebuild already happened.
    """
    if not change.spec_changed or artifact is None:
        return False
    if artifact.engine_version != group.spec.engine_version:
        return True
    if artifact.group_generation == group.generation:
        return False
    return group.spec.force_recreate and group.status.observed_generation is not None
