import pytest

from gsr.artifacts import ConfigArtifactManager
from gsr.cluster import ClusterError
from gsr.models import GroupSpec
from gsr.resources import ANNOTATION_ENGINE_VERSION, LABEL_GROUP, ConfigArtifact, ServerGroup
from gsr.templates import PAPER_GLOBAL_YML, SERVER_PROPERTIES


def _group(version="1.20.4", generation=1):
    return ServerGroup(
        name="alpha",
        namespace="default",
        generation=generation,
        spec=GroupSpec(engine_version=version),
        uid="uid-1",
    )


def test_sync_creates_once(cluster, source):
    mgr = ConfigArtifactManager(cluster, source)
    assert mgr.sync(_group()) is True
    assert mgr.sync(_group()) is False
    assert [c for c in cluster.mutations if c[0] == "create_artifact"] == [("create_artifact", "alpha-config")]

    art = mgr.get_artifact(_group())
    assert art.engine_version == "1.20.4"
    assert art.group_generation == 1
    assert "secret:" in art.data[PAPER_GLOBAL_YML]
    assert "online-mode=false" in art.data[SERVER_PROPERTIES]


def test_sync_with_missing_template_still_creates(cluster, event_db):
    from conftest import FakeTemplateSource

    mgr = ConfigArtifactManager(cluster, FakeTemplateSource(missing={"spigot.yml"}))
    assert mgr.sync(_group()) is True
    assert mgr.get_artifact(_group()).data["spigot.yml"] == ""
    assert any(e["level"] == "WARN" and "spigot.yml" in e["message"] for e in event_db.latest_events(10))


def test_sync_propagates_create_failure(cluster, source):
    cluster.fail("create_artifact")
    with pytest.raises(ClusterError):
        ConfigArtifactManager(cluster, source).sync(_group())


def test_status_tracks_revision(cluster, source):
    mgr = ConfigArtifactManager(cluster, source)
    assert mgr.update_status(_group()).observed_config_generation is None

    mgr.sync(_group())
    rev = mgr.update_status(_group()).observed_config_generation
    assert rev is not None

    cluster.edit_artifact("alpha-config", {"spigot.yml": "edited: true\n"})
    assert mgr.update_status(_group()).observed_config_generation != rev


def test_multiple_matches_use_first_by_name(cluster, source, event_db):
    labels = {LABEL_GROUP: "alpha"}
    cluster.artifacts[("default", "alpha-zz")] = ConfigArtifact(name="alpha-zz", labels=labels, revision="2")
    cluster.artifacts[("default", "alpha-config")] = ConfigArtifact(
        name="alpha-config", labels=labels, annotations={ANNOTATION_ENGINE_VERSION: "1.20.4"}, revision="1"
    )

    mgr = ConfigArtifactManager(cluster, source)
    assert mgr.get_artifact(_group()).name == "alpha-config"
    assert any(e["level"] == "WARN" for e in event_db.latest_events(10))

    mgr.delete(_group())
    assert cluster.artifacts == {}
