from gsr.models import GroupSpec
from gsr.resources import ANNOTATION_CONFIG_REVISION, LABEL_GROUP, LABEL_INDEX, Instance, ServerGroup, instance_name
from gsr.workloads import WorkloadSetReconciler, plan_scale

from conftest import FakeCluster


def _name(i):
    return instance_name("alpha", i)


def _inst(i, **kw):
    return Instance(name=_name(i), labels={LABEL_GROUP: "alpha", LABEL_INDEX: str(i)}, **kw)


def _group(replicas=3, version="1.20.4", generation=1):
    return ServerGroup(
        name="alpha",
        namespace="default",
        generation=generation,
        spec=GroupSpec(engine_version=version, replicas=replicas),
        uid="uid-1",
    )


def test_plan_scale_up_fills_lowest_indices():
    plan = plan_scale([_inst(1)], 3, _name)
    assert plan.create == [0, 2]
    assert plan.delete == []


def test_plan_scale_down_deletes_highest_first():
    plan = plan_scale([_inst(0), _inst(1), _inst(2)], 1, _name)
    assert plan.create == []
    assert [p.name for p in plan.delete] == ["alpha-2", "alpha-1"]


def test_plan_scale_ignores_terminating_and_removes_strays_first():
    stray = Instance(name="alpha-old", labels={LABEL_GROUP: "alpha"})
    plan = plan_scale([_inst(0), _inst(1, terminating=True), _inst(4), stray], 2, _name)
    # alpha-1 is still terminating: its name stays taken until it is gone.
    assert plan.create == []
    assert [p.name for p in plan.delete] == ["alpha-old", "alpha-4"]


def test_plan_scale_noop():
    assert plan_scale([_inst(0), _inst(1)], 2, _name).empty


def test_sync_creates_contiguous_pods_and_is_idempotent(cluster):
    w = WorkloadSetReconciler(cluster)
    assert w.sync(_group()) is True
    assert cluster.pod_names() == ["alpha-0", "alpha-1", "alpha-2"]

    before = len(cluster.mutations)
    assert w.sync(_group()) is False
    assert len(cluster.mutations) == before


def test_pod_manifest_mounts_artifact(cluster):
    w = WorkloadSetReconciler(cluster)
    m = w.manifest(_group(), 0)

    assert m["metadata"]["labels"] == {LABEL_GROUP: "alpha", LABEL_INDEX: "0"}
    assert m["metadata"]["ownerReferences"][0]["uid"] == "uid-1"
    volumes = {v["name"]: v for v in m["spec"]["volumes"]}
    assert volumes["config-template"]["configMap"]["name"] == "alpha-config"
    env = {e["name"]: e["value"] for e in m["spec"]["containers"][0]["env"]}
    assert env["VERSION"] == "1.20.4"
    assert env["ONLINE_MODE"] == "FALSE"
    assert m["spec"]["initContainers"][0]["name"] == "seed-config"


def test_pod_failures_are_logged_not_raised(cluster, event_db):
    cluster.fail("create_instance", times=1)
    w = WorkloadSetReconciler(cluster)

    assert w.sync(_group(replicas=2)) is True
    assert cluster.pod_names() == ["alpha-1"]
    assert any("alpha-0" in e["message"] for e in event_db.latest_events(20) if e["level"] == "ERROR")

    w.sync(_group(replicas=2))
    assert cluster.pod_names() == ["alpha-0", "alpha-1"]


def test_convergence_between_arbitrary_sizes():
    for a, b in [(0, 4), (4, 0), (5, 2), (2, 5), (3, 3)]:
        cluster = FakeCluster()
        w = WorkloadSetReconciler(cluster)
        w.sync(_group(replicas=a))
        cluster.fail("create_instance", times=1)
        cluster.fail("delete_instance", times=1)
        for _ in range(3):
            w.sync(_group(replicas=b))
        assert cluster.pod_names() == [_name(i) for i in range(b)]


def test_snapshot_reports_only_serving_pods():
    cluster = FakeCluster(auto_run=False, graceful_delete=True)
    w = WorkloadSetReconciler(cluster)
    w.sync(_group(replicas=2))

    snap = w.update_status(_group(replicas=2))
    assert snap.instance_addresses == ()
    assert snap.state == "NotReady"

    cluster.run_pods()
    snap = w.update_status(_group(replicas=2))
    assert len(snap.instance_addresses) == 2
    assert snap.state == "Ready"
    assert snap.observed_generation == 1

    w.delete(_group(replicas=2))
    assert w.update_status(_group(replicas=2)).state == "NotReady"


def test_plan_scale_replaces_stale_pods_in_range():
    old = _inst(1, annotations={ANNOTATION_CONFIG_REVISION: "100"})
    plan = plan_scale([_inst(0), old, _inst(3)], 2, _name, lambda inst: inst.stamped_other_than(ANNOTATION_CONFIG_REVISION, "101"))
    # The stale pod's name stays taken until its delete has gone through.
    assert plan.create == []
    assert [p.name for p in plan.delete] == ["alpha-3", "alpha-1"]


def test_unstamped_pods_are_never_stale():
    assert not _inst(0).stamped_other_than(ANNOTATION_CONFIG_REVISION, "101")
    assert not _inst(0, annotations={ANNOTATION_CONFIG_REVISION: "101"}).stamped_other_than(ANNOTATION_CONFIG_REVISION, None)


def test_sync_recreates_pods_built_for_another_revision(cluster):
    w = WorkloadSetReconciler(cluster)
    w.sync(_group(replicas=2), revision="100")
    assert w.update_status(_group(replicas=2), "100").stale_instances == ()

    assert w.update_status(_group(replicas=2), "101").stale_instances == ("alpha-0", "alpha-1")
    assert w.sync(_group(replicas=2), revision="101") is True
    assert cluster.pod_names() == ["alpha-0", "alpha-1"]
    for name in cluster.pod_names():
        assert cluster.pods[("default", name)]["manifest"]["metadata"]["annotations"] == {ANNOTATION_CONFIG_REVISION: "101"}
    assert w.update_status(_group(replicas=2), "101").stale_instances == ()


def test_stale_pods_wait_for_termination_before_recreate():
    cluster = FakeCluster(graceful_delete=True)
    w = WorkloadSetReconciler(cluster)
    w.sync(_group(replicas=1), revision="100")

    w.sync(_group(replicas=1), revision="101")
    assert cluster.pod_names() == []
    assert cluster.pods[("default", "alpha-0")]["terminating"] is True

    cluster.finish_termination()
    w.sync(_group(replicas=1), revision="101")
    assert cluster.pods[("default", "alpha-0")]["manifest"]["metadata"]["annotations"] == {ANNOTATION_CONFIG_REVISION: "101"}
