from bisket.catalog import CatalogSnapshot, partition_tags, latest_version
from bisket.errors import MaterializationFailed, PortExhausted
from bisket.instance import InstanceState
from bisket.reconciler import Action, plan


def _snapshot(tags):
    standard, previews = partition_tags(tags)
    return CatalogSnapshot(tuple(standard), tuple(previews), latest_version(standard))


def _by_version(actions):
    return {a.version: a for a in actions}


def test_plan_creates_latest_and_previews_only():
    snap = _snapshot(["@v1.0.0", "@v1.1.0", "@preview/feat-x"])
    actions = _by_version(plan(snap, {}, preview_enabled=True))

    assert actions["v1.0.0"].action is Action.NOOP
    assert actions["v1.0.0"].desired is InstanceState.STOPPED
    assert actions["v1.1.0"].action is Action.CREATE
    assert actions["v1.1.0"].target.tag == "@v1.1.0"
    assert actions["preview/feat-x"].action is Action.CREATE
    assert actions["preview/feat-x"].target.is_preview


def test_plan_ignores_previews_when_disabled():
    snap = _snapshot(["@v1.0.0", "@preview/feat-x"])
    actions = _by_version(plan(snap, {}, preview_enabled=False))
    assert "preview/feat-x" not in actions

    # A preview left running from before is destroyed.
    actions = _by_version(plan(snap, {"preview/feat-x": InstanceState.RUNNING}, preview_enabled=False))
    assert actions["preview/feat-x"].action is Action.DESTROY


def test_plan_noop_while_pulling_and_destroy_for_old():
    snap = _snapshot(["@v1.0.0", "@v1.1.0"])
    live = {"v1.1.0": InstanceState.PULLING, "v1.0.0": InstanceState.RUNNING}
    actions = _by_version(plan(snap, live))
    assert actions["v1.1.0"].action is Action.NOOP
    assert actions["v1.0.0"].action is Action.DESTROY
    assert actions["v1.0.0"].current is InstanceState.RUNNING


def test_plan_covers_live_versions_missing_from_catalog():
    snap = _snapshot(["@v2.0.0"])
    actions = _by_version(plan(snap, {"v0.1.0": InstanceState.RUNNING}))
    assert actions["v0.1.0"].action is Action.DESTROY
    assert actions["v0.1.0"].desired is InstanceState.STOPPED


def test_scenario_creates_latest_and_preview(catalog, make_reconciler):
    rec = make_reconciler(preview_enabled=True)
    actions = rec.run_pass()

    created = sorted(a.version for a in actions if a.action is Action.CREATE)
    assert created == ["preview/feat-x", "v1.1.0"]
    assert sorted(i.version_name for i in rec.pool.list_instances()) == ["feat-x", "v1.1.0"]
    assert all(i.state is InstanceState.RUNNING for i in rec.pool.list_instances())


def test_reconcile_is_idempotent(make_reconciler):
    rec = make_reconciler()
    rec.run_pass()
    second = rec.run_pass()
    assert second
    assert all(a.action is Action.NOOP for a in second)
    assert len(rec.created) == 2


def test_new_latest_is_created_before_old_is_destroyed(fake_source, make_reconciler):
    rec = make_reconciler()
    rec.run_pass()
    old = rec.pool.get("v1.1.0")

    order = []
    real_factory = rec.factory

    def factory(version, port):
        order.append(("create", version.name))
        return real_factory(version, port)

    rec.factory = factory
    old_stop = old.stop

    def stop():
        order.append(("destroy", old.version_name))
        old_stop()

    old.stop = stop

    fake_source.tags.append("@v1.2.0")
    actions = _by_version(rec.run_pass())

    assert actions["v1.2.0"].action is Action.CREATE
    assert actions["v1.1.0"].action is Action.DESTROY
    assert order == [("create", "v1.2.0"), ("destroy", "v1.1.0")]
    assert old.state is InstanceState.STOPPED
    assert "v1.1.0" not in rec.pool
    assert rec.pool.get("v1.2.0").state is InstanceState.RUNNING


def test_destroy_removes_instance_from_pool(fake_source, make_reconciler):
    rec = make_reconciler()
    rec.run_pass()
    preview = rec.pool.get("preview/feat-x")

    fake_source.tags.remove("@preview/feat-x")
    actions = _by_version(rec.run_pass())

    assert actions["preview/feat-x"].action is Action.DESTROY
    assert preview.stopped
    assert "preview/feat-x" not in rec.pool
    assert _by_version(rec.reconcile()).get("preview/feat-x") is None


def test_failed_create_is_skipped_and_retried_next_pass(make_reconciler):
    rec = make_reconciler(failures={"v1.1.0": MaterializationFailed("no network")})
    rec.run_pass()

    assert "v1.1.0" not in rec.pool
    assert "preview/feat-x" in rec.pool

    # Version stays desired, so the next pass tries again.
    actions = _by_version(rec.reconcile())
    assert actions["v1.1.0"].action is Action.CREATE


def test_port_exhaustion_skips_create(make_reconciler):
    rec = make_reconciler()

    def no_ports():
        raise PortExhausted("none left")

    rec.allocate_port = no_ports
    rec.run_pass()
    assert len(rec.pool) == 0
    assert rec.created == []


def test_crashed_instance_is_recreated(make_reconciler):
    rec = make_reconciler()
    rec.run_pass()
    crashed = rec.pool.get("v1.1.0")
    crashed.crash()

    actions = _by_version(rec.run_pass())
    assert actions["v1.1.0"].action is Action.CREATE
    assert actions["v1.1.0"].current is InstanceState.STOPPED
    replacement = rec.pool.get("v1.1.0")
    assert replacement is not crashed
    assert replacement.state is InstanceState.RUNNING


def test_stopped_entry_for_unwanted_version_is_reaped(fake_source, make_reconciler):
    rec = make_reconciler()
    rec.run_pass()
    rec.pool.get("preview/feat-x").crash()
    fake_source.tags.remove("@preview/feat-x")

    actions = _by_version(rec.run_pass())
    assert actions["preview/feat-x"].action is Action.DESTROY
    assert "preview/feat-x" not in rec.pool


def test_catalog_events_wake_the_loop(catalog, make_reconciler):
    rec = make_reconciler()
    catalog.subscribe(rec.wake)
    assert not rec._wake.is_set()
    catalog.refresh()
    assert rec._wake.is_set()


def test_release_and_preview_with_same_name_both_run(fake_source, make_reconciler):
    fake_source.tags = ["@preview/v2.0.0", "@v1.0.0", "@v2.0.0"]
    rec = make_reconciler(preview_enabled=True)
    rec.run_pass()

    release = rec.pool.get("v2.0.0")
    preview = rec.pool.get("preview/v2.0.0")
    assert release is not None and not release.is_preview
    assert preview is not None and preview.is_preview
    assert release.state is preview.state is InstanceState.RUNNING
