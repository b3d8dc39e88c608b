import os

import pytest

from dorc.store import DeploymentSpec, DesiredStateStore, HealthCheck, RolloutPolicy


def _spec(image="web:1", replicas=2, **kw):
    return DeploymentSpec(name="web", image=image, internal_port=8080, replicas=replicas, **kw)


def test_first_apply_creates_active_revision(store):
    result = store.apply(_spec())
    assert (result.revision, result.outcome) == (1, "created")

    d = store.desired("web")
    assert d.active.revision == 1
    assert d.active.image == "web:1"
    assert d.active.replicas == 2
    assert d.candidate is None


def test_reapply_same_template_scales_in_place(store):
    store.apply(_spec())
    assert store.apply(_spec()).outcome == "unchanged"

    result = store.apply(_spec(replicas=5))
    assert (result.revision, result.outcome) == (1, "scaled")
    assert store.desired("web").active.replicas == 5
    assert len(store.history("web")) == 1


def test_new_template_becomes_candidate(store):
    store.apply(_spec())
    result = store.apply(_spec(image="web:2", replicas=3, rollout=RolloutPolicy(canary_percent=50)))
    assert (result.revision, result.outcome) == (2, "rollout")

    d = store.desired("web")
    assert d.active.revision == 1
    assert d.candidate.revision == 2
    assert d.candidate.replicas == 3
    assert d.candidate.policy.canary_percent == 50


def test_health_or_env_change_is_a_new_revision(store):
    store.apply(_spec())
    assert store.apply(_spec(health=HealthCheck(path="/ready"))).outcome == "rollout"
    assert store.apply(_spec(env={"MODE": "x"})).outcome == "rollout"
    # The second candidate superseded the first.
    states = {r.revision: r.state for r in store.history("web")}
    assert states == {1: "active", 2: "withdrawn", 3: "candidate"}


def test_reapplying_candidate_template_rescales_candidate(store):
    store.apply(_spec())
    store.apply(_spec(image="web:2"))
    result = store.apply(_spec(image="web:2", replicas=4))
    assert (result.revision, result.outcome) == (2, "scaled")
    assert store.desired("web").candidate.replicas == 4


def test_reapplying_active_template_withdraws_candidate(store):
    store.apply(_spec())
    store.apply(_spec(image="web:2"))
    result = store.apply(_spec())
    assert (result.revision, result.outcome) == (1, "reverted")
    assert store.desired("web").candidate is None
    assert store.get_revision("web", 2).state == "withdrawn"


def test_promote_retires_previous_active(store):
    store.apply(_spec())
    store.apply(_spec(image="web:2"))
    store.promote("web", 2)

    d = store.desired("web")
    assert d.active.revision == 2
    assert d.candidate is None
    assert store.get_revision("web", 1).state == "retired"

    with pytest.raises(KeyError):
        store.promote("web", 2)


def test_rollback_aborts_inflight_candidate(store):
    store.apply(_spec())
    store.apply(_spec(image="web:2"))
    result = store.rollback("web")
    assert (result.revision, result.outcome) == (2, "aborted")
    assert store.get_revision("web", 2).state == "failed"
    assert store.desired("web").active.revision == 1


def test_rollback_reuses_previous_template(store):
    store.apply(_spec())
    store.apply(_spec(image="web:2", replicas=3))
    store.promote("web", 2)

    result = store.rollback("web")
    assert (result.revision, result.outcome) == (3, "rollout")
    cand = store.desired("web").candidate
    assert cand.image == "web:1"
    assert cand.replicas == 3


def test_rollback_skips_candidates_that_never_served(store):
    store.apply(_spec())
    store.apply(_spec(image="web:bad"))
    assert store.apply(_spec()).outcome == "reverted"
    store.apply(_spec(image="web:3"))
    store.promote("web", 3)

    result = store.rollback("web")
    assert (result.revision, result.outcome) == (4, "rollout")
    assert store.desired("web").candidate.image == "web:1"


def test_rollback_errors(store):
    with pytest.raises(KeyError):
        store.rollback("missing")
    store.apply(_spec())
    with pytest.raises(ValueError):
        store.rollback("web")


@pytest.mark.parametrize(
    "spec",
    [
        DeploymentSpec(name="Web", image="web:1", internal_port=8080),
        DeploymentSpec(name="web", image="web 1", internal_port=8080),
        DeploymentSpec(name="web", image="web:1", internal_port=0),
        DeploymentSpec(name="web", image="web:1", internal_port=8080, replicas=-1),
        DeploymentSpec(name="web", image="web:1", internal_port=8080, health=HealthCheck(path="http://x/health")),
        DeploymentSpec(name="web", image="web:1", internal_port=8080, health=HealthCheck(path="/../etc")),
        DeploymentSpec(name="web", image="web:1", internal_port=8080, health=HealthCheck(failure_threshold=0)),
    ],
)
def test_apply_rejects_invalid_specs(store, spec):
    with pytest.raises(ValueError):
        store.apply(spec)
    assert store.list_apps() == []


def test_scale_updates_active_and_candidate(store):
    store.apply(_spec())
    store.apply(_spec(image="web:2"))
    d = store.scale("web", 6)
    assert d.active.replicas == 6
    assert d.candidate.replicas == 6
    with pytest.raises(KeyError):
        store.scale("missing", 1)
    with pytest.raises(ValueError):
        store.scale("web", 1000)


def test_delete_removes_app_and_history(store):
    store.apply(_spec())
    store.delete("web")
    assert store.desired("web") is None
    assert store.history("web") == []
    with pytest.raises(KeyError):
        store.delete("web")


def test_events_are_recorded_newest_first(store):
    store.apply(_spec())
    store.apply(_spec(image="web:2"))
    store.log_event("WARN", "other app", app="api")

    events = store.latest_events(limit=10, app="web")
    assert [e["revision"] for e in events] == [2, 1]
    assert all(e["app"] == "web" for e in events)
    assert store.latest_events(limit=1)[0]["message"] == "other app"


def test_db_path_directory_is_used_as_parent(tmp_path):
    s = DesiredStateStore(str(tmp_path))
    s.init()
    assert os.path.exists(tmp_path / "dorc.db")


def test_rollout_policy_steps():
    assert RolloutPolicy().steps() == [10, 35, 60, 85, 100]
    assert RolloutPolicy(canary_percent=25, step_percent=25).steps() == [25, 50, 75, 100]
    assert RolloutPolicy(canary_percent=100).steps() == [100]


def test_revision_state_and_replicas_can_be_set_directly(store):
    store.apply(_spec())
    store.apply(_spec(image="web:2"))
    cand = store.desired("web").candidate

    store.set_revision_replicas(cand.id, 7)
    store.set_revision_state(cand.id, "failed")

    assert store.desired("web").candidate is None
    rev = store.get_revision("web", 2)
    assert (rev.state, rev.replicas) == ("failed", 7)
