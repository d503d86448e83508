"""Tests for the session manager's transaction and cache handling."""

import threading
import time

import pytest

from govflow.contracts import Identity, ObjectKind
from govflow.errors import AcquisitionFailed, NotInitialized, OperationFailed
from govflow.engines import TaskScript, WorkflowDefinition
from govflow.session import PRELOAD_LIMIT, AcquisitionStrategy, SessionManager


def test_acquire_before_setup_raises(config, engine):
    manager = SessionManager(config, engine=engine)
    with pytest.raises(NotInitialized):
        manager.acquire()
    with pytest.raises(NotInitialized):
        manager.execute(lambda e: None)


def test_setup_is_idempotent(config, engine):
    manager = SessionManager(config, engine=engine)
    assert manager.setup() is manager
    first = manager.initialized_at
    manager.setup()
    assert manager.initialized_at == first
    assert manager.acquire() is engine
    manager.close()
    assert engine.closed
    assert not manager.initialized


def test_context_manager_closes_handle(config, engine):
    with SessionManager(config, engine=engine) as manager:
        assert manager.initialized
    assert engine.closed


def test_execute_commits_and_decaches(session, engine):
    engine.start_transaction()
    before = engine.get_object_by_name(ObjectKind.IDENTITY, "manager")
    engine.rollback_transaction()

    def rename(e):
        identity = e.get_object_by_name(ObjectKind.IDENTITY, "manager")
        identity.display_name = "Renamed"
        e.save_object(identity)
        return identity.name

    assert session.execute(rename) == "manager"
    assert engine.journal[-1][0] == "commit"

    engine.start_transaction()
    after = engine.get_object_by_name(ObjectKind.IDENTITY, "manager")
    engine.rollback_transaction()
    assert after is not before
    assert after.display_name == "Renamed"


def test_read_only_execute_rolls_back(session, engine):
    session.execute(lambda e: e.count_objects(ObjectKind.IDENTITY), commit=False)
    assert engine.journal[-1][0] == "rollback"


def test_rollback_policy_discards_committed_work(make_config, make_session, engine):
    config = make_config(profile="test")
    config.rollback_transactions = True
    manager = make_session(config, engine)

    def add(e):
        e.save_object(Identity(name="temp"))

    manager.execute(add)
    assert engine.journal[-1][0] == "rollback"
    engine.start_transaction()
    assert engine.get_object_by_name(ObjectKind.IDENTITY, "temp") is None
    engine.rollback_transaction()


def test_exception_rolls_back_and_wraps_cause(session, engine):
    def boom(e):
        e.save_object(Identity(name="ghost"))
        raise KeyError("missing")

    with pytest.raises(OperationFailed) as info:
        session.execute(boom, name="boom")

    assert info.value.operation == "boom"
    assert isinstance(info.value.__cause__, KeyError)
    assert engine.journal[-1][0] == "rollback"
    assert not engine.in_transaction
    engine.start_transaction()
    assert engine.get_object_by_name(ObjectKind.IDENTITY, "ghost") is None
    engine.rollback_transaction()


def test_statistics_track_operations(session):
    session.execute(lambda e: None, name="ping")
    session.execute(lambda e: None, name="ping", commit=False)
    with pytest.raises(OperationFailed):
        session.execute(lambda e: 1 / 0, name="divide")

    stats = session.statistics()
    assert stats.initialized
    assert stats.environment == "test"
    assert stats.operation_count == 3
    assert stats.operations == {"ping": 2, "divide": 1}
    assert stats.caching_enabled
    assert stats.init_time_ms is not None


def test_resolve_cached_returns_identical_instance(session, engine):
    size = session.statistics().cache_size
    first = session.resolve_cached(ObjectKind.IDENTITY, "manager")
    lookups = engine.lookups[ObjectKind.IDENTITY]
    second = session.resolve_cached(ObjectKind.IDENTITY, "manager")

    assert second is first
    assert engine.lookups[ObjectKind.IDENTITY] == lookups
    assert session.statistics().cache_size == size + 1


def test_resolve_cached_does_not_store_misses(session, engine):
    size = session.statistics().cache_size
    assert session.resolve_cached(ObjectKind.IDENTITY, "nobody") is None
    assert session.statistics().cache_size == size


def test_production_does_not_cache(make_config, make_session, engine):
    manager = make_session(make_config(profile="prod"), engine)
    manager.resolve_cached(ObjectKind.IDENTITY, "manager")
    lookups = engine.lookups[ObjectKind.IDENTITY]
    manager.resolve_cached(ObjectKind.IDENTITY, "manager")

    assert engine.lookups[ObjectKind.IDENTITY] == lookups + 1
    assert not manager.statistics().caching_enabled


@pytest.mark.parametrize("profile", ["test", "dev"])
def test_setup_preloads_workflows_and_task_definitions(
    make_config, make_session, make_engine, profile
):
    engine = make_engine(tasks=[TaskScript(name="Refresh Identity Cube")])
    manager = make_session(make_config(profile=profile), engine)

    # 3 workflows and 1 task definition
    assert manager.statistics().cache_size == 4
    workflow = manager.resolve_cached(ObjectKind.WORKFLOW, "Instant")
    task = manager.resolve_cached(ObjectKind.TASK_DEFINITION, "Refresh Identity Cube")
    assert workflow.name == "Instant"
    assert task.name == "Refresh Identity Cube"
    assert engine.lookups[ObjectKind.WORKFLOW] == 0
    assert engine.lookups[ObjectKind.TASK_DEFINITION] == 0


def test_preload_is_limited_per_kind(make_config, make_session, make_engine):
    extra = [WorkflowDefinition(name=f"Extra {i:02d}") for i in range(12)]
    manager = make_session(make_config(), make_engine(definitions=extra))
    assert manager.statistics().cache_size == PRELOAD_LIMIT


def test_production_does_not_preload(make_config, make_session, engine):
    manager = make_session(make_config(profile="prod"), engine)
    assert manager.statistics().cache_size == 0


def test_refresh_clears_caches_and_keeps_handle(session, engine):
    first = session.resolve_cached(ObjectKind.IDENTITY, "manager")
    session.refresh()
    assert session.acquire() is engine
    assert session.statistics().cache_size == 0
    assert session.resolve_cached(ObjectKind.IDENTITY, "manager") is not first


def test_strategies_fall_back_in_order(config, engine):
    calls = []

    def broken():
        calls.append("broken")
        raise ConnectionError("no route to host")

    def empty():
        calls.append("empty")
        return None

    strategies = [
        AcquisitionStrategy("broken", broken),
        AcquisitionStrategy("empty", empty),
        AcquisitionStrategy("working", lambda: engine),
        AcquisitionStrategy("unused", lambda: pytest.fail("should not be tried")),
    ]
    manager = SessionManager(config, strategies=strategies).setup()
    assert manager.acquire() is engine
    assert calls == ["broken", "empty"]


def test_acquisition_failure_after_retries(make_config):
    config = make_config(profile="uat")
    attempts = []

    def failing():
        attempts.append(1)
        raise ConnectionError("refused")

    manager = SessionManager(
        config, strategies=[AcquisitionStrategy("failing", failing)], retry_scale=0
    )
    with pytest.raises(AcquisitionFailed) as info:
        manager.setup()
    assert len(attempts) == config.max_retry_count() == 3
    assert "failing: refused" in str(info.value)
    assert not manager.initialized


def test_concurrent_execute_never_interleaves(session, engine):
    errors = []

    def slow(e):
        time.sleep(0.001)
        return e.count_objects(ObjectKind.IDENTITY)

    def worker():
        try:
            for _ in range(25):
                session.execute(slow, commit=False)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    entries = [entry for entry in engine.journal]
    opened = None
    for kind, txn in entries:
        if kind == "begin":
            assert opened is None, "transaction began while another was open"
            opened = txn
        else:
            assert opened == txn
            opened = None
    assert session.operation_count == 50
