"""Tests for the in-memory engine's observable workflow contract."""

import pytest

from govflow.contracts import (
    CompletionStatus,
    Decision,
    LaunchRequest,
    ObjectKind,
    ServerRequest,
    WorkItemKind,
    WorkItemState,
)
from govflow.engines import ApprovalStep, FormStep, WorkflowDefinition, load_definitions
from govflow.errors import EngineError


def _launch(engine, workflow="Three Level Approval", case_name="spadmin - 1", **variables):
    engine.start_transaction()
    result = engine.launch(
        LaunchRequest(
            workflow_name=workflow,
            case_name=case_name,
            launcher="spadmin",
            variables=variables,
        )
    )
    engine.commit_transaction()
    engine.decache()
    return result


def _pending(engine, case_ref):
    engine.start_transaction()
    items = engine.query_work_items(case_ref=case_ref)
    engine.rollback_transaction()
    return items


def test_launch_surfaces_first_item(engine):
    result = _launch(engine)
    assert result.case is not None
    assert result.case.completion_status is None

    items = _pending(engine, "spadmin - 1")
    assert len(items) == 1
    assert items[0].kind is WorkItemKind.APPROVAL
    assert items[0].level == 1
    assert items[0].owner == "manager"


def test_unknown_workflow_and_duplicate_name_are_rejected(engine):
    assert _launch(engine, workflow="Nope").case is None
    _launch(engine)
    duplicate = _launch(engine)
    assert duplicate.case is None
    assert "already in use" in duplicate.messages[0]


def test_empty_workflow_completes_during_launch(engine):
    result = _launch(engine, workflow="Instant")
    assert result.case.completion_status is CompletionStatus.SUCCESS
    assert result.case.variables["approved"] is True


def test_nested_transactions_are_refused(engine):
    engine.start_transaction()
    with pytest.raises(EngineError):
        engine.start_transaction()
    engine.rollback_transaction()
    assert engine.journal == [("begin", 1), ("rollback", 1)]


def test_rollback_restores_snapshot(engine):
    _launch(engine)
    engine.start_transaction()
    item = engine.query_work_items(case_ref="spadmin - 1")[0]
    item.finish("done")
    engine.save_object(item)
    engine.rollback_transaction()

    assert _pending(engine, "spadmin - 1")[0].state is WorkItemState.PENDING


def test_identity_map_keeps_stale_copies_until_decache(engine):
    _launch(engine)
    engine.start_transaction()
    stale = engine.get_object_by_name(ObjectKind.CASE, "spadmin - 1")
    engine.rollback_transaction()

    engine.complete_externally("spadmin - 1", CompletionStatus.WARNING)
    engine.start_transaction()
    assert engine.get_object_by_name(ObjectKind.CASE, "spadmin - 1") is stale
    engine.decache()
    fresh = engine.get_object_by_name(ObjectKind.CASE, "spadmin - 1")
    engine.rollback_transaction()
    assert stale.completion_status is None
    assert fresh.completion_status is CompletionStatus.WARNING


def test_approval_is_picked_up_on_next_transaction(engine):
    _launch(engine)
    engine.start_transaction()
    item = engine.query_work_items(case_ref="spadmin - 1")[0]
    item.decision = Decision.APPROVED
    item.finish("ok")
    engine.save_object(item)
    engine.commit_transaction()

    items = _pending(engine, "spadmin - 1")
    assert [i.level for i in items] == [2]


def test_form_needs_explicit_resume(engine):
    _launch(engine, workflow="Activate Identity")
    engine.start_transaction()
    form = engine.query_work_items(case_ref="spadmin - 1")[0]
    form.put("reason", "rehire")
    form.finish("done")
    engine.save_object(form)
    engine.commit_transaction()

    assert _pending(engine, "spadmin - 1") == []

    engine.start_transaction()
    engine.process_work_item(form)
    engine.commit_transaction()
    engine.decache()

    items = _pending(engine, "spadmin - 1")
    assert items[0].kind is WorkItemKind.APPROVAL
    engine.start_transaction()
    case = engine.get_object_by_name(ObjectKind.CASE, "spadmin - 1")
    engine.rollback_transaction()
    assert case.variables["reason"] == "rehire"


def test_resuming_unfinished_item_fails(engine):
    _launch(engine, workflow="Activate Identity")
    form = _pending(engine, "spadmin - 1")[0]
    engine.start_transaction()
    with pytest.raises(EngineError):
        engine.process_work_item(form)
    engine.rollback_transaction()


def test_finished_items_cannot_be_saved_again(engine):
    _launch(engine)
    engine.start_transaction()
    item = engine.query_work_items(case_ref="spadmin - 1")[0]
    item.finish("done")
    engine.save_object(item)
    engine.commit_transaction()
    engine.decache()

    engine.start_transaction()
    again = engine.get_object_by_id(ObjectKind.WORK_ITEM, item.id)
    with pytest.raises(EngineError):
        engine.save_object(again)
    engine.rollback_transaction()


def test_lazy_case_ids_are_assigned_later(make_engine):
    engine = make_engine(lazy_case_ids=True)
    result = _launch(engine)
    assert result.case.id is None

    item = _pending(engine, "spadmin - 1")[0]
    engine.start_transaction()
    case = engine.get_object_by_name(ObjectKind.CASE, "spadmin - 1")
    engine.rollback_transaction()
    assert case.id is not None
    assert item.case_id == case.id
    assert _pending(engine, case.id)[0].id == item.id


def test_materialize_delay_holds_back_next_level(make_engine):
    now = [0.0]
    engine = make_engine(materialize_delay=5.0, clock=lambda: now[0])
    _launch(engine)
    engine.start_transaction()
    item = engine.query_work_items(case_ref="spadmin - 1")[0]
    item.finish("ok")
    engine.save_object(item)
    engine.commit_transaction()

    assert _pending(engine, "spadmin - 1") == []
    now[0] = 6.0
    assert [i.level for i in _pending(engine, "spadmin - 1")] == [2]


def test_rejection_terminates_by_default(engine):
    _launch(engine)
    engine.start_transaction()
    item = engine.query_work_items(case_ref="spadmin - 1")[0]
    for line in item.approval_set:
        line.reject()
    item.finish("no")
    engine.save_object(item)
    engine.commit_transaction()

    assert _pending(engine, "spadmin - 1") == []
    engine.start_transaction()
    case = engine.get_object_by_name(ObjectKind.CASE, "spadmin - 1")
    engine.rollback_transaction()
    assert case.completion_status is CompletionStatus.SUCCESS
    assert case.variables == {"level1": "rejected", "approved": False}


def test_completed_case_cannot_be_reopened(engine):
    _launch(engine, workflow="Instant")
    engine.start_transaction()
    case = engine.get_object_by_name(ObjectKind.CASE, "spadmin - 1")
    case.completion_status = None
    with pytest.raises(EngineError):
        engine.save_object(case)
    engine.rollback_transaction()


def test_queued_request_launches_on_next_transaction(engine):
    request = ServerRequest(
        name="Launch-Instant-1", attributes={"workflow": "Instant", "launcher": "jdoe"}
    )
    engine.start_transaction()
    engine.submit_request(request)
    engine.commit_transaction()

    engine.start_transaction()
    stored = engine.get_object_by_id(ObjectKind.REQUEST, request.id)
    case = engine.get_object_by_name(ObjectKind.CASE, "jdoe - Launch-Instant-1")
    engine.rollback_transaction()
    assert stored.processed
    assert stored.case_name == "jdoe - Launch-Instant-1"
    assert case.completion_status is CompletionStatus.SUCCESS


def test_injected_failures_are_consumed(engine):
    engine.inject_failure("query_work_items")
    engine.start_transaction()
    with pytest.raises(EngineError):
        engine.query_work_items()
    assert engine.query_work_items() == []
    engine.rollback_transaction()


def test_load_definitions_accepts_list_or_mapping(tmp_path):
    as_list = tmp_path / "list.yaml"
    as_list.write_text(
        """
- name: Onboard
  steps:
    - type: form
      owner: hr
      fields: {department: null}
    - type: approval
      owner: manager
      lines: [role, account]
"""
    )
    as_mapping = tmp_path / "mapping.yaml"
    as_mapping.write_text(
        """
workflows:
  - name: Offboard
    reject_terminates: false
    steps: []
"""
    )

    onboard = load_definitions(str(as_list))[0]
    assert isinstance(onboard.steps[0], FormStep)
    assert isinstance(onboard.steps[1], ApprovalStep)
    assert onboard.steps[1].lines == ["role", "account"]
    offboard = load_definitions(str(as_mapping))[0]
    assert offboard == WorkflowDefinition(name="Offboard", reject_terminates=False)
