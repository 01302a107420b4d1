from types import SimpleNamespace
from uuid import uuid4

import pytest

from support_routing.domain.enums import ConversationStatus, FlowAction, FlowState
from support_routing.domain.exceptions import InvalidFlowTransition
from support_routing.domain.state_machine import FlowLifecycle


def _conversation(**overrides):
    fields = {
        "flow_state": FlowState.GREETING,
        "assigned_agent_id": None,
        "department_id": None,
        "timeout_at": None,
        "suggestion_expires_at": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_menu_choice_selects_department() -> None:
    next_state = FlowLifecycle.transition(FlowState.GREETING, FlowAction.SELECT_DEPARTMENT)
    assert next_state == FlowState.DEPARTMENT_SELECTED


def test_accepted_suggestion_selects_department() -> None:
    next_state = FlowLifecycle.transition(
        FlowState.AWAITING_ROUTING_CONFIRMATION, FlowAction.SELECT_DEPARTMENT
    )
    assert next_state == FlowState.DEPARTMENT_SELECTED


def test_declined_and_expired_suggestion_return_to_greeting() -> None:
    for action in (FlowAction.DECLINE_SUGGESTION, FlowAction.EXPIRE_SUGGESTION):
        assert (
            FlowLifecycle.transition(FlowState.AWAITING_ROUTING_CONFIRMATION, action)
            == FlowState.GREETING
        )


def test_assignment_from_department_selected() -> None:
    next_state = FlowLifecycle.transition(FlowState.DEPARTMENT_SELECTED, FlowAction.ASSIGN_AGENT)
    assert next_state == FlowState.ASSIGNED


def test_idempotent_assignment_from_assigned() -> None:
    next_state = FlowLifecycle.transition(FlowState.ASSIGNED, FlowAction.ASSIGN_AGENT)
    assert next_state == FlowState.ASSIGNED


def test_escalation_keeps_department_selected_and_exhaustion_resets() -> None:
    assert (
        FlowLifecycle.transition(FlowState.DEPARTMENT_SELECTED, FlowAction.ESCALATE)
        == FlowState.DEPARTMENT_SELECTED
    )
    assert (
        FlowLifecycle.transition(FlowState.DEPARTMENT_SELECTED, FlowAction.EXHAUST_ESCALATION)
        == FlowState.GREETING
    )


def test_resolution_is_accepted_from_every_state() -> None:
    for state in FlowState:
        assert FlowLifecycle.transition(state, FlowAction.RESOLVE) == FlowState.GREETING


def test_routing_an_assigned_conversation_raises() -> None:
    with pytest.raises(InvalidFlowTransition) as exc_info:
        FlowLifecycle.transition(FlowState.ASSIGNED, FlowAction.SELECT_DEPARTMENT)
    assert exc_info.value.current == FlowState.ASSIGNED
    assert exc_info.value.action == FlowAction.SELECT_DEPARTMENT


def test_assignment_from_greeting_is_invalid() -> None:
    assert not FlowLifecycle.can_apply(FlowState.GREETING, FlowAction.ASSIGN_AGENT)
    assert FlowLifecycle.can_apply(FlowState.DEPARTMENT_SELECTED, FlowAction.ASSIGN_AGENT)


def test_engagement_requires_active_status_and_engaged_flow() -> None:
    assert FlowLifecycle.is_engaged(ConversationStatus.ASSIGNED, FlowState.ASSIGNED)
    assert FlowLifecycle.is_engaged(ConversationStatus.OPEN, FlowState.DEPARTMENT_SELECTED)
    assert not FlowLifecycle.is_engaged(ConversationStatus.RESOLVED, FlowState.ASSIGNED)
    assert not FlowLifecycle.is_engaged(ConversationStatus.OPEN, FlowState.GREETING)


def test_only_bot_states_are_routable() -> None:
    assert FlowLifecycle.is_routable(FlowState.GREETING)
    assert FlowLifecycle.is_routable(FlowState.AWAITING_ROUTING_CONFIRMATION)
    assert not FlowLifecycle.is_routable(FlowState.ASSIGNED)


def test_consistent_assigned_conversation_has_no_violations() -> None:
    conversation = _conversation(
        flow_state=FlowState.ASSIGNED, assigned_agent_id=uuid4(), department_id=uuid4()
    )
    assert FlowLifecycle.invariant_violations(conversation) == []


def test_invariant_violations_are_reported() -> None:
    orphaned = _conversation(flow_state=FlowState.ASSIGNED, department_id=uuid4())
    assert FlowLifecycle.invariant_violations(orphaned) == [
        "assigned flow state without an assigned agent"
    ]

    stray_deadline = _conversation(timeout_at=object(), assigned_agent_id=uuid4())
    violations = FlowLifecycle.invariant_violations(stray_deadline)
    assert len(violations) == 2
    assert any("escalation deadline" in violation for violation in violations)

    no_department = _conversation(flow_state=FlowState.DEPARTMENT_SELECTED)
    assert FlowLifecycle.invariant_violations(no_department) == [
        "flow state 'department_selected' without a department"
    ]


@pytest.mark.parametrize("current", list(FlowState))
def test_manual_assignment_and_transfer_apply_from_any_state(current: FlowState) -> None:
    assert FlowLifecycle.transition(current, FlowAction.ASSIGN_MANUALLY) == FlowState.ASSIGNED
    assert (
        FlowLifecycle.transition(current, FlowAction.TRANSFER) == FlowState.DEPARTMENT_SELECTED
    )
