from datetime import timedelta
from uuid import uuid4

import pytest

from support_routing.domain.enums import AgentOnlineStatus, ConversationStatus, FlowState
from support_routing.services.dispatch_service import RouteOutcome
from support_routing.services.errors import (
    AgentNotFoundError,
    AgentNotInDepartmentError,
    ConversationArchivedError,
    DepartmentNotFoundError,
)


def _queued(store, directory, department, clock):
    return store.add_conversation(
        directory.company,
        flow_state=FlowState.DEPARTMENT_SELECTED,
        department_id=department.id,
        routed_at=clock.now,
        timeout_at=clock.now + timedelta(minutes=department.response_timeout_minutes),
    )


@pytest.mark.asyncio
async def test_manual_assignment_takes_queued_conversation(
    engine, store, directory, notifier, clock
) -> None:
    agent = store.add_agent(directory.comercial, "Ana", online_status=AgentOnlineStatus.OFFLINE)
    conversation = _queued(store, directory, directory.comercial, clock)

    result = await engine.assign_conversation(conversation.id, agent.id)

    assert result is not None
    assert result.agent_id == agent.id
    stored = store.conversations[conversation.id]
    assert stored.flow_state == FlowState.ASSIGNED
    assert stored.status == ConversationStatus.ASSIGNED
    assert stored.assigned_agent_id == agent.id
    assert stored.timeout_at is None
    assert [entry.agent_id for entry in store.active_assignments(conversation.id)] == [agent.id]
    assert notifier.named("agent_assigned") == [(agent.id, conversation.id, "Ana")]


@pytest.mark.asyncio
async def test_manual_reassignment_closes_previous_ledger_entry(
    engine, store, directory, clock
) -> None:
    first = store.add_agent(directory.comercial, "Ana")
    second = store.add_agent(directory.comercial, "Bruno")
    conversation = store.hold(first, 1)[0]

    await engine.assign_conversation(conversation.id, second.id)

    entries = [entry for entry in store.assignments if entry.conversation_id == conversation.id]
    assert [entry.agent_id for entry in entries] == [first.id, second.id]
    assert entries[0].unassigned_at == clock.now
    assert [entry.agent_id for entry in store.active_assignments(conversation.id)] == [second.id]
    assert store.active_load(first.id) == 0
    assert store.active_load(second.id) == 1


@pytest.mark.asyncio
async def test_manual_assignment_to_current_agent_is_not_new(
    engine, store, directory, notifier
) -> None:
    agent = store.add_agent(directory.comercial, "Ana")
    conversation = store.hold(agent, 1)[0]

    result = await engine.assign_conversation(conversation.id, agent.id)

    assert result is not None
    assert result.newly_assigned is False
    assert len(store.assignments) == 1
    assert notifier.named("agent_assigned") == []


@pytest.mark.asyncio
async def test_manual_assignment_without_department_joins_agent_department(
    engine, store, directory
) -> None:
    agent = store.add_agent(directory.financeiro, "Fabio")
    conversation = store.add_conversation(directory.company, greeting_sent_at=None)

    await engine.assign_conversation(conversation.id, agent.id)

    stored = store.conversations[conversation.id]
    assert stored.department_id == directory.financeiro.id
    assert stored.flow_state == FlowState.ASSIGNED


@pytest.mark.asyncio
async def test_manual_assignment_rejects_agent_from_other_department(
    engine, store, directory, clock
) -> None:
    outsider = store.add_agent(directory.financeiro, "Fabio")
    conversation = _queued(store, directory, directory.comercial, clock)

    with pytest.raises(AgentNotInDepartmentError):
        await engine.assign_conversation(conversation.id, outsider.id)

    assert store.conversations[conversation.id].assigned_agent_id is None
    assert store.assignments == []


@pytest.mark.asyncio
async def test_manual_assignment_rejects_unknown_agent_and_archived_conversation(
    engine, store, directory, clock
) -> None:
    agent = store.add_agent(directory.comercial, "Ana")
    conversation = _queued(store, directory, directory.comercial, clock)
    archived = store.add_conversation(
        directory.company,
        status=ConversationStatus.ARCHIVED,
        department_id=directory.comercial.id,
    )

    with pytest.raises(AgentNotFoundError):
        await engine.assign_conversation(conversation.id, uuid4())
    with pytest.raises(ConversationArchivedError):
        await engine.assign_conversation(archived.id, agent.id)


@pytest.mark.asyncio
async def test_manual_assignment_works_without_auto_assignment(
    engine, store, directory, clock
) -> None:
    directory.company.auto_assign_enabled = False
    agent = store.add_agent(directory.comercial, "Ana")
    conversation = _queued(store, directory, directory.comercial, clock)

    result = await engine.assign_conversation(conversation.id, agent.id)

    assert result is not None
    assert store.conversations[conversation.id].assigned_agent_id == agent.id


@pytest.mark.asyncio
async def test_unassign_requeues_with_fresh_deadline(
    engine, store, directory, notifier, clock
) -> None:
    agent = store.add_agent(directory.comercial, "Ana")
    conversation = store.hold(agent, 1)[0]

    assert await engine.unassign_conversation(conversation.id) is True

    stored = store.conversations[conversation.id]
    assert stored.flow_state == FlowState.DEPARTMENT_SELECTED
    assert stored.status == ConversationStatus.OPEN
    assert stored.assigned_agent_id is None
    assert stored.timeout_at == clock.now + timedelta(minutes=3)
    assert store.active_assignments(conversation.id) == []
    assert notifier.named("department_queued") == [
        (directory.comercial.id, conversation.id, "unassigned")
    ]


@pytest.mark.asyncio
async def test_unassign_leaves_unengaged_conversations_alone(
    engine, store, directory, notifier
) -> None:
    agent = store.add_agent(directory.comercial, "Ana")
    unassigned = store.add_conversation(directory.company)
    resolved = store.add_conversation(
        directory.company,
        status=ConversationStatus.RESOLVED,
        flow_state=FlowState.ASSIGNED,
        department_id=directory.comercial.id,
        assigned_agent_id=agent.id,
    )

    assert await engine.unassign_conversation(unassigned.id) is False
    assert await engine.unassign_conversation(resolved.id) is False
    assert store.conversations[resolved.id].assigned_agent_id == agent.id
    assert notifier.calls == []


@pytest.mark.asyncio
async def test_transfer_queues_conversation_on_new_department(
    engine, store, directory, notifier, clock
) -> None:
    agent = store.add_agent(directory.comercial, "Ana")
    store.add_agent(directory.financeiro, "Fabio")
    conversation = store.hold(agent, 1)[0]

    result = await engine.transfer_conversation(conversation.id, directory.financeiro.id)

    assert result.outcome == RouteOutcome.ROUTED
    assert result.agent is None
    stored = store.conversations[conversation.id]
    assert stored.department_id == directory.financeiro.id
    assert stored.flow_state == FlowState.DEPARTMENT_SELECTED
    assert stored.status == ConversationStatus.OPEN
    assert stored.assigned_agent_id is None
    assert stored.routed_at == clock.now
    assert stored.timeout_at == clock.now + timedelta(minutes=5)
    assert store.active_assignments(conversation.id) == []
    assert notifier.named("company_transferred") == [
        (directory.company.id, conversation.id, directory.financeiro.id, "transfer")
    ]
    assert notifier.named("department_queued") == [
        (directory.financeiro.id, conversation.id, "transfer")
    ]
    assert notifier.named("agent_assigned") == []


@pytest.mark.asyncio
async def test_transfer_to_agent_assigns_directly(engine, store, directory, notifier) -> None:
    agent = store.add_agent(directory.comercial, "Ana")
    target = store.add_agent(directory.financeiro, "Fabio")
    conversation = store.hold(agent, 1)[0]

    result = await engine.transfer_conversation(
        conversation.id, directory.financeiro.id, target.id
    )

    assert result.agent is not None
    assert result.agent.agent_id == target.id
    stored = store.conversations[conversation.id]
    assert stored.flow_state == FlowState.ASSIGNED
    assert stored.status == ConversationStatus.ASSIGNED
    assert stored.assigned_agent_id == target.id
    assert stored.timeout_at is None
    assert [entry.agent_id for entry in store.active_assignments(conversation.id)] == [target.id]
    assert len([e for e in store.assignments if e.conversation_id == conversation.id]) == 2
    assert notifier.named("agent_assigned") == [(target.id, conversation.id, "Fabio")]


@pytest.mark.asyncio
async def test_transfer_rejects_agent_outside_target_department(
    engine, store, directory, clock
) -> None:
    agent = store.add_agent(directory.comercial, "Ana")
    conversation = _queued(store, directory, directory.comercial, clock)

    with pytest.raises(AgentNotInDepartmentError):
        await engine.transfer_conversation(conversation.id, directory.financeiro.id, agent.id)

    assert store.conversations[conversation.id].department_id == directory.comercial.id


@pytest.mark.asyncio
async def test_transfer_to_other_company_department_is_not_found(
    engine, store, directory, clock
) -> None:
    other = store.add_company("Other Co")
    foreign = store.add_department(other, "comercial")
    conversation = _queued(store, directory, directory.comercial, clock)

    with pytest.raises(DepartmentNotFoundError):
        await engine.transfer_conversation(conversation.id, foreign.id)

    assert store.conversations[conversation.id].department_id == directory.comercial.id
