from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from support_routing.domain.enums import AgentOnlineStatus, FlowState
from support_routing.domain.state_machine import (
    ACTIVE_STATUSES,
    AVAILABLE_AGENT_STATUSES,
    ENGAGED_FLOW_STATES,
)
from support_routing.infra.db.models import (
    Agent,
    Assignment,
    Company,
    Conversation,
    Department,
)


@dataclass(frozen=True, slots=True)
class AgentLoad:
    agent_id: UUID
    display_name: str
    active_count: int


class CompanyRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, company_id: UUID) -> Company | None:
        return await self.session.get(Company, company_id)


class DepartmentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, department_id: UUID) -> Department | None:
        return await self.session.get(Department, department_id)

    async def find_by_slug(self, company_id: UUID, slug: str) -> Department | None:
        stmt: Select[tuple[Department]] = (
            select(Department)
            .where(
                Department.company_id == company_id,
                Department.slug == slug,
                Department.is_active.is_(True),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_root(self, company_id: UUID) -> Department | None:
        stmt: Select[tuple[Department]] = (
            select(Department)
            .where(
                Department.company_id == company_id,
                Department.is_root.is_(True),
                Department.is_active.is_(True),
            )
            .order_by(Department.created_at.asc(), Department.id.asc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


class AgentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, agent_id: UUID) -> Agent | None:
        return await self.session.get(Agent, agent_id)

    async def list_eligible_with_load(self, department_id: UUID) -> list[AgentLoad]:
        load = (
            select(
                Conversation.assigned_agent_id.label("agent_id"),
                func.count(Conversation.id).label("active_count"),
            )
            .where(
                Conversation.assigned_agent_id.is_not(None),
                Conversation.status.in_(ACTIVE_STATUSES),
                Conversation.flow_state.in_(ENGAGED_FLOW_STATES),
            )
            .group_by(Conversation.assigned_agent_id)
            .subquery()
        )
        stmt = (
            select(Agent.id, Agent.display_name, func.coalesce(load.c.active_count, 0))
            .outerjoin(load, load.c.agent_id == Agent.id)
            .where(
                Agent.department_id == department_id,
                Agent.is_active.is_(True),
                Agent.online_status.in_(AVAILABLE_AGENT_STATUSES),
            )
            .order_by(Agent.id.asc())
        )
        result = await self.session.execute(stmt)
        return [
            AgentLoad(agent_id=agent_id, display_name=display_name, active_count=int(count))
            for agent_id, display_name, count in result.all()
        ]

    async def set_status(
        self,
        agent_id: UUID,
        status: AgentOnlineStatus,
        heartbeat_at: datetime | None = None,
        only_if_in: tuple[AgentOnlineStatus, ...] | None = None,
        only_if_heartbeat_before: datetime | None = None,
    ) -> bool:
        conditions = [Agent.id == agent_id]
        if only_if_in is not None:
            conditions.append(Agent.online_status.in_(only_if_in))
        if only_if_heartbeat_before is not None:
            conditions.append(Agent.last_heartbeat_at < only_if_heartbeat_before)

        values: dict[str, Any] = {"online_status": status}
        if heartbeat_at is not None:
            values["last_heartbeat_at"] = heartbeat_at

        stmt = (
            update(Agent)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def touch_heartbeat(self, agent_id: UUID, heartbeat_at: datetime) -> bool:
        stmt = (
            update(Agent)
            .where(Agent.id == agent_id)
            .values(last_heartbeat_at=heartbeat_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def list_stale_available(self, cutoff: datetime) -> list[Agent]:
        stmt: Select[tuple[Agent]] = (
            select(Agent)
            .where(
                Agent.online_status.in_(AVAILABLE_AGENT_STATUSES),
                Agent.last_heartbeat_at < cutoff,
            )
            .order_by(Agent.id.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class ConversationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, conversation_id: UUID) -> Conversation | None:
        return await self.session.get(Conversation, conversation_id, populate_existing=True)

    async def get_by_customer(
        self, company_id: UUID, customer_phone: str
    ) -> Conversation | None:
        stmt: Select[tuple[Conversation]] = (
            select(Conversation)
            .where(
                Conversation.company_id == company_id,
                Conversation.customer_phone == customer_phone,
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        company_id: UUID,
        customer_phone: str,
        customer_name: str | None = None,
        metadata_json: dict | None = None,
    ) -> Conversation:
        conversation = Conversation(
            company_id=company_id,
            customer_phone=customer_phone,
            customer_name=customer_name,
            metadata_json=metadata_json or {},
        )
        self.session.add(conversation)
        await self.session.flush()
        await self.session.refresh(conversation)
        return conversation

    async def set_fields(self, conversation_id: UUID, **values: Any) -> None:
        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def set_fields_if(
        self,
        conversation_id: UUID,
        expected: Mapping[str, Any],
        **values: Any,
    ) -> bool:
        """Compare-and-set: write only if every expected column still matches.

        The precondition is part of the UPDATE itself, so concurrent writers
        racing on the same row see exactly one success.
        """
        conditions = [Conversation.id == conversation_id]
        for field_name, expected_value in expected.items():
            column = getattr(Conversation, field_name)
            if expected_value is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == expected_value)

        stmt = (
            update(Conversation)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def list_ids_held_by_agent(self, agent_id: UUID) -> list[UUID]:
        stmt = (
            select(Conversation.id)
            .where(
                Conversation.assigned_agent_id == agent_id,
                Conversation.status.in_(ACTIVE_STATUSES),
                Conversation.flow_state.in_(ENGAGED_FLOW_STATES),
            )
            .order_by(Conversation.assigned_at.asc().nulls_first(), Conversation.id.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_orphaned_assigned(self) -> list[Conversation]:
        stmt: Select[tuple[Conversation]] = (
            select(Conversation)
            .where(
                Conversation.flow_state == FlowState.ASSIGNED,
                Conversation.assigned_agent_id.is_(None),
                Conversation.status.in_(ACTIVE_STATUSES),
            )
            .order_by(Conversation.updated_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_timed_out(self, now: datetime) -> list[Conversation]:
        stmt: Select[tuple[Conversation]] = (
            select(Conversation)
            .where(
                Conversation.flow_state == FlowState.DEPARTMENT_SELECTED,
                Conversation.timeout_at.is_not(None),
                Conversation.timeout_at < now,
            )
            .order_by(Conversation.timeout_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_expired_suggestions(self, now: datetime) -> list[Conversation]:
        stmt: Select[tuple[Conversation]] = (
            select(Conversation)
            .where(
                Conversation.flow_state == FlowState.AWAITING_ROUTING_CONFIRMATION,
                Conversation.suggestion_expires_at.is_not(None),
                Conversation.suggestion_expires_at < now,
            )
            .order_by(Conversation.suggestion_expires_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class AssignmentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self, conversation_id: UUID, agent_id: UUID, assigned_at: datetime
    ) -> Assignment:
        assignment = Assignment(
            conversation_id=conversation_id,
            agent_id=agent_id,
            assigned_at=assigned_at,
        )
        self.session.add(assignment)
        await self.session.flush()
        return assignment

    async def close_active(self, conversation_id: UUID, unassigned_at: datetime) -> int:
        stmt = (
            update(Assignment)
            .where(
                Assignment.conversation_id == conversation_id,
                Assignment.unassigned_at.is_(None),
            )
            .values(unassigned_at=unassigned_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)

    async def get_active(self, conversation_id: UUID) -> Assignment | None:
        stmt: Select[tuple[Assignment]] = (
            select(Assignment)
            .where(
                Assignment.conversation_id == conversation_id,
                Assignment.unassigned_at.is_(None),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
