import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar
from uuid import UUID, uuid4

import pytest

from support_routing.core.config import Settings
from support_routing.domain.enums import AgentOnlineStatus, ConversationStatus, FlowState
from support_routing.domain.state_machine import (
    ACTIVE_STATUSES,
    AVAILABLE_AGENT_STATUSES,
    ENGAGED_FLOW_STATES,
)
from support_routing.infra.db.repositories import AgentLoad
from support_routing.infra.db.store import RoutingRepositories
from support_routing.services.dispatch_service import DispatchEngine

T = TypeVar("T")


@dataclass(slots=True)
class FakeCompany:
    id: UUID
    name: str
    greeting_message: str | None = None
    auto_assign_enabled: bool = True


@dataclass(slots=True)
class FakeDepartment:
    id: UUID
    company_id: UUID
    name: str
    slug: str
    response_timeout_minutes: int = 3
    is_root: bool = False
    is_active: bool = True


@dataclass(slots=True)
class FakeAgent:
    id: UUID
    company_id: UUID
    department_id: UUID | None
    display_name: str
    is_active: bool = True
    online_status: AgentOnlineStatus = AgentOnlineStatus.ONLINE
    last_heartbeat_at: datetime | None = None


@dataclass(slots=True)
class FakeConversation:
    id: UUID
    company_id: UUID
    customer_phone: str
    customer_name: str | None = None
    status: ConversationStatus = ConversationStatus.OPEN
    flow_state: FlowState = FlowState.GREETING
    department_id: UUID | None = None
    assigned_agent_id: UUID | None = None
    assigned_at: datetime | None = None
    routed_at: datetime | None = None
    timeout_at: datetime | None = None
    greeting_sent_at: datetime | None = None
    suggestion_expires_at: datetime | None = None
    last_department_id: UUID | None = None
    last_attendant_id: UUID | None = None
    last_attended_at: datetime | None = None
    metadata_json: dict | None = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(slots=True)
class FakeAssignment:
    id: UUID
    conversation_id: UUID
    agent_id: UUID
    assigned_at: datetime
    unassigned_at: datetime | None = None


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class FakeCompanyRepository:
    def __init__(self, store: "FakeRoutingStore") -> None:
        self.store = store

    async def get_by_id(self, company_id: UUID) -> FakeCompany | None:
        company = self.store.companies.get(company_id)
        return replace(company) if company is not None else None


class FakeDepartmentRepository:
    def __init__(self, store: "FakeRoutingStore") -> None:
        self.store = store

    async def get_by_id(self, department_id: UUID) -> FakeDepartment | None:
        department = self.store.departments.get(department_id)
        return replace(department) if department is not None else None

    async def find_by_slug(self, company_id: UUID, slug: str) -> FakeDepartment | None:
        for department in self.store.departments.values():
            if (
                department.company_id == company_id
                and department.slug == slug
                and department.is_active
            ):
                return replace(department)
        return None

    async def find_root(self, company_id: UUID) -> FakeDepartment | None:
        for department in self.store.departments.values():
            if department.company_id == company_id and department.is_root and department.is_active:
                return replace(department)
        return None


class FakeAgentRepository:
    def __init__(self, store: "FakeRoutingStore") -> None:
        self.store = store

    async def get_by_id(self, agent_id: UUID) -> FakeAgent | None:
        agent = self.store.agents.get(agent_id)
        return replace(agent) if agent is not None else None

    async def list_eligible_with_load(self, department_id: UUID) -> list[AgentLoad]:
        loads = [
            AgentLoad(
                agent_id=agent.id,
                display_name=agent.display_name,
                active_count=self.store.active_load(agent.id),
            )
            for agent in self.store.agents.values()
            if agent.department_id == department_id
            and agent.is_active
            and agent.online_status in AVAILABLE_AGENT_STATUSES
        ]
        # Yield between the read and the caller's write, like a real round trip.
        await asyncio.sleep(0)
        return sorted(loads, key=lambda load: load.agent_id)

    async def set_status(
        self,
        agent_id: UUID,
        status: AgentOnlineStatus,
        heartbeat_at: datetime | None = None,
        only_if_in: tuple[AgentOnlineStatus, ...] | None = None,
        only_if_heartbeat_before: datetime | None = None,
    ) -> bool:
        agent = self.store.agents.get(agent_id)
        if agent is None:
            return False
        if only_if_in is not None and agent.online_status not in only_if_in:
            return False
        if only_if_heartbeat_before is not None and (
            agent.last_heartbeat_at is None
            or agent.last_heartbeat_at >= only_if_heartbeat_before
        ):
            return False
        agent.online_status = status
        if heartbeat_at is not None:
            agent.last_heartbeat_at = heartbeat_at
        return True

    async def touch_heartbeat(self, agent_id: UUID, heartbeat_at: datetime) -> bool:
        agent = self.store.agents.get(agent_id)
        if agent is None:
            return False
        agent.last_heartbeat_at = heartbeat_at
        return True

    async def list_stale_available(self, cutoff: datetime) -> list[FakeAgent]:
        return [
            replace(agent)
            for agent in sorted(self.store.agents.values(), key=lambda agent: agent.id)
            if agent.online_status in AVAILABLE_AGENT_STATUSES
            and agent.last_heartbeat_at is not None
            and agent.last_heartbeat_at < cutoff
        ]


class FakeConversationRepository:
    def __init__(self, store: "FakeRoutingStore") -> None:
        self.store = store

    async def get_by_id(self, conversation_id: UUID) -> FakeConversation | None:
        conversation = self.store.conversations.get(conversation_id)
        return replace(conversation) if conversation is not None else None

    async def get_by_customer(
        self, company_id: UUID, customer_phone: str
    ) -> FakeConversation | None:
        for conversation in self.store.conversations.values():
            if (
                conversation.company_id == company_id
                and conversation.customer_phone == customer_phone
            ):
                return replace(conversation)
        return None

    async def create(
        self,
        company_id: UUID,
        customer_phone: str,
        customer_name: str | None = None,
        metadata_json: dict | None = None,
    ) -> FakeConversation:
        conversation = FakeConversation(
            id=uuid4(),
            company_id=company_id,
            customer_phone=customer_phone,
            customer_name=customer_name,
            metadata_json=metadata_json or {},
        )
        self.store.conversations[conversation.id] = conversation
        return replace(conversation)

    async def set_fields(self, conversation_id: UUID, **values: Any) -> None:
        self.store.write_count += 1
        conversation = self.store.conversations[conversation_id]
        for name, value in values.items():
            setattr(conversation, name, value)

    async def set_fields_if(
        self,
        conversation_id: UUID,
        expected: Mapping[str, Any],
        **values: Any,
    ) -> bool:
        conversation = self.store.conversations.get(conversation_id)
        if conversation is None:
            return False
        if any(getattr(conversation, name) != value for name, value in expected.items()):
            return False
        await self.set_fields(conversation_id, **values)
        return True

    async def list_ids_held_by_agent(self, agent_id: UUID) -> list[UUID]:
        return [
            conversation.id
            for conversation in self.store.conversations.values()
            if conversation.assigned_agent_id == agent_id
            and conversation.status in ACTIVE_STATUSES
            and conversation.flow_state in ENGAGED_FLOW_STATES
        ]

    async def list_orphaned_assigned(self) -> list[FakeConversation]:
        return [
            replace(conversation)
            for conversation in self.store.conversations.values()
            if conversation.flow_state == FlowState.ASSIGNED
            and conversation.assigned_agent_id is None
            and conversation.status in ACTIVE_STATUSES
        ]

    async def list_timed_out(self, now: datetime) -> list[FakeConversation]:
        return [
            replace(conversation)
            for conversation in self.store.conversations.values()
            if conversation.flow_state == FlowState.DEPARTMENT_SELECTED
            and conversation.timeout_at is not None
            and conversation.timeout_at < now
        ]

    async def list_expired_suggestions(self, now: datetime) -> list[FakeConversation]:
        return [
            replace(conversation)
            for conversation in self.store.conversations.values()
            if conversation.flow_state == FlowState.AWAITING_ROUTING_CONFIRMATION
            and conversation.suggestion_expires_at is not None
            and conversation.suggestion_expires_at < now
        ]


class FakeAssignmentRepository:
    def __init__(self, store: "FakeRoutingStore") -> None:
        self.store = store

    async def append(
        self, conversation_id: UUID, agent_id: UUID, assigned_at: datetime
    ) -> FakeAssignment:
        assignment = FakeAssignment(
            id=uuid4(),
            conversation_id=conversation_id,
            agent_id=agent_id,
            assigned_at=assigned_at,
        )
        self.store.assignments.append(assignment)
        return assignment

    async def close_active(self, conversation_id: UUID, unassigned_at: datetime) -> int:
        closed = 0
        for assignment in self.store.assignments:
            if assignment.conversation_id == conversation_id and assignment.unassigned_at is None:
                assignment.unassigned_at = unassigned_at
                closed += 1
        return closed

    async def get_active(self, conversation_id: UUID) -> FakeAssignment | None:
        for assignment in self.store.assignments:
            if assignment.conversation_id == conversation_id and assignment.unassigned_at is None:
                return assignment
        return None


class FakeRoutingStore:
    """In-memory stand-in for the database.

    Conditional writes are atomic because they never yield to the event
    loop; serializable work is serialized with a lock.
    """

    def __init__(self) -> None:
        self.companies: dict[UUID, FakeCompany] = {}
        self.departments: dict[UUID, FakeDepartment] = {}
        self.agents: dict[UUID, FakeAgent] = {}
        self.conversations: dict[UUID, FakeConversation] = {}
        self.assignments: list[FakeAssignment] = []
        self.write_count = 0
        self.serializable_runs = 0
        self._serial_lock = asyncio.Lock()
        self.repos = RoutingRepositories(
            companies=FakeCompanyRepository(self),
            departments=FakeDepartmentRepository(self),
            agents=FakeAgentRepository(self),
            conversations=FakeConversationRepository(self),
            assignments=FakeAssignmentRepository(self),
        )

    @asynccontextmanager
    async def unit(self) -> AsyncIterator[RoutingRepositories]:
        yield self.repos

    async def run_serializable(
        self, work: Callable[[RoutingRepositories], Awaitable[T]]
    ) -> T:
        async with self._serial_lock:
            self.serializable_runs += 1
            return await work(self.repos)

    def add_company(
        self,
        name: str = "Acme Labs",
        greeting_message: str | None = None,
        auto_assign_enabled: bool = True,
    ) -> FakeCompany:
        company = FakeCompany(
            id=uuid4(),
            name=name,
            greeting_message=greeting_message,
            auto_assign_enabled=auto_assign_enabled,
        )
        self.companies[company.id] = company
        return company

    def add_department(
        self,
        company: FakeCompany,
        slug: str,
        response_timeout_minutes: int = 3,
        is_root: bool = False,
    ) -> FakeDepartment:
        department = FakeDepartment(
            id=uuid4(),
            company_id=company.id,
            name=slug.capitalize(),
            slug=slug,
            response_timeout_minutes=response_timeout_minutes,
            is_root=is_root,
        )
        self.departments[department.id] = department
        return department

    def add_agent(
        self,
        department: FakeDepartment,
        display_name: str,
        online_status: AgentOnlineStatus = AgentOnlineStatus.ONLINE,
        agent_id: UUID | None = None,
        last_heartbeat_at: datetime | None = None,
    ) -> FakeAgent:
        agent = FakeAgent(
            id=agent_id or uuid4(),
            company_id=department.company_id,
            department_id=department.id,
            display_name=display_name,
            online_status=online_status,
            last_heartbeat_at=last_heartbeat_at,
        )
        self.agents[agent.id] = agent
        return agent

    def add_conversation(self, company: FakeCompany, **fields: Any) -> FakeConversation:
        fields.setdefault("customer_phone", f"+55119{len(self.conversations):08d}")
        conversation = FakeConversation(id=uuid4(), company_id=company.id, **fields)
        self.conversations[conversation.id] = conversation
        return conversation

    def hold(self, agent: FakeAgent, count: int) -> list[FakeConversation]:
        """Give an agent ``count`` engaged conversations with open ledger entries."""
        held = []
        now = datetime.now(UTC)
        for _ in range(count):
            conversation = self.add_conversation(
                self.companies[agent.company_id],
                status=ConversationStatus.ASSIGNED,
                flow_state=FlowState.ASSIGNED,
                department_id=agent.department_id,
                assigned_agent_id=agent.id,
                assigned_at=now,
            )
            self.assignments.append(
                FakeAssignment(
                    id=uuid4(),
                    conversation_id=conversation.id,
                    agent_id=agent.id,
                    assigned_at=now,
                )
            )
            held.append(conversation)
        return held

    def active_load(self, agent_id: UUID) -> int:
        return sum(
            1
            for conversation in self.conversations.values()
            if conversation.assigned_agent_id == agent_id
            and conversation.status in ACTIVE_STATUSES
            and conversation.flow_state in ENGAGED_FLOW_STATES
        )

    def active_assignments(self, conversation_id: UUID) -> list[FakeAssignment]:
        return [
            assignment
            for assignment in self.assignments
            if assignment.conversation_id == conversation_id and assignment.unassigned_at is None
        ]


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail = False

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.fail:
            raise RuntimeError(f"{name} delivery failed")

    async def notify_department_queued(
        self, department_id: UUID, conversation_id: UUID, reason: str
    ) -> None:
        self._record("department_queued", department_id, conversation_id, reason)

    async def notify_agent_assigned(
        self, agent_id: UUID, conversation_id: UUID, agent_name: str
    ) -> None:
        self._record("agent_assigned", agent_id, conversation_id, agent_name)

    async def notify_company_transferred(
        self,
        company_id: UUID,
        conversation_id: UUID,
        to_department_id: UUID,
        reason: str,
    ) -> None:
        self._record("company_transferred", company_id, conversation_id, to_department_id, reason)

    async def send_customer_text(self, conversation_id: UUID, text: str) -> None:
        self._record("customer_text", conversation_id, text)

    async def notify_agent_status_changed(
        self,
        department_id: UUID | None,
        agent_id: UUID,
        status: AgentOnlineStatus,
    ) -> None:
        self._record("agent_status_changed", department_id, agent_id, status)

    async def notify_conversation_resolved(
        self, conversation_id: UUID, department_id: UUID | None
    ) -> None:
        self._record("conversation_resolved", conversation_id, department_id)

    def named(self, name: str) -> list[tuple[Any, ...]]:
        return [args for call_name, args in self.calls if call_name == name]

    def texts_for(self, conversation_id: UUID) -> list[str]:
        return [args[1] for args in self.named("customer_text") if args[0] == conversation_id]


@dataclass(slots=True)
class Directory:
    company: FakeCompany
    comercial: FakeDepartment
    financeiro: FakeDepartment
    admin: FakeDepartment


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeRoutingStore:
    return FakeRoutingStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        root_escalation_timeout_minutes=10,
        fallback_department_slug="administrativo",
        routing_suggestion_timeout_minutes=2,
        agent_heartbeat_timeout_seconds=120,
    )


@pytest.fixture
def directory(store: FakeRoutingStore) -> Directory:
    company = store.add_company()
    return Directory(
        company=company,
        comercial=store.add_department(company, "comercial", response_timeout_minutes=3),
        financeiro=store.add_department(company, "financeiro", response_timeout_minutes=5),
        admin=store.add_department(
            company, "administrativo", response_timeout_minutes=10, is_root=True
        ),
    )


@pytest.fixture
def engine(
    store: FakeRoutingStore,
    notifier: RecordingNotifier,
    settings: Settings,
    clock: FakeClock,
) -> DispatchEngine:
    return DispatchEngine(store, notifier, settings, clock)
