"""Routing, least-loaded assignment and escalation of conversations.

Every state change is either a conditional single-row write (the row's
expected current values are part of the UPDATE) or, for agent selection, a
serializable read-aggregate-write transaction. Notifications are sent after
the write commits and never undo it.
"""

import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from uuid import UUID

from support_routing.core.clock import Clock, utcnow
from support_routing.core.config import Settings, get_settings
from support_routing.domain.enums import (
    ConversationStatus,
    EscalationReason,
    FlowAction,
    FlowState,
    QueueReason,
)
from support_routing.domain.exceptions import InvalidFlowTransition
from support_routing.domain.menu import (
    all_agents_unavailable_text,
    closing_text,
    connecting_text,
    escalation_text,
    suggestion_expired_text,
)
from support_routing.domain.state_machine import FlowLifecycle
from support_routing.infra.db.models import Conversation
from support_routing.infra.db.store import RoutingRepositories, RoutingStore
from support_routing.infra.realtime.notifier import NoopNotifier, Notifier
from support_routing.services.errors import (
    AgentNotFoundError,
    AgentNotInDepartmentError,
    ConversationArchivedError,
    ConversationNotFoundError,
    DepartmentNotFoundError,
    RootDepartmentMissingError,
)

logger = logging.getLogger(__name__)


class RouteOutcome(str, Enum):
    ROUTED = "routed"
    NOT_FOUND = "not_found"
    # The conversation left the expected flow state before the write.
    SUPERSEDED = "superseded"


class EscalationOutcome(str, Enum):
    SKIPPED = "skipped"
    ASSIGNED = "assigned"
    EXHAUSTED = "exhausted"
    # Moved to root, but a concurrent writer decided what happened next.
    ESCALATED = "escalated"


@dataclass(frozen=True, slots=True)
class AssignedAgent:
    agent_id: UUID
    agent_name: str
    newly_assigned: bool = True


@dataclass(slots=True)
class RouteResult:
    outcome: RouteOutcome
    department_id: UUID | None = None
    agent: AssignedAgent | None = None
    escalation: EscalationOutcome | None = None


@dataclass(slots=True)
class SweepReport:
    reconciled: int = 0
    reassigned: int = 0
    escalated: int = 0
    failed: int = 0


@dataclass(slots=True)
class RedistributionReport:
    released: int = 0
    reassigned: int = 0
    queued: int = 0


class DispatchEngine:
    def __init__(
        self,
        store: RoutingStore,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self.notifier = notifier or NoopNotifier()
        self.clock = clock or utcnow
        self.fallback_department_slug = settings.fallback_department_slug
        self.root_escalation_timeout = timedelta(
            minutes=settings.root_escalation_timeout_minutes
        )

    async def get_conversation(self, conversation_id: UUID) -> Conversation:
        async with self.store.unit() as repos:
            conversation = await repos.conversations.get_by_id(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def route_to_department(
        self,
        conversation_id: UUID,
        department_slug: str,
        company_id: UUID,
        expected_flow_state: FlowState | None = None,
    ) -> RouteResult:
        """Queue the conversation on a department, then try to hand it to an agent.

        The department, routing time and deadline are written before any
        assignment attempt so the conversation shows up in the department
        queue even when nobody can take it. The write is conditional on the
        flow state and agent read just before it; losing it means someone
        else moved the conversation first. A department with no eligible
        agent escalates to root straight away instead of waiting for its
        deadline, unless the company assigns by hand.
        """
        async with self.store.unit() as repos:
            department = await repos.departments.find_by_slug(company_id, department_slug)
            if department is None and department_slug == self.fallback_department_slug:
                department = await repos.departments.find_root(company_id)
            if department is None:
                logger.warning(
                    "Department '%s' not found for company %s", department_slug, company_id
                )
                return RouteResult(outcome=RouteOutcome.NOT_FOUND)

            conversation = await repos.conversations.get_by_id(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            if expected_flow_state is not None and conversation.flow_state != expected_flow_state:
                return RouteResult(outcome=RouteOutcome.SUPERSEDED)
            next_state = FlowLifecycle.transition(
                conversation.flow_state, FlowAction.SELECT_DEPARTMENT
            )

            now = self.clock()
            written = await repos.conversations.set_fields_if(
                conversation_id,
                {
                    "flow_state": conversation.flow_state,
                    "assigned_agent_id": conversation.assigned_agent_id,
                },
                department_id=department.id,
                routed_at=now,
                timeout_at=now + timedelta(minutes=department.response_timeout_minutes),
                flow_state=next_state,
                status=ConversationStatus.OPEN,
                suggestion_expires_at=None,
            )
            if not written:
                logger.debug(
                    "Conversation %s changed before routing; skipping", conversation_id
                )
                return RouteResult(outcome=RouteOutcome.SUPERSEDED)
            company = await repos.companies.get_by_id(company_id)
            auto_assign = company is None or company.auto_assign_enabled
            department_id = department.id
            department_name = department.name
            department_is_root = department.is_root

        logger.info("Conversation %s routed to department %s", conversation_id, department_slug)
        await self._deliver(
            "department queued",
            self.notifier.notify_department_queued(
                department_id, conversation_id, QueueReason.NEW.value
            ),
        )
        if not auto_assign:
            logger.info(
                "Auto-assignment disabled for company %s; conversation %s stays queued",
                company_id,
                conversation_id,
            )
            return RouteResult(outcome=RouteOutcome.ROUTED, department_id=department_id)

        agent = await self.assign_to_agent(conversation_id, department_id)
        if agent is not None:
            await self._announce_assignment(conversation_id, agent)
            await self._deliver(
                "connecting text",
                self.notifier.send_customer_text(
                    conversation_id, connecting_text(agent.agent_name, department_name)
                ),
            )
            return RouteResult(
                outcome=RouteOutcome.ROUTED, department_id=department_id, agent=agent
            )

        if department_is_root:
            # Nowhere left to escalate to.
            escalation = await self._exhaust(conversation_id, department_id)
        else:
            logger.info(
                "No eligible agent in department %s; escalating conversation %s",
                department_slug,
                conversation_id,
            )
            escalation = await self.redirect_to_admin(
                conversation_id, company_id, EscalationReason.OFFLINE
            )
        return RouteResult(
            outcome=RouteOutcome.ROUTED, department_id=department_id, escalation=escalation
        )

    async def assign_to_agent(
        self, conversation_id: UUID, department_id: UUID
    ) -> AssignedAgent | None:
        """Give the conversation to the least-loaded eligible agent of a department.

        Listing the candidates' loads and writing the winner run in one
        serializable transaction; two conversations routed in parallel can
        therefore never both observe the same agent as idle. Ties go to the
        lowest agent id.
        """

        async def select_and_assign(repos: RoutingRepositories) -> AssignedAgent | None:
            conversation = await repos.conversations.get_by_id(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)

            if (
                conversation.flow_state == FlowState.ASSIGNED
                and conversation.assigned_agent_id is not None
            ):
                holder = await repos.agents.get_by_id(conversation.assigned_agent_id)
                return AssignedAgent(
                    agent_id=conversation.assigned_agent_id,
                    agent_name=holder.display_name if holder is not None else "",
                    newly_assigned=False,
                )

            try:
                next_state = FlowLifecycle.transition(
                    conversation.flow_state, FlowAction.ASSIGN_AGENT
                )
            except InvalidFlowTransition:
                logger.debug(
                    "Conversation %s is in %s; not assigning",
                    conversation_id,
                    conversation.flow_state.value,
                )
                return None
            if conversation.department_id != department_id:
                logger.debug(
                    "Conversation %s moved to another department; not assigning",
                    conversation_id,
                )
                return None
            company = await repos.companies.get_by_id(conversation.company_id)
            if company is not None and not company.auto_assign_enabled:
                logger.debug(
                    "Auto-assignment disabled for company %s; not assigning",
                    conversation.company_id,
                )
                return None

            candidates = await repos.agents.list_eligible_with_load(department_id)
            if not candidates:
                return None
            selected = min(
                candidates, key=lambda candidate: (candidate.active_count, candidate.agent_id)
            )

            now = self.clock()
            await repos.conversations.set_fields(
                conversation_id,
                assigned_agent_id=selected.agent_id,
                assigned_at=now,
                flow_state=next_state,
                status=ConversationStatus.ASSIGNED,
                timeout_at=None,
            )
            dangling = await repos.assignments.get_active(conversation_id)
            if dangling is not None:
                logger.warning(
                    "Conversation %s still had an open assignment to agent %s; closing it",
                    conversation_id,
                    dangling.agent_id,
                )
                await repos.assignments.close_active(conversation_id, now)
            await repos.assignments.append(conversation_id, selected.agent_id, now)
            return AssignedAgent(agent_id=selected.agent_id, agent_name=selected.display_name)

        agent = await self.store.run_serializable(select_and_assign)
        if agent is not None and agent.newly_assigned:
            logger.info(
                "Conversation %s assigned to agent %s", conversation_id, agent.agent_id
            )
        return agent

    async def check_timeout_and_redirect(self) -> SweepReport:
        """Repair orphaned assignments, then escalate conversations past their deadline."""
        report = SweepReport()

        async with self.store.unit() as repos:
            orphaned = []
            for conversation in await repos.conversations.list_orphaned_assigned():
                logger.warning(
                    "Conversation %s is inconsistent (%s); repairing",
                    conversation.id,
                    "; ".join(FlowLifecycle.invariant_violations(conversation)),
                )
                orphaned.append((conversation.id, conversation.department_id))
        for conversation_id, department_id in orphaned:
            try:
                reconciled, agent = await self._reconcile(conversation_id, department_id)
            except Exception:
                report.failed += 1
                logger.exception("Reconciliation failed for conversation %s", conversation_id)
                continue
            if reconciled:
                report.reconciled += 1
            if agent is not None:
                report.reassigned += 1

        async with self.store.unit() as repos:
            timed_out = [
                (conversation.id, conversation.company_id)
                for conversation in await repos.conversations.list_timed_out(self.clock())
            ]
        for conversation_id, company_id in timed_out:
            try:
                outcome = await self.redirect_to_admin(
                    conversation_id, company_id, EscalationReason.TIMEOUT
                )
            except Exception:
                report.failed += 1
                logger.exception("Escalation failed for conversation %s", conversation_id)
                continue
            if outcome != EscalationOutcome.SKIPPED:
                report.escalated += 1

        if orphaned or timed_out:
            logger.info(
                "Sweep finished: reconciled=%d reassigned=%d escalated=%d failed=%d",
                report.reconciled,
                report.reassigned,
                report.escalated,
                report.failed,
            )
        return report

    async def redirect_to_admin(
        self,
        conversation_id: UUID,
        company_id: UUID,
        reason: EscalationReason,
    ) -> EscalationOutcome:
        async with self.store.unit() as repos:
            root = await repos.departments.find_root(company_id)
            if root is None:
                logger.error("No root department for company %s", company_id)
                raise RootDepartmentMissingError(company_id)

            conversation = await repos.conversations.get_by_id(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            if not FlowLifecycle.can_apply(conversation.flow_state, FlowAction.ESCALATE):
                logger.debug(
                    "Conversation %s is in %s; escalation skipped",
                    conversation_id,
                    conversation.flow_state.value,
                )
                return EscalationOutcome.SKIPPED

            company = await repos.companies.get_by_id(company_id)
            auto_assign = company is None or company.auto_assign_enabled

            now = self.clock()
            moved = await repos.conversations.set_fields_if(
                conversation_id,
                {
                    "flow_state": conversation.flow_state,
                    "department_id": conversation.department_id,
                    "timeout_at": conversation.timeout_at,
                },
                department_id=root.id,
                routed_at=now,
                # Waiting on a manual assignment has no deadline.
                timeout_at=now + self.root_escalation_timeout if auto_assign else None,
                flow_state=FlowLifecycle.transition(
                    conversation.flow_state, FlowAction.ESCALATE
                ),
                status=ConversationStatus.OPEN,
                assigned_agent_id=None,
            )
            if not moved:
                logger.debug("Conversation %s changed concurrently; escalation skipped", conversation_id)
                return EscalationOutcome.SKIPPED
            root_id = root.id

        logger.info(
            "Conversation %s escalated to root department (%s)", conversation_id, reason.value
        )
        await self._deliver(
            "company transferred",
            self.notifier.notify_company_transferred(
                company_id, conversation_id, root_id, reason.value
            ),
        )
        if not auto_assign:
            return EscalationOutcome.ESCALATED

        agent = await self.assign_to_agent(conversation_id, root_id)
        if agent is not None:
            await self._announce_assignment(conversation_id, agent)
            await self._deliver(
                "escalation text",
                self.notifier.send_customer_text(conversation_id, escalation_text(reason)),
            )
            return EscalationOutcome.ASSIGNED
        return await self._exhaust(conversation_id, root_id)

    async def _exhaust(self, conversation_id: UUID, root_id: UUID) -> EscalationOutcome:
        """Send a conversation nobody in root can take back to the menu."""
        async with self.store.unit() as repos:
            reset = await repos.conversations.set_fields_if(
                conversation_id,
                {
                    "flow_state": FlowState.DEPARTMENT_SELECTED,
                    "department_id": root_id,
                    "assigned_agent_id": None,
                },
                flow_state=FlowLifecycle.transition(
                    FlowState.DEPARTMENT_SELECTED, FlowAction.EXHAUST_ESCALATION
                ),
                status=ConversationStatus.OPEN,
                department_id=None,
                assigned_agent_id=None,
                timeout_at=None,
                greeting_sent_at=None,
            )
        if not reset:
            return EscalationOutcome.ESCALATED

        logger.warning(
            "No agent available in root department; conversation %s reset to greeting",
            conversation_id,
        )
        await self._deliver(
            "all agents unavailable text",
            self.notifier.send_customer_text(conversation_id, all_agents_unavailable_text()),
        )
        return EscalationOutcome.EXHAUSTED

    async def redistribute_on_agent_offline(self, agent_id: UUID) -> RedistributionReport:
        """Release everything the agent holds and re-offer it within each department.

        Conversations are handled one at a time so each reassignment counts
        the loads left by the previous one. Whatever cannot be placed stays
        queued; escalation is left to its deadline.
        """
        report = RedistributionReport()
        async with self.store.unit() as repos:
            held = await repos.conversations.list_ids_held_by_agent(agent_id)

        for conversation_id in held:
            released, department_id = await self._release(conversation_id, agent_id)
            if not released:
                continue
            report.released += 1
            if department_id is None:
                continue

            agent = await self.assign_to_agent(conversation_id, department_id)
            if agent is not None:
                report.reassigned += 1
                await self._announce_assignment(conversation_id, agent)
            else:
                report.queued += 1
                await self._deliver(
                    "department queued",
                    self.notifier.notify_department_queued(
                        department_id, conversation_id, QueueReason.AGENT_OFFLINE.value
                    ),
                )

        if held:
            logger.info(
                "Agent %s went offline: released=%d reassigned=%d queued=%d",
                agent_id,
                report.released,
                report.reassigned,
                report.queued,
            )
        return report

    async def resolve_conversation(
        self, conversation_id: UUID, send_closing_message: bool = False
    ) -> None:
        async with self.store.unit() as repos:
            conversation = await repos.conversations.get_by_id(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)

            now = self.clock()
            values = {
                "status": ConversationStatus.RESOLVED,
                "flow_state": FlowLifecycle.transition(
                    conversation.flow_state, FlowAction.RESOLVE
                ),
                "department_id": None,
                "assigned_agent_id": None,
                "timeout_at": None,
                "suggestion_expires_at": None,
                "greeting_sent_at": None,
            }
            # Remember who served the customer for the next engagement.
            if conversation.department_id is not None and conversation.assigned_agent_id is not None:
                values["last_department_id"] = conversation.department_id
                values["last_attendant_id"] = conversation.assigned_agent_id
                values["last_attended_at"] = now
            await repos.conversations.set_fields(conversation_id, **values)
            await repos.assignments.close_active(conversation_id, now)
            department_id = conversation.department_id

        logger.info("Conversation %s resolved", conversation_id)
        await self._deliver(
            "conversation resolved",
            self.notifier.notify_conversation_resolved(conversation_id, department_id),
        )
        if send_closing_message:
            await self._deliver(
                "closing text",
                self.notifier.send_customer_text(conversation_id, closing_text()),
            )

    async def assign_conversation(
        self, conversation_id: UUID, agent_id: UUID
    ) -> AssignedAgent | None:
        """Hand the conversation to a chosen agent of its department.

        A conversation without a department joins the agent's. Returns None
        when the conversation changed between the read and the write.
        """

        async def assign_manually(repos: RoutingRepositories) -> AssignedAgent | None:
            conversation = await repos.conversations.get_by_id(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            if conversation.status == ConversationStatus.ARCHIVED:
                raise ConversationArchivedError(conversation_id)
            agent = await repos.agents.get_by_id(agent_id)
            if agent is None or not agent.is_active or agent.company_id != conversation.company_id:
                raise AgentNotFoundError(agent_id)
            department_id = conversation.department_id or agent.department_id
            if department_id is None or agent.department_id != department_id:
                raise AgentNotInDepartmentError(agent_id, conversation.department_id)

            if (
                conversation.flow_state == FlowState.ASSIGNED
                and conversation.assigned_agent_id == agent_id
            ):
                return AssignedAgent(
                    agent_id=agent_id, agent_name=agent.display_name, newly_assigned=False
                )

            now = self.clock()
            written = await repos.conversations.set_fields_if(
                conversation_id,
                {
                    "flow_state": conversation.flow_state,
                    "assigned_agent_id": conversation.assigned_agent_id,
                },
                department_id=department_id,
                assigned_agent_id=agent_id,
                assigned_at=now,
                flow_state=FlowLifecycle.transition(
                    conversation.flow_state, FlowAction.ASSIGN_MANUALLY
                ),
                status=ConversationStatus.ASSIGNED,
                timeout_at=None,
                suggestion_expires_at=None,
            )
            if not written:
                return None
            previous = await repos.assignments.get_active(conversation_id)
            if previous is not None:
                await repos.assignments.close_active(conversation_id, now)
            await repos.assignments.append(conversation_id, agent_id, now)
            return AssignedAgent(agent_id=agent_id, agent_name=agent.display_name)

        agent = await self.store.run_serializable(assign_manually)
        if agent is None:
            logger.debug(
                "Conversation %s changed concurrently; manual assignment skipped",
                conversation_id,
            )
        elif agent.newly_assigned:
            logger.info(
                "Conversation %s manually assigned to agent %s", conversation_id, agent_id
            )
            await self._announce_assignment(conversation_id, agent)
        return agent

    async def unassign_conversation(self, conversation_id: UUID) -> bool:
        """Take the conversation away from its agent and put it back in the queue."""
        conversation = await self.get_conversation(conversation_id)
        if conversation.assigned_agent_id is None:
            return False

        released, department_id = await self._release(
            conversation_id, conversation.assigned_agent_id
        )
        if not released:
            return False
        logger.info("Conversation %s unassigned", conversation_id)
        if department_id is not None:
            await self._deliver(
                "department queued",
                self.notifier.notify_department_queued(
                    department_id, conversation_id, QueueReason.UNASSIGNED.value
                ),
            )
        return True

    async def transfer_conversation(
        self,
        conversation_id: UUID,
        department_id: UUID,
        agent_id: UUID | None = None,
    ) -> RouteResult:
        """Move the conversation to another department, optionally straight to one of its agents.

        Without an agent the conversation waits in the new department's queue
        under a fresh deadline; the sweeper escalates it if nobody picks it
        up.
        """

        async def transfer(
            repos: RoutingRepositories,
        ) -> tuple[RouteResult, UUID, AssignedAgent | None]:
            conversation = await repos.conversations.get_by_id(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            if conversation.status == ConversationStatus.ARCHIVED:
                raise ConversationArchivedError(conversation_id)
            department = await repos.departments.get_by_id(department_id)
            if (
                department is None
                or not department.is_active
                or department.company_id != conversation.company_id
            ):
                raise DepartmentNotFoundError(department_id)

            assigned: AssignedAgent | None = None
            if agent_id is not None:
                agent = await repos.agents.get_by_id(agent_id)
                if agent is None or not agent.is_active:
                    raise AgentNotFoundError(agent_id)
                if agent.department_id != department_id:
                    raise AgentNotInDepartmentError(agent_id, department_id)
                assigned = AssignedAgent(agent_id=agent_id, agent_name=agent.display_name)

            now = self.clock()
            values = {
                "department_id": department_id,
                "routed_at": now,
                "timeout_at": now + timedelta(minutes=department.response_timeout_minutes),
                "flow_state": FlowLifecycle.transition(
                    conversation.flow_state, FlowAction.TRANSFER
                ),
                "status": ConversationStatus.OPEN,
                "assigned_agent_id": None,
                "assigned_at": None,
                "suggestion_expires_at": None,
            }
            if assigned is not None:
                values.update(
                    assigned_agent_id=assigned.agent_id,
                    assigned_at=now,
                    flow_state=FlowLifecycle.transition(
                        values["flow_state"], FlowAction.ASSIGN_AGENT
                    ),
                    status=ConversationStatus.ASSIGNED,
                    timeout_at=None,
                )
            written = await repos.conversations.set_fields_if(
                conversation_id,
                {
                    "flow_state": conversation.flow_state,
                    "assigned_agent_id": conversation.assigned_agent_id,
                },
                **values,
            )
            if not written:
                return RouteResult(outcome=RouteOutcome.SUPERSEDED), conversation.company_id, None
            await repos.assignments.close_active(conversation_id, now)
            if assigned is not None:
                await repos.assignments.append(conversation_id, assigned.agent_id, now)
            result = RouteResult(
                outcome=RouteOutcome.ROUTED, department_id=department_id, agent=assigned
            )
            return result, conversation.company_id, assigned

        result, company_id, assigned = await self.store.run_serializable(transfer)
        if result.outcome == RouteOutcome.SUPERSEDED:
            logger.debug("Conversation %s changed concurrently; transfer skipped", conversation_id)
            return result

        logger.info("Conversation %s transferred to department %s", conversation_id, department_id)
        await self._deliver(
            "company transferred",
            self.notifier.notify_company_transferred(
                company_id, conversation_id, department_id, QueueReason.TRANSFER.value
            ),
        )
        await self._deliver(
            "department queued",
            self.notifier.notify_department_queued(
                department_id, conversation_id, QueueReason.TRANSFER.value
            ),
        )
        if assigned is not None:
            await self._announce_assignment(conversation_id, assigned)
        return result

    async def expire_routing_suggestions(self) -> int:
        """Send customers whose suggestion went unanswered back to the menu."""
        async with self.store.unit() as repos:
            expired = [
                (conversation.id, conversation.suggestion_expires_at)
                for conversation in await repos.conversations.list_expired_suggestions(
                    self.clock()
                )
            ]

        reverted = 0
        for conversation_id, deadline in expired:
            try:
                async with self.store.unit() as repos:
                    written = await repos.conversations.set_fields_if(
                        conversation_id,
                        {
                            "flow_state": FlowState.AWAITING_ROUTING_CONFIRMATION,
                            "suggestion_expires_at": deadline,
                        },
                        flow_state=FlowLifecycle.transition(
                            FlowState.AWAITING_ROUTING_CONFIRMATION,
                            FlowAction.EXPIRE_SUGGESTION,
                        ),
                        suggestion_expires_at=None,
                    )
            except Exception:
                logger.exception("Suggestion expiry failed for conversation %s", conversation_id)
                continue
            if not written:
                continue
            reverted += 1
            await self._deliver(
                "suggestion expired text",
                self.notifier.send_customer_text(conversation_id, suggestion_expired_text()),
            )
        return reverted

    async def _reconcile(
        self, conversation_id: UUID, department_id: UUID | None
    ) -> tuple[bool, AssignedAgent | None]:
        async with self.store.unit() as repos:
            department = (
                await repos.departments.get_by_id(department_id)
                if department_id is not None
                else None
            )
            now = self.clock()
            if department is None:
                # Nothing to queue on; start over from the menu.
                values = {
                    "flow_state": FlowState.GREETING,
                    "department_id": None,
                    "timeout_at": None,
                    "greeting_sent_at": None,
                }
            else:
                values = {
                    "flow_state": FlowLifecycle.transition(
                        FlowState.ASSIGNED, FlowAction.RELEASE_AGENT
                    ),
                    "timeout_at": now
                    + timedelta(minutes=department.response_timeout_minutes),
                }
            reset = await repos.conversations.set_fields_if(
                conversation_id,
                {"flow_state": FlowState.ASSIGNED, "assigned_agent_id": None},
                status=ConversationStatus.OPEN,
                **values,
            )
            if reset:
                await repos.assignments.close_active(conversation_id, now)

        if not reset:
            return False, None
        logger.info("Conversation %s released for reassignment", conversation_id)
        if department is None:
            return True, None

        agent = await self.assign_to_agent(conversation_id, department.id)
        if agent is not None:
            await self._announce_assignment(conversation_id, agent)
        else:
            await self._deliver(
                "department queued",
                self.notifier.notify_department_queued(
                    department.id, conversation_id, QueueReason.RECONCILED.value
                ),
            )
        return True, agent

    async def _release(
        self, conversation_id: UUID, agent_id: UUID
    ) -> tuple[bool, UUID | None]:
        async with self.store.unit() as repos:
            conversation = await repos.conversations.get_by_id(conversation_id)
            if (
                conversation is None
                or conversation.assigned_agent_id != agent_id
                or not FlowLifecycle.is_engaged(conversation.status, conversation.flow_state)
            ):
                return False, None

            department = (
                await repos.departments.get_by_id(conversation.department_id)
                if conversation.department_id is not None
                else None
            )
            now = self.clock()
            if department is None:
                values = {
                    "flow_state": FlowState.GREETING,
                    "timeout_at": None,
                    "greeting_sent_at": None,
                }
            else:
                values = {
                    "flow_state": FlowLifecycle.transition(
                        conversation.flow_state, FlowAction.RELEASE_AGENT
                    ),
                    "timeout_at": now
                    + timedelta(minutes=department.response_timeout_minutes),
                }
            released = await repos.conversations.set_fields_if(
                conversation_id,
                {"assigned_agent_id": agent_id},
                assigned_agent_id=None,
                status=ConversationStatus.OPEN,
                **values,
            )
            if not released:
                return False, None
            await repos.assignments.close_active(conversation_id, now)
        return True, department.id if department is not None else None

    async def _announce_assignment(self, conversation_id: UUID, agent: AssignedAgent) -> None:
        if not agent.newly_assigned:
            return
        await self._deliver(
            "agent assigned",
            self.notifier.notify_agent_assigned(agent.agent_id, conversation_id, agent.agent_name),
        )

    async def _deliver(self, description: str, delivery: Awaitable[None]) -> None:
        try:
            await delivery
        except Exception:
            logger.exception("Notification delivery failed (%s)", description)
