from typing import Any

from support_routing.domain.enums import (
    AgentOnlineStatus,
    ConversationStatus,
    FlowAction,
    FlowState,
)
from support_routing.domain.exceptions import InvalidFlowTransition

# A conversation counts towards an agent's load while in one of these.
ACTIVE_STATUSES: tuple[ConversationStatus, ...] = (
    ConversationStatus.OPEN,
    ConversationStatus.ASSIGNED,
)
ENGAGED_FLOW_STATES: tuple[FlowState, ...] = (
    FlowState.DEPARTMENT_SELECTED,
    FlowState.ASSIGNED,
)
AVAILABLE_AGENT_STATUSES: tuple[AgentOnlineStatus, ...] = (
    AgentOnlineStatus.ONLINE,
    AgentOnlineStatus.BUSY,
)


class FlowLifecycle:
    """Routing state machine: greeting -> department selected -> assigned."""

    _allowed_transitions: dict[tuple[FlowState, FlowAction], FlowState] = {
        (FlowState.GREETING, FlowAction.SUGGEST_PREVIOUS_DEPARTMENT): FlowState.AWAITING_ROUTING_CONFIRMATION,
        (FlowState.AWAITING_ROUTING_CONFIRMATION, FlowAction.DECLINE_SUGGESTION): FlowState.GREETING,
        (FlowState.AWAITING_ROUTING_CONFIRMATION, FlowAction.EXPIRE_SUGGESTION): FlowState.GREETING,
        (FlowState.GREETING, FlowAction.SELECT_DEPARTMENT): FlowState.DEPARTMENT_SELECTED,
        (FlowState.AWAITING_ROUTING_CONFIRMATION, FlowAction.SELECT_DEPARTMENT): FlowState.DEPARTMENT_SELECTED,
        (FlowState.DEPARTMENT_SELECTED, FlowAction.SELECT_DEPARTMENT): FlowState.DEPARTMENT_SELECTED,
        (FlowState.TIMEOUT_REDIRECT, FlowAction.SELECT_DEPARTMENT): FlowState.DEPARTMENT_SELECTED,
        (FlowState.DEPARTMENT_SELECTED, FlowAction.ASSIGN_AGENT): FlowState.ASSIGNED,
        (FlowState.ASSIGNED, FlowAction.RELEASE_AGENT): FlowState.DEPARTMENT_SELECTED,
        (FlowState.DEPARTMENT_SELECTED, FlowAction.RELEASE_AGENT): FlowState.DEPARTMENT_SELECTED,
        (FlowState.DEPARTMENT_SELECTED, FlowAction.ESCALATE): FlowState.DEPARTMENT_SELECTED,
        (FlowState.DEPARTMENT_SELECTED, FlowAction.EXHAUST_ESCALATION): FlowState.GREETING,
    }

    @classmethod
    def transition(cls, current: FlowState, action: FlowAction) -> FlowState:
        # Resolution is accepted from every state.
        if action == FlowAction.RESOLVE:
            return FlowState.GREETING
        # So are an agent's manual assignment and transfer.
        if action == FlowAction.ASSIGN_MANUALLY:
            return FlowState.ASSIGNED
        if action == FlowAction.TRANSFER:
            return FlowState.DEPARTMENT_SELECTED
        # Idempotent semantics for a retried assignment.
        if current == FlowState.ASSIGNED and action == FlowAction.ASSIGN_AGENT:
            return FlowState.ASSIGNED

        next_state = cls._allowed_transitions.get((current, action))
        if not next_state:
            raise InvalidFlowTransition(current=current, action=action)
        return next_state

    @classmethod
    def can_apply(cls, current: FlowState, action: FlowAction) -> bool:
        try:
            cls.transition(current, action)
        except InvalidFlowTransition:
            return False
        return True

    @staticmethod
    def is_engaged(status: ConversationStatus, flow_state: FlowState) -> bool:
        return status in ACTIVE_STATUSES and flow_state in ENGAGED_FLOW_STATES

    @staticmethod
    def is_routable(flow_state: FlowState) -> bool:
        """True while the bot, not a human, owns the conversation."""
        return flow_state in (
            FlowState.GREETING,
            FlowState.AWAITING_ROUTING_CONFIRMATION,
        )

    @staticmethod
    def invariant_violations(conversation: Any) -> list[str]:
        """Describe every way a conversation row breaks the routing invariants.

        ASSIGNED without an agent is expected transiently after a partial
        failure; the escalation sweeper repairs it.
        """
        violations: list[str] = []
        flow_state = conversation.flow_state
        holds_agent = conversation.assigned_agent_id is not None

        if flow_state == FlowState.ASSIGNED and not holds_agent:
            violations.append("assigned flow state without an assigned agent")
        if holds_agent and flow_state != FlowState.ASSIGNED:
            violations.append(
                f"agent assigned while flow state is '{flow_state.value}'"
            )
        if (
            conversation.timeout_at is not None
            and flow_state != FlowState.DEPARTMENT_SELECTED
        ):
            violations.append(
                f"escalation deadline set while flow state is '{flow_state.value}'"
            )
        if (
            conversation.suggestion_expires_at is not None
            and flow_state != FlowState.AWAITING_ROUTING_CONFIRMATION
        ):
            violations.append(
                f"suggestion deadline set while flow state is '{flow_state.value}'"
            )
        if flow_state in ENGAGED_FLOW_STATES and conversation.department_id is None:
            violations.append(
                f"flow state '{flow_state.value}' without a department"
            )
        return violations
