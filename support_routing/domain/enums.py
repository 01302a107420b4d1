from enum import Enum


class ConversationStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class FlowState(str, Enum):
    GREETING = "greeting"
    AWAITING_ROUTING_CONFIRMATION = "awaiting_routing_confirmation"
    DEPARTMENT_SELECTED = "department_selected"
    ASSIGNED = "assigned"
    # Reserved: accepted when read back from storage, never produced here.
    TIMEOUT_REDIRECT = "timeout_redirect"


class AgentOnlineStatus(str, Enum):
    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"


class FlowAction(str, Enum):
    SUGGEST_PREVIOUS_DEPARTMENT = "suggest_previous_department"
    DECLINE_SUGGESTION = "decline_suggestion"
    EXPIRE_SUGGESTION = "expire_suggestion"
    SELECT_DEPARTMENT = "select_department"
    ASSIGN_AGENT = "assign_agent"
    RELEASE_AGENT = "release_agent"
    ASSIGN_MANUALLY = "assign_manually"
    TRANSFER = "transfer"
    ESCALATE = "escalate"
    EXHAUST_ESCALATION = "exhaust_escalation"
    RESOLVE = "resolve"


class EscalationReason(str, Enum):
    TIMEOUT = "timeout"
    OFFLINE = "offline"


class QueueReason(str, Enum):
    NEW = "new"
    AGENT_OFFLINE = "agent_offline"
    RECONCILED = "reconciled"
    UNASSIGNED = "unassigned"
    TRANSFER = "transfer"
