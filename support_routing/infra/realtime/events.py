from enum import Enum


class RealtimeEvent(str, Enum):
    CONVERSATION_QUEUED = "conversation.queued"
    CONVERSATION_ASSIGNED = "conversation.assigned"
    CONVERSATION_TRANSFERRED = "conversation.transferred"
    CONVERSATION_RESOLVED = "conversation.resolved"
    CUSTOMER_TEXT = "customer.text"
    AGENT_STATUS_CHANGED = "agent.status.changed"
