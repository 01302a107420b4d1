from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from support_routing.domain.enums import ConversationStatus, FlowState
from support_routing.services.dispatch_service import EscalationOutcome, RouteOutcome


class ConversationResponse(BaseModel):
    id: UUID
    company_id: UUID
    customer_phone: str
    customer_name: str | None
    status: ConversationStatus
    flow_state: FlowState
    department_id: UUID | None
    assigned_agent_id: UUID | None
    assigned_at: datetime | None
    routed_at: datetime | None
    timeout_at: datetime | None
    greeting_sent_at: datetime | None
    last_department_id: UUID | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RouteConversationRequest(BaseModel):
    department_slug: str = Field(min_length=1, max_length=80)


class RouteConversationResponse(BaseModel):
    conversation_id: UUID
    outcome: RouteOutcome
    department_id: UUID | None
    assigned_agent_id: UUID | None
    assigned_agent_name: str | None
    escalation: EscalationOutcome | None


class ResolveConversationRequest(BaseModel):
    send_closing_message: bool = False


class AssignConversationRequest(BaseModel):
    agent_id: UUID


class TransferConversationRequest(BaseModel):
    department_id: UUID
    agent_id: UUID | None = None
