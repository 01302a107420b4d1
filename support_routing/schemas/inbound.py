from uuid import UUID

from pydantic import BaseModel, Field

from support_routing.services.flow_service import InboundOutcome


class InboundMessageRequest(BaseModel):
    company_id: UUID
    customer_phone: str = Field(min_length=3, max_length=64)
    content: str = Field(max_length=4096)
    customer_name: str | None = Field(default=None, max_length=120)
    chat_id: str | None = Field(default=None, max_length=255)


class InboundMessageResponse(BaseModel):
    conversation_id: UUID
    outcome: InboundOutcome
    department_id: UUID | None = None
    assigned_agent_id: UUID | None = None
