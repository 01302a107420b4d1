from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from support_routing.domain.enums import AgentOnlineStatus


class AgentResponse(BaseModel):
    id: UUID
    company_id: UUID
    department_id: UUID | None
    display_name: str
    is_active: bool
    online_status: AgentOnlineStatus
    last_heartbeat_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class SetAgentStatusRequest(BaseModel):
    status: AgentOnlineStatus


class AgentStatusResponse(BaseModel):
    agent_id: UUID
    previous: AgentOnlineStatus
    current: AgentOnlineStatus
    released: int = 0
    reassigned: int = 0
    queued: int = 0
