from collections.abc import Mapping, Sequence
from typing import Any, Protocol
from uuid import UUID

from support_routing.domain.enums import AgentOnlineStatus
from support_routing.infra.realtime.channels import (
    agent_queue_channel,
    company_channel,
    conversation_channel,
    department_channel,
)
from support_routing.infra.realtime.events import RealtimeEvent


class RealtimePublisher(Protocol):
    async def publish(
        self,
        channels: Sequence[str],
        event: RealtimeEvent,
        payload: Mapping[str, Any],
    ) -> Any: ...


class Notifier(Protocol):
    async def notify_department_queued(
        self, department_id: UUID, conversation_id: UUID, reason: str
    ) -> None: ...

    async def notify_agent_assigned(
        self, agent_id: UUID, conversation_id: UUID, agent_name: str
    ) -> None: ...

    async def notify_company_transferred(
        self,
        company_id: UUID,
        conversation_id: UUID,
        to_department_id: UUID,
        reason: str,
    ) -> None: ...

    async def send_customer_text(self, conversation_id: UUID, text: str) -> None: ...

    async def notify_agent_status_changed(
        self,
        department_id: UUID | None,
        agent_id: UUID,
        status: AgentOnlineStatus,
    ) -> None: ...

    async def notify_conversation_resolved(
        self, conversation_id: UUID, department_id: UUID | None
    ) -> None: ...


class NoopNotifier:
    async def notify_department_queued(
        self, department_id: UUID, conversation_id: UUID, reason: str
    ) -> None:
        return None

    async def notify_agent_assigned(
        self, agent_id: UUID, conversation_id: UUID, agent_name: str
    ) -> None:
        return None

    async def notify_company_transferred(
        self,
        company_id: UUID,
        conversation_id: UUID,
        to_department_id: UUID,
        reason: str,
    ) -> None:
        return None

    async def send_customer_text(self, conversation_id: UUID, text: str) -> None:
        return None

    async def notify_agent_status_changed(
        self,
        department_id: UUID | None,
        agent_id: UUID,
        status: AgentOnlineStatus,
    ) -> None:
        return None

    async def notify_conversation_resolved(
        self, conversation_id: UUID, department_id: UUID | None
    ) -> None:
        return None


class RealtimeNotifier:
    """Turns routing events into hub envelopes.

    Customer-facing text goes to the conversation channel, where the
    messaging-provider adapter is expected to be subscribed.
    """

    def __init__(self, publisher: RealtimePublisher) -> None:
        self.publisher = publisher

    async def notify_department_queued(
        self, department_id: UUID, conversation_id: UUID, reason: str
    ) -> None:
        await self.publisher.publish(
            [department_channel(department_id)],
            RealtimeEvent.CONVERSATION_QUEUED,
            {
                "conversation_id": str(conversation_id),
                "department_id": str(department_id),
                "reason": reason,
            },
        )

    async def notify_agent_assigned(
        self, agent_id: UUID, conversation_id: UUID, agent_name: str
    ) -> None:
        await self.publisher.publish(
            [agent_queue_channel(agent_id), conversation_channel(conversation_id)],
            RealtimeEvent.CONVERSATION_ASSIGNED,
            {
                "conversation_id": str(conversation_id),
                "agent_id": str(agent_id),
                "agent_name": agent_name,
            },
        )

    async def notify_company_transferred(
        self,
        company_id: UUID,
        conversation_id: UUID,
        to_department_id: UUID,
        reason: str,
    ) -> None:
        await self.publisher.publish(
            [company_channel(company_id)],
            RealtimeEvent.CONVERSATION_TRANSFERRED,
            {
                "conversation_id": str(conversation_id),
                "to_department_id": str(to_department_id),
                "reason": reason,
            },
        )

    async def send_customer_text(self, conversation_id: UUID, text: str) -> None:
        await self.publisher.publish(
            [conversation_channel(conversation_id)],
            RealtimeEvent.CUSTOMER_TEXT,
            {"conversation_id": str(conversation_id), "text": text},
        )

    async def notify_agent_status_changed(
        self,
        department_id: UUID | None,
        agent_id: UUID,
        status: AgentOnlineStatus,
    ) -> None:
        if department_id is None:
            return
        await self.publisher.publish(
            [department_channel(department_id)],
            RealtimeEvent.AGENT_STATUS_CHANGED,
            {"agent_id": str(agent_id), "status": status.value},
        )

    async def notify_conversation_resolved(
        self, conversation_id: UUID, department_id: UUID | None
    ) -> None:
        channels = [conversation_channel(conversation_id)]
        if department_id is not None:
            channels.append(department_channel(department_id))
        await self.publisher.publish(
            channels,
            RealtimeEvent.CONVERSATION_RESOLVED,
            {"conversation_id": str(conversation_id)},
        )
