import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from support_routing.core.clock import Clock, utcnow
from support_routing.core.config import Settings, get_settings
from support_routing.domain.enums import AgentOnlineStatus
from support_routing.domain.state_machine import AVAILABLE_AGENT_STATUSES
from support_routing.infra.db.models import Agent
from support_routing.infra.db.store import RoutingStore
from support_routing.infra.realtime.notifier import NoopNotifier, Notifier
from support_routing.services.dispatch_service import (
    DispatchEngine,
    RedistributionReport,
)
from support_routing.services.errors import AgentNotFoundError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StatusChange:
    agent_id: UUID
    previous: AgentOnlineStatus
    current: AgentOnlineStatus
    redistribution: RedistributionReport | None = None


class AgentPresenceService:
    def __init__(
        self,
        store: RoutingStore,
        dispatch: DispatchEngine,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self.dispatch = dispatch
        self.notifier = notifier or NoopNotifier()
        self.clock = clock or utcnow
        self.heartbeat_timeout = timedelta(seconds=settings.agent_heartbeat_timeout_seconds)

    async def get_agent(self, agent_id: UUID) -> Agent:
        async with self.store.unit() as repos:
            agent = await repos.agents.get_by_id(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def set_status(self, agent_id: UUID, status: AgentOnlineStatus) -> StatusChange:
        """Record a status change; going offline hands the agent's work to colleagues."""
        async with self.store.unit() as repos:
            agent = await repos.agents.get_by_id(agent_id)
            if agent is None:
                raise AgentNotFoundError(agent_id)
            previous = agent.online_status
            department_id = agent.department_id
            await repos.agents.set_status(agent_id, status, heartbeat_at=self.clock())

        change = StatusChange(agent_id=agent_id, previous=previous, current=status)
        if previous == status:
            return change

        logger.info("Agent %s is now %s", agent_id, status.value)
        await self._publish_status(department_id, agent_id, status)
        if status == AgentOnlineStatus.OFFLINE:
            change.redistribution = await self.dispatch.redistribute_on_agent_offline(agent_id)
        return change

    async def heartbeat(self, agent_id: UUID) -> None:
        async with self.store.unit() as repos:
            touched = await repos.agents.touch_heartbeat(agent_id, self.clock())
        if not touched:
            raise AgentNotFoundError(agent_id)

    async def mark_stale_agents_offline(self) -> list[UUID]:
        cutoff = self.clock() - self.heartbeat_timeout
        async with self.store.unit() as repos:
            stale = [
                (agent.id, agent.department_id)
                for agent in await repos.agents.list_stale_available(cutoff)
            ]

        marked: list[UUID] = []
        for agent_id, department_id in stale:
            try:
                async with self.store.unit() as repos:
                    changed = await repos.agents.set_status(
                        agent_id,
                        AgentOnlineStatus.OFFLINE,
                        only_if_in=AVAILABLE_AGENT_STATUSES,
                        only_if_heartbeat_before=cutoff,
                    )
                if not changed:
                    continue
                logger.warning("Agent %s missed its heartbeat; marked offline", agent_id)
                marked.append(agent_id)
                await self._publish_status(department_id, agent_id, AgentOnlineStatus.OFFLINE)
                await self.dispatch.redistribute_on_agent_offline(agent_id)
            except Exception:
                logger.exception("Failed to take stale agent %s offline", agent_id)
        return marked

    async def _publish_status(
        self,
        department_id: UUID | None,
        agent_id: UUID,
        status: AgentOnlineStatus,
    ) -> None:
        try:
            await self.notifier.notify_agent_status_changed(department_id, agent_id, status)
        except Exception:
            logger.exception("Agent status delivery failed for agent %s", agent_id)
