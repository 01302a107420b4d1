import asyncio
import logging
from dataclasses import dataclass

from support_routing.services.agent_service import AgentPresenceService
from support_routing.services.dispatch_service import DispatchEngine, SweepReport

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickResult:
    stale_agents: int
    sweep: SweepReport
    expired_suggestions: int


class EscalationSweeper:
    """Periodic driver of every deadline-based transition.

    Holds no routing state between ticks. A tick that starts while the
    previous one is still running is skipped; across processes the writes
    it triggers are conditional on stored deadlines, so running it twice is
    harmless.
    """

    def __init__(
        self,
        dispatch: DispatchEngine,
        presence: AgentPresenceService,
        interval_seconds: float = 30.0,
    ) -> None:
        self.dispatch = dispatch
        self.presence = presence
        self.interval_seconds = interval_seconds
        self._tick_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> TickResult | None:
        if self._tick_lock.locked():
            logger.debug("Previous sweep still running; tick skipped")
            return None

        async with self._tick_lock:
            stale_agents = await self.presence.mark_stale_agents_offline()
            sweep = await self.dispatch.check_timeout_and_redirect()
            expired = await self.dispatch.expire_routing_suggestions()
        return TickResult(
            stale_agents=len(stale_agents), sweep=sweep, expired_suggestions=expired
        )

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="escalation-sweeper")
        logger.info("Escalation sweeper started (every %.0fs)", self.interval_seconds)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Escalation sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.tick()
            except Exception:
                logger.exception("Escalation sweep failed")
