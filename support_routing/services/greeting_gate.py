import logging
from uuid import UUID

from support_routing.core.clock import Clock, utcnow
from support_routing.domain.enums import FlowState
from support_routing.infra.db.store import RoutingStore

logger = logging.getLogger(__name__)


class GreetingClaimGate:
    """Exactly-once claim on the welcome message of a conversation.

    The claim is one conditional UPDATE on ``greeting_sent_at``. However many
    ingestion paths observe the same inbound message, only one of them gets
    the row and goes on to greet the customer.
    """

    def __init__(self, store: RoutingStore, clock: Clock | None = None) -> None:
        self.store = store
        self.clock = clock or utcnow

    async def try_claim_greeting(self, conversation_id: UUID) -> bool:
        async with self.store.unit() as repos:
            claimed = await repos.conversations.set_fields_if(
                conversation_id,
                {"greeting_sent_at": None, "flow_state": FlowState.GREETING},
                greeting_sent_at=self.clock(),
            )
        if claimed:
            logger.info("Greeting claimed for conversation %s", conversation_id)
        else:
            logger.debug("Greeting already claimed for conversation %s", conversation_id)
        return claimed
