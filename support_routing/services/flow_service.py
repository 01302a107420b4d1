import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from support_routing.core.clock import Clock, utcnow
from support_routing.core.config import Settings, get_settings
from support_routing.domain.enums import ConversationStatus, FlowAction, FlowState
from support_routing.domain.menu import (
    default_greeting,
    invalid_choice_text,
    menu_text,
    parse_confirmation,
    resolve_menu_choice,
    suggestion_declined_text,
    suggestion_text,
)
from support_routing.domain.state_machine import FlowLifecycle
from support_routing.infra.db.models import Company, Conversation
from support_routing.infra.db.store import RoutingStore
from support_routing.infra.realtime.notifier import NoopNotifier, Notifier
from support_routing.services.dispatch_service import (
    DispatchEngine,
    RouteOutcome,
    RouteResult,
)
from support_routing.services.errors import CompanyNotFoundError
from support_routing.services.greeting_gate import GreetingClaimGate

logger = logging.getLogger(__name__)

SUGGESTED_DEPARTMENT_ID_KEY = "suggested_department_id"
SUGGESTED_DEPARTMENT_SLUG_KEY = "suggested_department_slug"
CHAT_ID_KEY = "chat_id"


class InboundOutcome(str, Enum):
    GREETED = "greeted"
    SUGGESTED = "suggested"
    ROUTED = "routed"
    INVALID_CHOICE = "invalid_choice"
    DECLINED = "declined"
    DUPLICATE = "duplicate"
    FORWARDED = "forwarded"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"


@dataclass(slots=True)
class InboundResult:
    outcome: InboundOutcome
    conversation_id: UUID
    route: RouteResult | None = None


class InboundFlowService:
    """Bot side of a conversation: greeting, returning-customer suggestion, menu."""

    def __init__(
        self,
        store: RoutingStore,
        dispatch: DispatchEngine,
        gate: GreetingClaimGate,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self.dispatch = dispatch
        self.gate = gate
        self.notifier = notifier or NoopNotifier()
        self.clock = clock or utcnow
        self.suggestion_timeout = timedelta(
            minutes=settings.routing_suggestion_timeout_minutes
        )

    async def handle_inbound_message(
        self,
        company_id: UUID,
        customer_phone: str,
        content: str,
        customer_name: str | None = None,
        chat_id: str | None = None,
    ) -> InboundResult:
        company, conversation = await self._find_or_open_conversation(
            company_id, customer_phone, customer_name, chat_id
        )

        if conversation.status == ConversationStatus.ARCHIVED:
            return InboundResult(InboundOutcome.IGNORED, conversation.id)

        flow_state = conversation.flow_state
        if not FlowLifecycle.is_routable(flow_state):
            # A human owns the conversation from here on.
            return InboundResult(InboundOutcome.FORWARDED, conversation.id)
        if flow_state == FlowState.AWAITING_ROUTING_CONFIRMATION:
            return await self._handle_confirmation(conversation, content)
        if conversation.greeting_sent_at is None:
            return await self._greet(company, conversation)
        return await self._handle_menu_choice(conversation, content)

    async def _find_or_open_conversation(
        self,
        company_id: UUID,
        customer_phone: str,
        customer_name: str | None,
        chat_id: str | None,
    ) -> tuple[Company, Conversation]:
        phone = customer_phone.strip()
        try:
            async with self.store.unit() as repos:
                company = await repos.companies.get_by_id(company_id)
                if company is None:
                    raise CompanyNotFoundError(company_id)

                conversation = await repos.conversations.get_by_customer(company_id, phone)
                if conversation is None:
                    conversation = await repos.conversations.create(
                        company_id=company_id,
                        customer_phone=phone,
                        customer_name=customer_name,
                        metadata_json={CHAT_ID_KEY: chat_id} if chat_id else {},
                    )
                    logger.info("Opened conversation %s for a new customer", conversation.id)
                    return company, conversation

                updates: dict[str, Any] = {}
                if conversation.status == ConversationStatus.RESOLVED:
                    updates["status"] = ConversationStatus.OPEN
                if customer_name and not conversation.customer_name:
                    updates["customer_name"] = customer_name
                metadata = dict(conversation.metadata_json or {})
                if chat_id and metadata.get(CHAT_ID_KEY) != chat_id:
                    metadata[CHAT_ID_KEY] = chat_id
                    updates["metadata_json"] = metadata

                if updates:
                    await repos.conversations.set_fields(conversation.id, **updates)
                    conversation = await repos.conversations.get_by_id(conversation.id)
                    if "status" in updates:
                        logger.info("Reopened resolved conversation %s", conversation.id)
                return company, conversation
        except IntegrityError:
            # Another ingestion path created the same conversation first.
            logger.debug("Conversation for company %s created concurrently", company_id)
            async with self.store.unit() as repos:
                company = await repos.companies.get_by_id(company_id)
                conversation = await repos.conversations.get_by_customer(company_id, phone)
            if company is None or conversation is None:
                raise
            return company, conversation

    async def _greet(self, company: Company, conversation: Conversation) -> InboundResult:
        if not await self.gate.try_claim_greeting(conversation.id):
            return InboundResult(InboundOutcome.DUPLICATE, conversation.id)

        if await self._offer_previous_department(conversation):
            return InboundResult(InboundOutcome.SUGGESTED, conversation.id)

        if company.greeting_message:
            text = f"{company.greeting_message}\n\n{menu_text()}"
        else:
            text = default_greeting(company.name)
        await self._send(conversation.id, text)
        return InboundResult(InboundOutcome.GREETED, conversation.id)

    async def _offer_previous_department(self, conversation: Conversation) -> bool:
        if conversation.last_department_id is None:
            return False

        async with self.store.unit() as repos:
            department = await repos.departments.get_by_id(conversation.last_department_id)
            if department is None or not department.is_active:
                return False

            metadata = dict(conversation.metadata_json or {})
            metadata[SUGGESTED_DEPARTMENT_ID_KEY] = str(department.id)
            metadata[SUGGESTED_DEPARTMENT_SLUG_KEY] = department.slug
            offered = await repos.conversations.set_fields_if(
                conversation.id,
                {"flow_state": FlowState.GREETING},
                flow_state=FlowLifecycle.transition(
                    FlowState.GREETING, FlowAction.SUGGEST_PREVIOUS_DEPARTMENT
                ),
                suggestion_expires_at=self.clock() + self.suggestion_timeout,
                metadata_json=metadata,
            )
            department_name = department.name

        if not offered:
            return False
        logger.info(
            "Suggested previous department %s to conversation %s",
            department.slug,
            conversation.id,
        )
        await self._send(conversation.id, suggestion_text(department_name))
        return True

    async def _handle_menu_choice(
        self, conversation: Conversation, content: str
    ) -> InboundResult:
        slug = resolve_menu_choice(content)
        if slug is None:
            await self._send(conversation.id, f"{invalid_choice_text()}\n\n{menu_text()}")
            return InboundResult(InboundOutcome.INVALID_CHOICE, conversation.id)

        route = await self.dispatch.route_to_department(
            conversation.id,
            slug,
            conversation.company_id,
            expected_flow_state=FlowState.GREETING,
        )
        if route.outcome == RouteOutcome.NOT_FOUND:
            await self._send(conversation.id, f"{invalid_choice_text()}\n\n{menu_text()}")
        return self._route_result(conversation.id, route)

    async def _handle_confirmation(
        self, conversation: Conversation, content: str
    ) -> InboundResult:
        answer = parse_confirmation(content)
        if answer is None:
            return InboundResult(InboundOutcome.IGNORED, conversation.id)

        slug = (conversation.metadata_json or {}).get(SUGGESTED_DEPARTMENT_SLUG_KEY)
        if answer and slug:
            route = await self.dispatch.route_to_department(
                conversation.id,
                slug,
                conversation.company_id,
                expected_flow_state=FlowState.AWAITING_ROUTING_CONFIRMATION,
            )
            if route.outcome != RouteOutcome.NOT_FOUND:
                return self._route_result(conversation.id, route)

        async with self.store.unit() as repos:
            declined = await repos.conversations.set_fields_if(
                conversation.id,
                {"flow_state": FlowState.AWAITING_ROUTING_CONFIRMATION},
                flow_state=FlowLifecycle.transition(
                    FlowState.AWAITING_ROUTING_CONFIRMATION, FlowAction.DECLINE_SUGGESTION
                ),
                suggestion_expires_at=None,
            )
        if not declined:
            return InboundResult(InboundOutcome.DUPLICATE, conversation.id)
        await self._send(conversation.id, suggestion_declined_text())
        return InboundResult(InboundOutcome.DECLINED, conversation.id)

    @staticmethod
    def _route_result(conversation_id: UUID, route: RouteResult) -> InboundResult:
        if route.outcome == RouteOutcome.ROUTED:
            return InboundResult(InboundOutcome.ROUTED, conversation_id, route)
        if route.outcome == RouteOutcome.SUPERSEDED:
            return InboundResult(InboundOutcome.DUPLICATE, conversation_id, route)
        return InboundResult(InboundOutcome.NOT_FOUND, conversation_id, route)

    async def _send(self, conversation_id: UUID, text: str) -> None:
        try:
            await self.notifier.send_customer_text(conversation_id, text)
        except Exception:
            logger.exception("Customer text delivery failed for conversation %s", conversation_id)
