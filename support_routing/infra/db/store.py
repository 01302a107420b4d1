import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Protocol, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from support_routing.infra.db.repositories import (
    AgentRepository,
    AssignmentRepository,
    CompanyRepository,
    ConversationRepository,
    DepartmentRepository,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERIALIZATION_FAILURE = "40001"


@dataclass(slots=True)
class RoutingRepositories:
    companies: CompanyRepository
    departments: DepartmentRepository
    agents: AgentRepository
    conversations: ConversationRepository
    assignments: AssignmentRepository

    @classmethod
    def for_session(cls, session: AsyncSession) -> "RoutingRepositories":
        return cls(
            companies=CompanyRepository(session),
            departments=DepartmentRepository(session),
            agents=AgentRepository(session),
            conversations=ConversationRepository(session),
            assignments=AssignmentRepository(session),
        )


class RoutingStore(Protocol):
    def unit(self) -> AbstractAsyncContextManager[RoutingRepositories]: ...

    async def run_serializable(
        self, work: Callable[[RoutingRepositories], Awaitable[T]]
    ) -> T: ...


def is_serialization_failure(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == SERIALIZATION_FAILURE


class SqlAlchemyRoutingStore:
    """Unit-of-work boundary over an async session factory.

    ``unit()`` runs at the database default isolation and commits on clean
    exit. ``run_serializable()`` wraps read-aggregate-write work (agent
    selection) and retries it when Postgres aborts it with a serialization
    failure.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 5,
        retry_backoff_seconds: float = 0.01,
    ) -> None:
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds

    @asynccontextmanager
    async def unit(self) -> AsyncIterator[RoutingRepositories]:
        async with self.session_factory() as session:
            try:
                yield RoutingRepositories.for_session(session)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def run_serializable(
        self, work: Callable[[RoutingRepositories], Awaitable[T]]
    ) -> T:
        attempt = 1
        while True:
            async with self.session_factory() as session:
                try:
                    await session.connection(
                        execution_options={"isolation_level": "SERIALIZABLE"}
                    )
                    result = await work(RoutingRepositories.for_session(session))
                    await session.commit()
                    return result
                except DBAPIError as exc:
                    await session.rollback()
                    if not is_serialization_failure(exc) or attempt >= self.max_attempts:
                        raise
                    logger.debug(
                        "Serialization failure on attempt %d/%d, retrying",
                        attempt,
                        self.max_attempts,
                    )
            await asyncio.sleep(self.retry_backoff_seconds * attempt)
            attempt += 1
