import asyncio
import logging

from support_routing.core.app_logging import configure_logging
from support_routing.core.config import get_settings
from support_routing.core.db import close_engine, get_session_factory, init_engine
from support_routing.infra.db.seed import seed_demo_directory

logger = logging.getLogger("support_routing.seed")


async def main() -> None:
    configure_logging(get_settings())
    engine = init_engine()
    try:
        async with get_session_factory()() as session:
            company = await seed_demo_directory(session)
            await session.commit()
        logger.info("Demo directory ready for company %s", company.id)
    finally:
        await close_engine(engine)


if __name__ == "__main__":
    asyncio.run(main())
