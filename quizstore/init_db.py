import asyncio
import logging

from quizstore import logging_config
from quizstore.database import choose_database_url, create_engine, init_db

logger = logging.getLogger("init_db")


async def main():
    engine = create_engine(choose_database_url())
    try:
        await init_db(engine)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    logging_config.configure_logging()
    asyncio.run(main())
    logger.info("Database initialized successfully!")
