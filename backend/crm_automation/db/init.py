import logging
from typing import Optional

from beanie import init_beanie
from pymongo import AsyncMongoClient

from crm_automation import config
from crm_automation.db.documents import DOCUMENT_MODELS

logger = logging.getLogger(__name__)

_client: Optional[AsyncMongoClient] = None


async def init_db():
    global _client
    try:
        logger.info("Initializing database connection...")
        client = AsyncMongoClient(config.MONGO_URI, tz_aware=True)

        # Test the connection
        await client.admin.command("ping")
        logger.info("MongoDB connection test successful.")

        await init_beanie(database=client[config.MONGO_DB_NAME], document_models=DOCUMENT_MODELS)
        _client = client
        logger.info("MongoDB connection established and Beanie initialized.")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


async def ping_db() -> bool:
    if _client is None:
        return False
    try:
        await _client.admin.command("ping")
        return True
    except Exception as e:
        logger.warning(f"[HEALTH] MongoDB ping failed: {e}")
        return False


async def close_db():
    global _client
    if _client is not None:
        await _client.close()
        _client = None
        logger.info("MongoDB connection closed.")
