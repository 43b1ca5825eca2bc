"""
Database connection

MONGO_URL and DB_NAME come from the environment (backend/.env is loaded
first). The process refuses to start without them.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

REQUIRED_ENV_VARS = {
    "MONGO_URL": "MongoDB connection string (e.g., mongodb://localhost:27017)",
    "DB_NAME": "Database name (e.g., ticket_settlement)"
}


def validate_required_env_vars():
    """Raise ValueError listing every missing connection variable."""
    missing = [f"  - {var}: {hint}" for var, hint in REQUIRED_ENV_VARS.items() if not os.environ.get(var)]
    if missing:
        raise ValueError(
            "Missing required environment variables for the settlement database:\n"
            + "\n".join(missing)
            + "\nSet them in backend/.env or the process environment."
        )


validate_required_env_vars()

client = AsyncIOMotorClient(
    os.environ['MONGO_URL'],
    maxPoolSize=50,
    minPoolSize=5,
    connectTimeoutMS=5000,
    serverSelectionTimeoutMS=5000,
    retryWrites=True
)

db = client[os.environ['DB_NAME']]


async def check_db_connection():
    """
    Ping the server.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        await client.admin.command('ping')
    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg

    logger.info(f"Database connected: {os.environ['DB_NAME']}")
    return True, None
