from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure, PyMongoError
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

SERVER_SELECTION_TIMEOUT_MS = int(os.environ.get("MONGO_SERVER_SELECTION_TIMEOUT_MS", "5000"))


class Database:
    """Process-wide Motor handle for the billing and retention collections."""

    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        mongo_url = os.environ.get("MONGO_URL")
        db_name = os.environ.get("DB_NAME")
        if not mongo_url or not db_name:
            raise RuntimeError("MONGO_URL and DB_NAME must be set")

        self.client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS)
        self.db = self.client[db_name]
        try:
            await self.db.command("ping")
        except PyMongoError as e:
            logger.error("MONGO_CONNECT_FAILED db=%s error=%s", db_name, e)
            self.client.close()
            self.client = self.db = None
            raise
        logger.info("MONGO_CONNECTED db=%s", db_name)

        await self._create_indexes()

    async def close(self):
        if self.client is None:
            return
        self.client.close()
        self.client = self.db = None
        logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    @asynccontextmanager
    async def transaction(self):
        """Multi-document transaction; commits on clean exit, aborts on error.

        Usage:
            async with database.transaction() as session:
                await db.profiles.bulk_write(ops, session=session)
        """
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def _create_indexes(self):
        """Create MongoDB indexes for billing and retention lookups."""
        try:
            # Payment sessions - one per checkout attempt; pending purge by user
            await self.db.payment_sessions.create_index("session_id", unique=True)
            await self.db.payment_sessions.create_index([("user_id", 1), ("status", 1)])

            # Subscriptions - webhook lookups by provider id, sync lookups by user/email
            await self.db.subscriptions.create_index("subscription_id", unique=True)
            await self.db.subscriptions.create_index("provider_subscription_id", sparse=True)
            await self.db.subscriptions.create_index("session_id")
            await self.db.subscriptions.create_index([("user_id", 1), ("email", 1), ("created_at", -1)])

            # Users carry the billing projection
            try:
                await self.db.users.create_index("user_id", unique=True)
            except OperationFailure:
                pass  # Index may already exist with different options

            await self.db.profiles.create_index("profile_id", unique=True)

            # Webhook ledger - duplicate event_id must not process twice
            try:
                await self.db.provider_events.create_index("event_id", unique=True)
            except OperationFailure:
                pass

            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

