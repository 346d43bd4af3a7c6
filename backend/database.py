from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for profile lookups, the share ledger and webhook dedup."""
        try:
            # Profiles: one per auth user; webhooks correlate by reference id / subscription id
            await self.db.profiles.create_index("user_id", unique=True)
            try:
                await self.db.profiles.create_index("referral_code", unique=True, sparse=True)
            except OperationFailure:
                pass  # Index may already exist with different options
            await self.db.profiles.create_index("kyc_reference_id", sparse=True)
            await self.db.profiles.create_index("billing_subscription_id", sparse=True)
            await self.db.profiles.create_index("billing_customer_id", sparse=True)

            # Equity ledger - append only, listed newest first per user
            await self.db.equity_transactions.create_index("transaction_id", unique=True)
            await self.db.equity_transactions.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.equity_transactions.create_index("transaction_type")

            # Webhook idempotency - duplicate (vendor, event_id) must not process twice
            try:
                await self.db.webhook_events.create_index(
                    [("vendor", 1), ("event_id", 1)],
                    unique=True
                )
            except OperationFailure:
                pass
            await self.db.webhook_events.create_index([("status", 1), ("received_at", -1)])

            # Audit log - per-user timeline and action queries
            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
