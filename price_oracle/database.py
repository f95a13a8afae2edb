import time
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

import redis.asyncio as aioredis
import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.errors import PyMongoError

from .config import Collections, LoanStatus
from .error_handling import DatabaseError
from .models import LiquidationOutcome, OpenPosition, PriceRecord, SecurityEvent

logger = structlog.get_logger()


class DatabaseManager:
    def __init__(self, settings):
        self.settings = settings
        self.mongo_client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.redis_client: Optional[aioredis.Redis] = None

    async def connect(self):
        """Initialize database connections"""
        try:
            self.mongo_client = AsyncIOMotorClient(
                self.settings.MONGODB_URI,
                maxPoolSize=20,
                minPoolSize=5,
                maxIdleTimeMS=30000,
                serverSelectionTimeoutMS=5000,
                socketTimeoutMS=20000
            )
            self.database = self.mongo_client[self.settings.MONGO_DB_NAME]

            await self.mongo_client.admin.command('ping')
            logger.info("Connected to MongoDB", database=self.settings.MONGO_DB_NAME)

            await self._create_indexes()

            if self.settings.ENABLE_REDIS:
                self.redis_client = aioredis.from_url(
                    self.settings.REDIS_URL,
                    encoding="utf-8",
                    decode_responses=True,
                    max_connections=20,
                    socket_connect_timeout=5,
                    socket_timeout=5
                )
                await self.redis_client.ping()
                logger.info("Connected to Redis", url=self.settings.REDIS_URL)
            else:
                logger.warning("Redis is disabled - price cache is process-local only")

        except Exception as e:
            logger.error("Failed to connect to databases", error=str(e))
            raise

    async def disconnect(self):
        """Close database connections"""
        if self.mongo_client:
            self.mongo_client.close()
            logger.info("Disconnected from MongoDB")

        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("Disconnected from Redis")

    async def _create_indexes(self):
        """Create the indexes the oracle queries rely on"""
        try:
            await self.database[Collections.LOANS].create_indexes([
                IndexModel([("asset_id", ASCENDING), ("status", ASCENDING)]),
            ])
            await self.database[Collections.TOKENS].create_indexes([
                IndexModel([("asset_id", ASCENDING)], unique=True),
                IndexModel([("enabled", ASCENDING)]),
            ])
            await self.database[Collections.PRICE_HISTORY].create_indexes([
                IndexModel([("asset_id", ASCENDING), ("observed_at_ms", DESCENDING)]),
            ])
            await self.database[Collections.LIQUIDATION_RESULTS].create_indexes([
                IndexModel([("liquidated_at_ms", DESCENDING)]),
                IndexModel([("position_id", ASCENDING)]),
            ])
            await self.database[Collections.SECURITY_EVENTS].create_indexes([
                IndexModel([("timestamp_ms", DESCENDING)]),
                IndexModel([("event_type", ASCENDING), ("timestamp_ms", DESCENDING)]),
                IndexModel([("severity", ASCENDING)]),
            ])
            logger.info("Database indexes created successfully")

        except Exception as e:
            logger.error("Failed to create indexes", error=str(e))
            raise

    async def health_check(self) -> dict:
        """Check database health status"""
        health = {
            "mongodb": {"status": "disconnected", "latency_ms": None},
            "redis": {"status": "disabled" if not self.settings.ENABLE_REDIS else "disconnected",
                      "latency_ms": None}
        }

        try:
            if self.mongo_client:
                start_time = time.time()
                await self.mongo_client.admin.command('ping')
                latency = (time.time() - start_time) * 1000
                health["mongodb"] = {"status": "connected", "latency_ms": round(latency, 2)}
        except Exception as e:
            health["mongodb"]["error"] = str(e)

        try:
            if self.redis_client:
                start_time = time.time()
                await self.redis_client.ping()
                latency = (time.time() - start_time) * 1000
                health["redis"] = {"status": "connected", "latency_ms": round(latency, 2)}
        except Exception as e:
            health["redis"]["error"] = str(e)

        return health


class OracleStore(Protocol):
    """Persistent store operations used by the oracle core"""

    async def get_open_positions(self, asset_id: str) -> List[OpenPosition]: ...

    async def get_enabled_assets(self) -> List[str]: ...

    async def get_last_price(self, asset_id: str) -> Optional[float]: ...

    async def get_price_near(self, asset_id: str, at_ms: int) -> Optional[float]: ...

    async def get_price_history(self, asset_id: str, from_ms: int, to_ms: int) -> List[PriceRecord]: ...

    async def append_price_history(self, record: PriceRecord) -> None: ...

    async def get_liquidation_outcomes(self, since_ms: int) -> List[LiquidationOutcome]: ...

    async def append_security_event(self, event: SecurityEvent) -> None: ...


class MongoOracleStore:
    """OracleStore backed by the service's MongoDB database"""

    def __init__(self, database: Any):
        self._database = database

    def _collection(self, name: str):
        if self._database is None:
            raise DatabaseError("Database not connected")
        return self._database[name]

    async def get_open_positions(self, asset_id: str) -> List[OpenPosition]:
        query = {
            "asset_id": asset_id,
            "status": LoanStatus.ACTIVE,
            "liquidation_price": {"$ne": None},
        }
        try:
            docs = await self._collection(Collections.LOANS).find(query).to_list(length=None)
        except PyMongoError as e:
            raise DatabaseError(f"Failed to load open positions for {asset_id}: {e}") from e

        positions = []
        for doc in docs:
            positions.append(OpenPosition(
                position_id=str(doc.get("position_id") or doc["_id"]),
                asset_id=doc["asset_id"],
                liquidation_price=float(doc["liquidation_price"]),
                entry_price=float(doc["entry_price"]) if doc.get("entry_price") is not None else None,
                borrower=doc.get("borrower"),
            ))
        return positions

    async def get_enabled_assets(self) -> List[str]:
        try:
            return await self._collection(Collections.TOKENS).distinct("asset_id", {"enabled": True})
        except PyMongoError as e:
            raise DatabaseError(f"Failed to load enabled assets: {e}") from e

    async def get_last_price(self, asset_id: str) -> Optional[float]:
        try:
            doc = await self._collection(Collections.PRICE_HISTORY).find_one(
                {"asset_id": asset_id}, sort=[("observed_at_ms", DESCENDING)]
            )
        except PyMongoError as e:
            raise DatabaseError(f"Failed to load last price for {asset_id}: {e}") from e
        return float(doc["usd_price"]) if doc else None

    async def get_price_near(self, asset_id: str, at_ms: int) -> Optional[float]:
        """Most recent stored price observed at or before ``at_ms``"""
        try:
            doc = await self._collection(Collections.PRICE_HISTORY).find_one(
                {"asset_id": asset_id, "observed_at_ms": {"$lte": at_ms}},
                sort=[("observed_at_ms", DESCENDING)],
            )
        except PyMongoError as e:
            raise DatabaseError(f"Failed to load historical price for {asset_id}: {e}") from e
        return float(doc["usd_price"]) if doc else None

    async def get_price_history(self, asset_id: str, from_ms: int, to_ms: int) -> List[PriceRecord]:
        """Stored observations in ``[from_ms, to_ms]``, oldest first"""
        try:
            docs = await self._collection(Collections.PRICE_HISTORY).find(
                {"asset_id": asset_id, "observed_at_ms": {"$gte": from_ms, "$lte": to_ms}},
                sort=[("observed_at_ms", ASCENDING)],
            ).to_list(length=None)
        except PyMongoError as e:
            raise DatabaseError(f"Failed to load price history for {asset_id}: {e}") from e
        return [PriceRecord.model_validate(doc) for doc in docs]

    async def append_price_history(self, record: PriceRecord) -> None:
        doc = record.model_dump()
        doc["recorded_at"] = datetime.now(timezone.utc)
        try:
            await self._collection(Collections.PRICE_HISTORY).insert_one(doc)
        except PyMongoError as e:
            raise DatabaseError(f"Failed to store price history for {record.asset_id}: {e}") from e

    async def get_liquidation_outcomes(self, since_ms: int) -> List[LiquidationOutcome]:
        try:
            docs = await self._collection(Collections.LIQUIDATION_RESULTS).find(
                {"liquidated_at_ms": {"$gte": since_ms}}
            ).to_list(length=None)
        except PyMongoError as e:
            raise DatabaseError(f"Failed to load liquidation outcomes: {e}") from e

        return [
            LiquidationOutcome(
                position_id=str(doc.get("position_id", "")),
                loss_lamports=int(doc.get("loss_lamports") or 0),
                liquidated_at_ms=int(doc["liquidated_at_ms"]),
            )
            for doc in docs
        ]

    async def append_security_event(self, event: SecurityEvent) -> None:
        try:
            await self._collection(Collections.SECURITY_EVENTS).insert_one(event.model_dump())
        except PyMongoError as e:
            raise DatabaseError(f"Failed to store security event {event.event_type}: {e}") from e
