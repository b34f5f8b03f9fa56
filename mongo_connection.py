"""
MongoDB connection lifecycle (mongo_connection.py)
================================================================================

One `MongoConnection` is created per process in the FastAPI lifespan and kept
on `app.state.mongo`. Components never reach for a global client: routes get
the database through the `acquire_database` dependency and pass it down.

Usage:
    connection = MongoConnection(MONGO_URI, DB_NAME)
    await connection.connect()
    db = connection.get_database()
    ...
    connection.close()
"""

import logging
from typing import Optional
from fastapi import HTTPException, Request, status
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)


class MongoConnection:
    """Owns the motor client and the application database handle."""

    def __init__(
        self,
        mongo_uri: str,
        db_name: str,
        max_pool_size: int = 50,
        min_pool_size: int = 5,
        server_selection_timeout_ms: int = 10000,
        max_idle_time_ms: int = 45000,
        appname: str = "ExpoRegistrationAPI",
    ):
        if not mongo_uri:
            raise ValueError("Mongo URI is required")
        if not db_name:
            raise ValueError("Mongo DB name is required")
        self.mongo_uri = mongo_uri
        self.db_name = db_name
        self.max_pool_size = max_pool_size
        self.min_pool_size = min_pool_size
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self.max_idle_time_ms = max_idle_time_ms
        self.appname = appname
        self._client: Optional[AsyncIOMotorClient] = None
        self._db: Optional[AsyncIOMotorDatabase] = None

    @property
    def is_connected(self) -> bool:
        return self._db is not None

    async def connect(self) -> AsyncIOMotorDatabase:
        """
        Creates the client and verifies it with a ping.

        Idempotent: a second call returns the existing handle.
        """
        if self._db is not None:
            return self._db

        logger.info(
            f"Connecting to MongoDB (db='{self.db_name}', max_pool_size={self.max_pool_size}, "
            f"min_pool_size={self.min_pool_size})..."
        )
        client = AsyncIOMotorClient(
            self.mongo_uri,
            serverSelectionTimeoutMS=self.server_selection_timeout_ms,
            appname=self.appname,
            maxPoolSize=self.max_pool_size,
            minPoolSize=self.min_pool_size,
            maxIdleTimeMS=self.max_idle_time_ms,
            retryWrites=True,
            retryReads=True,
        )
        try:
            await client.admin.command("ping")
        except Exception as e:
            logger.critical(f"❌ MongoDB connection failed: {e}", exc_info=True)
            client.close()
            raise
        self._client = client
        self._db = client[self.db_name]
        logger.info(f"✔️ MongoDB connection successful (Database: '{self.db_name}').")
        return self._db

    def get_database(self) -> AsyncIOMotorDatabase:
        if self._db is None:
            raise RuntimeError("MongoDB not connected. Call connect() first.")
        return self._db

    async def verify(self) -> bool:
        """Pings the server; used by the health endpoint."""
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
            return True
        except Exception as e:
            logger.error(f"MongoDB ping failed: {e}")
            return False

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
                logger.info("MongoDB client closed")
            except Exception as e:
                logger.warning(f"Error closing MongoDB client: {e}")
        self._client = None
        self._db = None


async def acquire_database(request: Request) -> AsyncIOMotorDatabase:
    """FastAPI Dependency: the application database handle."""
    connection: Optional[MongoConnection] = getattr(request.app.state, "mongo", None)
    if connection is None or not connection.is_connected:
        logger.critical("❌ acquire_database: MongoDB connection not found on app.state!")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not available",
        )
    return connection.get_database()
