"""
Live database session shared by the backup and restore pipelines.

The session is created by the caller (CLI, scheduler or web request),
injected into the managers and closed by the caller. It is used for
collection listings and document counts only; dump and restore go through
the external tools.
"""

import logging
from typing import Callable, List

from pymongo import MongoClient
from pymongo.errors import PyMongoError


logger = logging.getLogger(__name__)


class DatabaseSession:
    """
    Thin wrapper around a pymongo client with an explicit lifecycle.
    """

    def __init__(self, uri: str, server_selection_timeout_ms: int = 5000,
                 client_factory: Callable[..., MongoClient] = MongoClient):
        """
        Initialize the session without connecting.

        Args:
            uri: MongoDB connection string
            server_selection_timeout_ms: Timeout for server selection
            client_factory: Callable building the client (MongoClient by default)
        """
        self.uri = uri
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self._client_factory = client_factory
        self._client = None

    def connect(self):
        """Open a new client, replacing any existing one."""
        self.close()
        self._client = self._client_factory(
            self.uri,
            serverSelectionTimeoutMS=self.server_selection_timeout_ms
        )
        return self._client

    @property
    def client(self):
        if self._client is None:
            self.connect()
        return self._client

    def is_ready(self) -> bool:
        """Check the server answers a ping."""
        if self._client is None:
            return False
        try:
            self._client.admin.command('ping')
            return True
        except PyMongoError as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False

    def ensure_connected(self):
        """Reconnect if the current client is missing or not answering."""
        if not self.is_ready():
            logger.info("MongoDB connection not ready, reconnecting...")
            self.connect()
            # Raises if the server is still unreachable
            self._client.admin.command('ping')
            logger.info("MongoDB connection established")

    def list_collections(self, database: str) -> List[str]:
        """List collection names of a database, sorted."""
        return sorted(self.client[database].list_collection_names())

    def count_documents(self, database: str, collection: str) -> int:
        """Count documents of one collection."""
        return self.client[database][collection].count_documents({})

    def close(self):
        if self._client is not None:
            try:
                self._client.close()
            finally:
                self._client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
