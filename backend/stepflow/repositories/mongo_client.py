"""MongoDB Client - Connection and Collection Management"""
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from pymongo import MongoClient as PyMongoClient
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the application database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def get_collection(name: str) -> Collection:
    """Get a collection from the database"""
    db = get_database()
    return db[name]


class UnitOfWork:
    """
    Writes of one engine command

    With transactions every write joins `session` and an error aborts them
    together. Without transactions each write registers an undo callback;
    an error runs the callbacks newest first and re-raises.
    """

    def __init__(self, session: Optional[ClientSession] = None):
        self.session = session
        self._undo: List[Tuple[Callable[..., Any], tuple, dict]] = []

    def on_rollback(self, callback: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Register the inverse of a write that just succeeded"""
        if self.session is None:
            self._undo.append((callback, args, kwargs))

    def rollback(self) -> None:
        while self._undo:
            callback, args, kwargs = self._undo.pop()
            try:
                callback(*args, **kwargs)
            except PyMongoError as e:
                logger.error(f"Rollback step {callback.__name__} failed: {e}", exc_info=True)


@contextmanager
def start_unit_of_work() -> Iterator[UnitOfWork]:
    """
    Yield a unit whose writes land together or not at all

    Transactions need a replica set; with MONGO_USE_TRANSACTIONS off the
    unit compensates its own writes on failure and relies on the
    per-instance lock for isolation.
    """
    if not settings.mongo_use_transactions:
        unit = UnitOfWork()
        try:
            yield unit
        except Exception:
            unit.rollback()
            raise
        return

    with get_client().start_session() as session:
        with session.start_transaction():
            yield UnitOfWork(session)


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def create_indexes() -> None:
    """Create all required indexes"""
    db = get_database()
    logger.info("Creating MongoDB indexes...")

    # Templates collection
    templates = db["workflow_templates"]
    templates.create_index("template_id", unique=True)
    templates.create_index("is_active")
    templates.create_index("updated_at")

    # Instances collection
    instances = db["workflow_instances"]
    instances.create_index("instance_id", unique=True)
    instances.create_index([("project_id", ASCENDING), ("status", ASCENDING)])
    instances.create_index("status")
    instances.create_index("stuck.node_id", sparse=True)

    # Active steps - one per (instance, node)
    active_steps = db["active_steps"]
    active_steps.create_index("step_id", unique=True)
    active_steps.create_index([("instance_id", ASCENDING), ("node_id", ASCENDING)], unique=True)

    # Approval rounds
    approval_rounds = db["approval_rounds"]
    approval_rounds.create_index("round_id", unique=True)
    approval_rounds.create_index([("instance_id", ASCENDING), ("node_id", ASCENDING), ("opened_at", ASCENDING)])

    # Approval votes - insert-if-absent per (round, user)
    approval_votes = db["approval_votes"]
    approval_votes.create_index("vote_id", unique=True)
    approval_votes.create_index([("round_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    approval_votes.create_index([("instance_id", ASCENDING), ("node_id", ASCENDING)])

    approval_feedback = db["approval_feedback"]
    approval_feedback.create_index("feedback_id", unique=True)
    approval_feedback.create_index("round_id")

    # Assignments
    assignments = db["assignments"]
    assignments.create_index("assignment_id", unique=True)
    assignments.create_index("user_id")
    assignments.create_index("step_id")
    assignments.create_index([("instance_id", ASCENDING), ("node_id", ASCENDING)])

    # History entries (append-only)
    history = db["history_entries"]
    history.create_index("history_id", unique=True)
    history.create_index([("instance_id", ASCENDING), ("sequence", ASCENDING)], unique=True)

    # RBAC entities read by the default resolver
    rbac_entities = db["rbac_entities"]
    rbac_entities.create_index("entity_ref", unique=True)
    rbac_entities.create_index("members")

    logger.info("MongoDB indexes created successfully")


def health_check() -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        client = get_client()
        client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except PyMongoError as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
