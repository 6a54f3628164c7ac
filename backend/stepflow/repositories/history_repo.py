"""History Repository - Data access for history entries (append-only)"""
from typing import List, Optional
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo import ASCENDING

from .mongo_client import get_collection
from ..domain.models import HistoryEntry
from ..utils.logger import get_logger

logger = get_logger(__name__)


class HistoryRepository:
    """
    Repository for history entries

    Entries are never edited. The only delete removes entries of a command
    that failed before its instance write.
    """

    def __init__(self):
        self._entries: Collection = get_collection("history_entries")

    def create_entries(
        self,
        entries: List[HistoryEntry],
        session: Optional[ClientSession] = None
    ) -> List[HistoryEntry]:
        """Append history entries"""
        if not entries:
            return []

        docs = []
        for entry in entries:
            doc = entry.model_dump(mode="json")
            doc["_id"] = entry.history_id
            docs.append(doc)

        self._entries.insert_many(docs, session=session)
        logger.info(
            f"Appended {len(entries)} history entries",
            extra={"instance_id": entries[0].instance_id}
        )
        return entries

    def delete_entries(self, history_ids: List[str]) -> int:
        """Remove entries written by a command that did not commit"""
        if not history_ids:
            return 0
        return self._entries.delete_many({"history_id": {"$in": history_ids}}).deleted_count

    def get_entries_for_instance(self, instance_id: str) -> List[HistoryEntry]:
        """Get the full history of an instance, oldest first"""
        cursor = self._entries.find({"instance_id": instance_id}).sort("sequence", ASCENDING)

        entries = []
        for doc in cursor:
            doc.pop("_id", None)
            entries.append(HistoryEntry.model_validate(doc))
        return entries
