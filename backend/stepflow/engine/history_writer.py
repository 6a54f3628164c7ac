"""History Writer - Append-only transition history"""
from typing import Any, Dict, List, Optional
from pymongo.client_session import ClientSession

from ..domain.models import HistoryEntry
from ..domain.enums import HistoryEventType
from ..repositories.history_repo import HistoryRepository
from ..utils.idgen import generate_history_id
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


class HistoryWriter:
    """
    Build and persist history entries (append-only)

    Entries are built while a transition is planned and written when it
    commits, so a failed command never leaves partial history. Sequence
    numbers continue from the instance's history_count.
    """

    def __init__(self, history_repo: Optional[HistoryRepository] = None):
        self.repo = history_repo or HistoryRepository()

    def build_entry(
        self,
        instance_id: str,
        sequence: int,
        event_type: HistoryEventType,
        node_id: Optional[str] = None,
        from_node_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        decision: Optional[str] = None,
        port: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> HistoryEntry:
        """Build an entry without writing it"""
        entry_details = dict(details or {})
        correlation_id = get_correlation_id()
        if correlation_id:
            entry_details.setdefault("correlation_id", correlation_id)

        return HistoryEntry(
            history_id=generate_history_id(),
            instance_id=instance_id,
            sequence=sequence,
            event_type=event_type,
            node_id=node_id,
            from_node_id=from_node_id,
            actor_id=actor_id,
            decision=decision,
            port=port,
            details=entry_details,
            timestamp=utc_now(),
        )

    def write(
        self,
        entries: List[HistoryEntry],
        session: Optional[ClientSession] = None
    ) -> List[HistoryEntry]:
        """Persist entries built for one transition"""
        return self.repo.create_entries(entries, session=session)

    def discard(self, entries: List[HistoryEntry]) -> int:
        """Remove entries of a transition that did not commit"""
        return self.repo.delete_entries([e.history_id for e in entries])

    def get_history(self, instance_id: str) -> List[HistoryEntry]:
        """Full history of an instance, oldest first"""
        return self.repo.get_entries_for_instance(instance_id)
