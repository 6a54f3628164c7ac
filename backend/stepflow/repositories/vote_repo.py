"""Vote Repository - Approval rounds, votes and feedback"""
from typing import List, Optional
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection
from ..domain.models import ApprovalRound, ApprovalVote, ApprovalFeedback
from ..domain.errors import DuplicateApprovalError
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class VoteRepository:
    """Repository for approval state"""

    def __init__(self):
        self._rounds: Collection = get_collection("approval_rounds")
        self._votes: Collection = get_collection("approval_votes")
        self._feedback: Collection = get_collection("approval_feedback")

    # =========================================================================
    # Rounds
    # =========================================================================

    def create_rounds(
        self,
        rounds: List[ApprovalRound],
        session: Optional[ClientSession] = None
    ) -> None:
        """Open approval rounds"""
        for approval_round in rounds:
            doc = approval_round.model_dump(mode="json")
            doc["_id"] = approval_round.round_id
            self._rounds.insert_one(doc, session=session)

    def delete_rounds(self, round_ids: List[str]) -> int:
        """Remove rounds opened by a command that did not commit"""
        if not round_ids:
            return 0
        return self._rounds.delete_many({"round_id": {"$in": round_ids}}).deleted_count

    def get_round(self, round_id: str) -> Optional[ApprovalRound]:
        """Get round by ID"""
        doc = self._rounds.find_one({"round_id": round_id})
        if doc:
            doc.pop("_id", None)
            return ApprovalRound.model_validate(doc)
        return None

    def get_latest_round(self, instance_id: str, node_id: str) -> Optional[ApprovalRound]:
        """Get the most recently opened round of a node"""
        docs = list(
            self._rounds.find({"instance_id": instance_id, "node_id": node_id})
            .sort("opened_at", DESCENDING)
            .limit(1)
        )
        if docs:
            docs[0].pop("_id", None)
            return ApprovalRound.model_validate(docs[0])
        return None

    def resolve_round(
        self,
        round_id: str,
        port: str,
        resolved_by: str,
        session: Optional[ClientSession] = None
    ) -> Optional[ApprovalRound]:
        """
        Mark a round resolved if it is still open

        Returns the resolved round, or None when another vote resolved it
        first.
        """
        result = self._rounds.find_one_and_update(
            {"round_id": round_id, "resolved_port": None},
            {"$set": {
                "resolved_port": port,
                "resolved_at": utc_now().isoformat(),
                "resolved_by": resolved_by,
            }},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if result is None:
            return None
        result.pop("_id", None)
        logger.info(
            f"Approval round {round_id} resolved to {port}",
            extra={"instance_id": result["instance_id"], "node_id": result["node_id"], "port": port}
        )
        return ApprovalRound.model_validate(result)

    def reopen_round(self, round_id: str, resolved_by: str) -> bool:
        """Undo a resolution whose command did not commit"""
        result = self._rounds.update_one(
            {"round_id": round_id, "resolved_by": resolved_by},
            {"$set": {"resolved_port": None, "resolved_at": None, "resolved_by": None}}
        )
        return result.modified_count == 1

    # =========================================================================
    # Votes
    # =========================================================================

    def insert_vote(
        self,
        vote: ApprovalVote,
        session: Optional[ClientSession] = None
    ) -> ApprovalVote:
        """Insert a vote if the user has not voted in this round yet"""
        doc = vote.model_dump(mode="json")
        doc["_id"] = vote.vote_id

        try:
            self._votes.insert_one(doc, session=session)
        except DuplicateKeyError:
            raise DuplicateApprovalError(
                f"User {vote.user_id} already voted on node {vote.node_id}",
                details={
                    "instance_id": vote.instance_id,
                    "node_id": vote.node_id,
                    "user_id": vote.user_id,
                }
            )
        return vote

    def delete_vote(self, vote_id: str) -> bool:
        """Remove a vote whose command did not commit"""
        return self._votes.delete_one({"vote_id": vote_id}).deleted_count == 1

    def get_votes_for_round(
        self,
        round_id: str,
        counted_only: bool = False,
        session: Optional[ClientSession] = None
    ) -> List[ApprovalVote]:
        """Get votes of a round in voting order"""
        query = {"round_id": round_id}
        if counted_only:
            query["counted"] = True
        cursor = self._votes.find(query, session=session).sort("voted_at", ASCENDING)

        votes = []
        for doc in cursor:
            doc.pop("_id", None)
            votes.append(ApprovalVote.model_validate(doc))
        return votes

    # =========================================================================
    # Feedback
    # =========================================================================

    def insert_feedback(
        self,
        feedback: ApprovalFeedback,
        session: Optional[ClientSession] = None
    ) -> ApprovalFeedback:
        """Store a comment-only feedback note"""
        doc = feedback.model_dump(mode="json")
        doc["_id"] = feedback.feedback_id
        self._feedback.insert_one(doc, session=session)
        return feedback

    def get_feedback_for_round(self, round_id: str) -> List[ApprovalFeedback]:
        """Get feedback notes of a round"""
        cursor = self._feedback.find({"round_id": round_id}).sort("created_at", ASCENDING)

        notes = []
        for doc in cursor:
            doc.pop("_id", None)
            notes.append(ApprovalFeedback.model_validate(doc))
        return notes
