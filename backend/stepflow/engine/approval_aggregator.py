"""Approval Aggregator - Vote dedup and threshold resolution per approval round"""
from typing import Iterable, List, Optional, Set
from pydantic import BaseModel, Field
from pymongo.client_session import ClientSession

from ..domain.models import ApprovalRound, ApprovalVote, ApprovalFeedback
from ..domain.enums import ApprovalDecision, Port
from ..domain.errors import ValidationError
from ..repositories.mongo_client import UnitOfWork
from ..repositories.vote_repo import VoteRepository
from ..utils.idgen import generate_vote_id, generate_feedback_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class VoteTally(BaseModel):
    """Distinct voters per decision"""
    approvers: List[str] = Field(default_factory=list)
    rejecters: List[str] = Field(default_factory=list)


class VoteResult(BaseModel):
    """Outcome of recording one vote"""
    round_id: str
    vote: Optional[ApprovalVote] = None
    feedback: Optional[ApprovalFeedback] = None
    counted: bool = False
    resolved_port: Optional[str] = Field(None, description="Set only for the vote that resolved the round")
    tally: VoteTally = Field(default_factory=VoteTally)


def tally_votes(votes: Iterable[ApprovalVote]) -> VoteTally:
    """Build a set-based tally from counted votes"""
    approvers: Set[str] = set()
    rejecters: Set[str] = set()
    for vote in votes:
        if not vote.counted:
            continue
        if vote.decision == ApprovalDecision.APPROVE:
            approvers.add(vote.user_id)
        elif vote.decision == ApprovalDecision.REJECT:
            rejecters.add(vote.user_id)
    return VoteTally(approvers=sorted(approvers), rejecters=sorted(rejecters))


def compute_resolution(
    tally: VoteTally,
    required_approvals: int,
    allow_send_back: bool
) -> Optional[str]:
    """
    Decide whether a round resolves

    Rules:
    1. Send-back: any reject resolves to `reject`
    2. Distinct approvers >= required -> `approve`
    3. Distinct rejecters >= required -> `reject`
    4. Otherwise the round stays open
    """
    if allow_send_back and tally.rejecters:
        return Port.REJECT.value
    if len(tally.approvers) >= required_approvals:
        return Port.APPROVE.value
    if len(tally.rejecters) >= required_approvals:
        return Port.REJECT.value
    return None


class ApprovalAggregator:
    """
    Record approval votes and resolve rounds exactly once

    Algorithm:
    1. FEEDBACK -> store a note (if allowed), never counted
    2. Insert vote; the unique (round, user) index rejects duplicates
    3. Round already resolved -> vote kept for audit, counted=False
    4. Re-read counted votes, tally distinct voters
    5. Threshold met -> conditional update resolves the round; only the
       vote that wins that update reports a resolution

    Given a unit, both writes join it and are undone if the command fails
    before it commits.
    """

    def __init__(self, vote_repo: Optional[VoteRepository] = None):
        self.repo = vote_repo or VoteRepository()

    def record_vote(
        self,
        approval_round: ApprovalRound,
        user_id: str,
        decision: ApprovalDecision,
        comment: Optional[str] = None,
        unit: Optional[UnitOfWork] = None
    ) -> VoteResult:
        """Record one vote against a round"""
        session = unit.session if unit else None
        if decision == ApprovalDecision.FEEDBACK:
            return self._record_feedback(approval_round, user_id, comment, session)

        vote = ApprovalVote(
            vote_id=generate_vote_id(),
            round_id=approval_round.round_id,
            instance_id=approval_round.instance_id,
            node_id=approval_round.node_id,
            user_id=user_id,
            decision=decision,
            comment=comment,
            voted_at=utc_now(),
            counted=not approval_round.is_resolved,
        )
        self.repo.insert_vote(vote, session=session)
        if unit:
            unit.on_rollback(self.repo.delete_vote, vote.vote_id)

        if not vote.counted:
            logger.info(
                f"Late vote by {user_id} on resolved round {approval_round.round_id}",
                extra={"instance_id": vote.instance_id, "node_id": vote.node_id, "actor_id": user_id}
            )
            return VoteResult(round_id=approval_round.round_id, vote=vote, counted=False)

        tally = tally_votes(
            self.repo.get_votes_for_round(approval_round.round_id, counted_only=True, session=session)
        )
        port = compute_resolution(
            tally,
            approval_round.required_approvals,
            approval_round.allow_send_back
        )

        resolved_port = None
        if port is not None:
            resolved = self.repo.resolve_round(
                approval_round.round_id, port, resolved_by=user_id, session=session
            )
            if resolved is not None:
                resolved_port = resolved.resolved_port
                if unit:
                    unit.on_rollback(self.repo.reopen_round, approval_round.round_id, resolved_by=user_id)

        logger.info(
            f"Vote {decision.value} by {user_id}: "
            f"{len(tally.approvers)}/{approval_round.required_approvals} approvals, "
            f"{len(tally.rejecters)} rejections",
            extra={
                "instance_id": vote.instance_id,
                "node_id": vote.node_id,
                "actor_id": user_id,
                "decision": decision.value,
                "port": resolved_port,
            }
        )

        return VoteResult(
            round_id=approval_round.round_id,
            vote=vote,
            counted=True,
            resolved_port=resolved_port,
            tally=tally,
        )

    def _record_feedback(
        self,
        approval_round: ApprovalRound,
        user_id: str,
        comment: Optional[str],
        session: Optional[ClientSession] = None
    ) -> VoteResult:
        if not approval_round.allow_feedback:
            raise ValidationError(
                f"Feedback is not enabled for node {approval_round.node_id}",
                details={"node_id": approval_round.node_id}
            )
        if not comment or not comment.strip():
            raise ValidationError("Feedback requires a comment")

        feedback = self.repo.insert_feedback(ApprovalFeedback(
            feedback_id=generate_feedback_id(),
            round_id=approval_round.round_id,
            instance_id=approval_round.instance_id,
            node_id=approval_round.node_id,
            user_id=user_id,
            comment=comment.strip(),
            created_at=utc_now(),
        ), session=session)
        return VoteResult(round_id=approval_round.round_id, feedback=feedback, counted=False)

    def get_tally(self, round_id: str) -> VoteTally:
        """Current tally of a round"""
        return tally_votes(self.repo.get_votes_for_round(round_id, counted_only=True))
