from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..constants import GENERAL_BALLOT_KEY, LIVE_PROPOSAL_STATUSES, VOTE_VALUES
from ..core.errors import (
    DuplicateVoteConflict,
    InvalidSelectionError,
    NotEligibleToVote,
    ResourceNotFound,
    VotingNotOpenError,
)
from ..models.models import DeveloperProposal, MemberVote, RedevelopmentProject, User, as_utc_naive, utcnow
from . import membership
from .audit import audit_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoteTally:
    yes: int = 0
    no: int = 0
    abstain: int = 0

    @property
    def total(self) -> int:
        return self.yes + self.no + self.abstain

    @property
    def approval_percentage(self) -> int:
        return approval_percentage(self)

    def as_dict(self) -> Dict[str, int]:
        return {
            "yes": self.yes,
            "no": self.no,
            "abstain": self.abstain,
            "total": self.total,
            "approval_percentage": self.approval_percentage,
        }


def rounded_percentage(part: int, whole: int) -> int:
    """Percentage rounded half up; 0 when ``whole`` is 0."""
    if whole <= 0:
        return 0
    return (200 * part + whole) // (2 * whole)


def approval_percentage(tally: VoteTally) -> int:
    return rounded_percentage(tally.yes, tally.total)


def ballot_key_for(proposal_id: Optional[int]) -> str:
    return f"proposal:{proposal_id}" if proposal_id is not None else GENERAL_BALLOT_KEY


def ensure_voting_open(project: RedevelopmentProject, now: Optional[datetime] = None) -> None:
    now = as_utc_naive(now) or utcnow()
    if project.status != "voting" or project.voting_status != "open":
        raise VotingNotOpenError(
            f"Voting is not open for project {project.id}",
            current_status=project.status,
            target_status="voting",
        )
    if project.voting_deadline is not None and now > project.voting_deadline:
        raise VotingNotOpenError(
            f"Voting deadline for project {project.id} has passed",
            current_status=project.status,
            target_status="voting",
        )


def _resolve_proposal(session: Session, project: RedevelopmentProject, proposal_id: Optional[int]) -> Optional[DeveloperProposal]:
    if proposal_id is None:
        return None
    proposal = session.get(DeveloperProposal, proposal_id)
    if not proposal or proposal.project_id != project.id:
        raise InvalidSelectionError(f"Proposal {proposal_id} does not belong to project {project.id}")
    if proposal.status not in LIVE_PROPOSAL_STATUSES:
        raise InvalidSelectionError(f"Proposal {proposal_id} is {proposal.status} and cannot receive votes")
    return proposal


def _upsert_vote(
    session: Session,
    project: RedevelopmentProject,
    member: User,
    voting_session: str,
    vote: str,
    proposal_id: Optional[int],
    reason: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> MemberVote:
    key = ballot_key_for(proposal_id)
    record = (
        session.query(MemberVote)
        .filter(
            MemberVote.project_id == project.id,
            MemberVote.member_id == member.id,
            MemberVote.voting_session == voting_session,
            MemberVote.ballot_key == key,
        )
        .first()
    )
    now = utcnow()
    if record is None:
        record = MemberVote(
            project_id=project.id,
            member_id=member.id,
            voting_session=voting_session,
            ballot_key=key,
            proposal_id=proposal_id,
        )
        session.add(record)
    record.vote = vote
    record.reason = reason
    record.voted_at = now
    record.ip_address = ip_address
    record.user_agent = user_agent
    # A changed ballot needs a fresh verification.
    record.is_verified = False
    record.verified_by_user_id = None
    record.verified_at = None
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise DuplicateVoteConflict(
            f"Concurrent vote for member {member.id} on project {project.id} ({voting_session}, {key})"
        ) from exc
    session.refresh(record)
    return record


def cast_vote(
    session: Session,
    project: RedevelopmentProject,
    member: User,
    vote: str,
    *,
    voting_session: Optional[str] = None,
    proposal_id: Optional[int] = None,
    reason: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> MemberVote:
    """Record ``member``'s vote, overwriting an earlier vote for the same ballot.

    A ballot is (project, member, voting session, proposal or general). A
    concurrent insert for the same ballot surfaces as ``DuplicateVoteConflict``
    and is retried once as an update.
    """
    if vote not in VOTE_VALUES:
        raise InvalidSelectionError(f"Vote must be one of {', '.join(VOTE_VALUES)}")
    ensure_voting_open(project, now)
    if not membership.is_active_member(session, project.society_id, member.id):
        raise NotEligibleToVote(f"User {member.id} is not an active member of society {project.society_id}")
    _resolve_proposal(session, project, proposal_id)

    voting_session = voting_session or project.voting_session
    args = (session, project, member, voting_session, vote, proposal_id, reason, ip_address, user_agent)
    try:
        record = _upsert_vote(*args)
    except DuplicateVoteConflict:
        logger.warning(
            "Vote upsert conflict for member %s on project %s; retrying",
            member.id,
            project.id,
            extra={"project_id": project.id},
        )
        record = _upsert_vote(*args)

    logger.info(
        "Vote %s recorded for member %s on project %s (%s)",
        vote,
        member.id,
        project.id,
        record.ballot_key,
        extra={"project_id": project.id, "voting_session": voting_session},
    )
    return record


def get_tally(session: Session, project_id: int, voting_session: str, proposal_id: Optional[int] = None) -> VoteTally:
    query = session.query(MemberVote.vote, func.count(MemberVote.id)).filter(
        MemberVote.project_id == project_id,
        MemberVote.voting_session == voting_session,
    )
    if proposal_id is not None:
        query = query.filter(MemberVote.proposal_id == proposal_id)
    counts = {value: int(count) for value, count in query.group_by(MemberVote.vote).all()}
    return VoteTally(yes=counts.get("yes", 0), no=counts.get("no", 0), abstain=counts.get("abstain", 0))


def count_participants(session: Session, project_id: int, voting_session: str) -> int:
    return int(
        session.query(func.count(func.distinct(MemberVote.member_id)))
        .filter(MemberVote.project_id == project_id, MemberVote.voting_session == voting_session)
        .scalar()
        or 0
    )


def voter_ids(session: Session, project_id: int, voting_session: str) -> set:
    rows = (
        session.query(MemberVote.member_id)
        .filter(MemberVote.project_id == project_id, MemberVote.voting_session == voting_session)
        .distinct()
        .all()
    )
    return {row[0] for row in rows}


def tally_proposals(session: Session, project: RedevelopmentProject) -> List[dict]:
    """Per-proposal tallies in the project's voting session, in submission order."""
    proposals = (
        session.query(DeveloperProposal)
        .filter(DeveloperProposal.project_id == project.id, DeveloperProposal.status != "draft")
        .order_by(DeveloperProposal.submitted_at.asc(), DeveloperProposal.id.asc())
        .all()
    )
    results = []
    for proposal in proposals:
        tally = get_tally(session, project.id, project.voting_session, proposal.id)
        results.append(
            {
                "proposal_id": proposal.id,
                "developer_id": proposal.developer_id,
                "title": proposal.title,
                "status": proposal.status,
                "submitted_at": proposal.submitted_at.isoformat(),
                "yes_votes": tally.yes,
                "no_votes": tally.no,
                "abstain_votes": tally.abstain,
                "total_votes": tally.total,
                "approval_percentage": tally.approval_percentage,
            }
        )
    return results


def get_vote(session: Session, vote_id: int) -> MemberVote:
    record = session.get(MemberVote, vote_id)
    if not record:
        raise ResourceNotFound(f"Vote {vote_id} not found")
    return record


def get_member_vote(
    session: Session,
    project_id: int,
    member_id: int,
    voting_session: str,
    proposal_id: Optional[int] = None,
) -> Optional[MemberVote]:
    return (
        session.query(MemberVote)
        .filter(
            MemberVote.project_id == project_id,
            MemberVote.member_id == member_id,
            MemberVote.voting_session == voting_session,
            MemberVote.ballot_key == ballot_key_for(proposal_id),
        )
        .first()
    )


def list_member_votes(session: Session, project_id: int, member_id: int) -> List[MemberVote]:
    return (
        session.query(MemberVote)
        .filter(MemberVote.project_id == project_id, MemberVote.member_id == member_id)
        .order_by(MemberVote.voted_at.desc())
        .all()
    )


def verify_vote(session: Session, record: MemberVote, verifier: User) -> MemberVote:
    """Mark a vote as verified. Only the verification fields change."""
    if record.is_verified:
        return record
    record.is_verified = True
    record.verified_by_user_id = verifier.id
    record.verified_at = utcnow()
    audit_log(
        session,
        actor_user_id=verifier.id,
        action="votes.verify",
        target_entity_type="member_vote",
        target_entity_id=record.id,
        after={"project_id": record.project_id, "member_id": record.member_id},
        commit=False,
    )
    session.commit()
    session.refresh(record)
    return record


def build_voting_statistics(session: Session, project: RedevelopmentProject, now: Optional[datetime] = None) -> dict:
    now = as_utc_naive(now) or utcnow()
    tally = get_tally(session, project.id, project.voting_session)
    total_members = membership.count_active_members(session, project.society_id)
    participants = count_participants(session, project.id, project.voting_session)
    approval = tally.approval_percentage

    hours_remaining = None
    if project.voting_deadline is not None and project.voting_status == "open":
        seconds = (project.voting_deadline - now).total_seconds()
        hours_remaining = max(0, math.ceil(seconds / 3600))

    return {
        "total_members": total_members,
        "total_votes": tally.total,
        "participants": participants,
        "yes_votes": tally.yes,
        "no_votes": tally.no,
        "abstain_votes": tally.abstain,
        "approval_percentage": approval,
        "participation_rate": min(100, rounded_percentage(participants, total_members)),
        "minimum_approval_required": project.minimum_approval_percentage,
        "is_approved": approval >= project.minimum_approval_percentage,
        "project_status": project.status,
        "voting_status": project.voting_status,
        "voting_deadline": project.voting_deadline,
        "hours_remaining": hours_remaining,
        "voting_session": project.voting_session,
    }
