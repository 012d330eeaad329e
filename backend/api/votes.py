from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..api.redevelopment import load_managed_project, load_visible_project
from ..auth.jwt import get_current_user
from ..constants import EVENT_VOTE_CAST
from ..models.models import MemberVote, User
from ..schemas.schemas import MemberVoteRead, VoteCast, VoteCastResult, VotingStatisticsRead
from ..services import redevelopment as redevelopment_service
from ..services import votes as vote_service
from ..services.notifications import notification_center

router = APIRouter()


@router.post("/", response_model=VoteCastResult, status_code=status.HTTP_201_CREATED)
def cast_vote(
    payload: VoteCast,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    project = load_visible_project(db, payload.project_id, current_user)
    record = vote_service.cast_vote(
        db,
        project,
        current_user,
        payload.vote,
        voting_session=payload.voting_session,
        proposal_id=payload.proposal_id,
        reason=payload.reason,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    tally = vote_service.get_tally(db, project.id, record.voting_session, payload.proposal_id)
    notification_center.notify_project(
        project.id,
        EVENT_VOTE_CAST,
        {
            "project_id": project.id,
            "voting_session": record.voting_session,
            "proposal_id": record.proposal_id,
            "tally": tally.as_dict(),
        },
    )
    auto_close = redevelopment_service.check_and_auto_close(db, project)
    return {
        "vote": MemberVoteRead.model_validate(record),
        "tally": tally.as_dict(),
        "auto_close": auto_close.as_dict(),
    }


@router.get("/project/{project_id}/stats", response_model=VotingStatisticsRead)
def voting_statistics(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    project = load_visible_project(db, project_id, current_user)
    return vote_service.build_voting_statistics(db, project)


@router.get("/my-vote/{project_id}")
def my_vote(
    project_id: int,
    voting_session: Optional[str] = Query(None),
    proposal_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    project = load_visible_project(db, project_id, current_user)
    record = vote_service.get_member_vote(
        db, project.id, current_user.id, voting_session or project.voting_session, proposal_id
    )
    return {
        "has_voted": record is not None,
        "vote": MemberVoteRead.model_validate(record).model_dump(mode="json") if record else None,
    }


@router.get("/my-votes/{project_id}", response_model=List[MemberVoteRead])
def my_votes(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[MemberVote]:
    project = load_visible_project(db, project_id, current_user)
    return vote_service.list_member_votes(db, project.id, current_user.id)


@router.post("/{vote_id}/verify", response_model=MemberVoteRead)
def verify_vote(
    vote_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MemberVote:
    record = vote_service.get_vote(db, vote_id)
    load_managed_project(db, record.project_id, current_user)
    return vote_service.verify_vote(db, record, current_user)
