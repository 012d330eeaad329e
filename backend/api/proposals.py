from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..api.redevelopment import load_managed_project, load_visible_project
from ..auth.jwt import get_current_user, require_roles
from ..models.models import DeveloperProposal, User
from ..schemas.schemas import DeveloperProposalCreate, DeveloperProposalRead, ProposalEvaluation
from ..services import proposals as proposal_service
from ..services import redevelopment as redevelopment_service

router = APIRouter()


@router.get("/project/{project_id}", response_model=List[DeveloperProposalRead])
def list_project_proposals(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[DeveloperProposal]:
    project = load_visible_project(db, project_id, current_user)
    proposals = proposal_service.list_proposals(db, project.id)
    if redevelopment_service.can_manage_project(project, current_user):
        return proposals
    # Members see the competing proposals; developers only their own.
    if current_user.has_role("DEVELOPER") and not current_user.has_any_role("SOCIETY_MEMBER", "SOCIETY_OWNER"):
        return [proposal for proposal in proposals if proposal.developer_id == current_user.id]
    return [proposal for proposal in proposals if proposal.status not in ("draft", "withdrawn")]


@router.post("/project/{project_id}", response_model=DeveloperProposalRead, status_code=status.HTTP_201_CREATED)
def submit_proposal(
    project_id: int,
    payload: DeveloperProposalCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles("DEVELOPER")),
) -> DeveloperProposal:
    project = load_visible_project(db, project_id, current_user)
    return proposal_service.submit_proposal(db, project, current_user, payload)


@router.get("/{proposal_id}", response_model=DeveloperProposalRead)
def get_proposal(
    proposal_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> DeveloperProposal:
    proposal = proposal_service.get_proposal(db, proposal_id)
    if proposal.developer_id != current_user.id:
        load_visible_project(db, proposal.project_id, current_user)
    return proposal


@router.post("/{proposal_id}/evaluate", response_model=DeveloperProposalRead)
def evaluate_proposal(
    proposal_id: int,
    payload: ProposalEvaluation,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> DeveloperProposal:
    proposal = proposal_service.get_proposal(db, proposal_id)
    load_managed_project(db, proposal.project_id, current_user)
    return proposal_service.evaluate_proposal(db, proposal, current_user, payload)


@router.post("/{proposal_id}/shortlist", response_model=DeveloperProposalRead)
def shortlist_proposal(
    proposal_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> DeveloperProposal:
    proposal = proposal_service.get_proposal(db, proposal_id)
    load_managed_project(db, proposal.project_id, current_user)
    return proposal_service.shortlist_proposal(db, proposal, current_user)


@router.post("/{proposal_id}/withdraw", response_model=DeveloperProposalRead)
def withdraw_proposal(
    proposal_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles("DEVELOPER")),
) -> DeveloperProposal:
    proposal = proposal_service.get_proposal(db, proposal_id)
    return proposal_service.withdraw_proposal(db, proposal, current_user)
