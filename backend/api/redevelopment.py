from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user, require_roles
from ..core.errors import ResourceNotFound
from ..models.models import RedevelopmentProject, User
from ..schemas.schemas import (
    CloseVotingRequest,
    OpenVotingRequest,
    ProjectDocumentCreate,
    ProjectDocumentRead,
    ProjectPhaseRead,
    ProjectPhaseStatusUpdate,
    ProjectProgressUpdate,
    ProjectQueryCreate,
    ProjectQueryRead,
    ProjectQueryResponse,
    ProjectStatusUpdate,
    ProjectUpdateCreate,
    ProjectUpdateRead,
    RedevelopmentProjectCreate,
    RedevelopmentProjectRead,
    SelectDeveloperRequest,
    VotingResultsRead,
)
from ..services import redevelopment as redevelopment_service
from ..services import votes as vote_service

router = APIRouter()


def load_visible_project(db: Session, project_id: int, user: User) -> RedevelopmentProject:
    project = redevelopment_service.get_project(db, project_id)
    if not redevelopment_service.can_view_project(db, project, user):
        raise ResourceNotFound(f"Redevelopment project {project_id} not found")
    return project


def load_managed_project(db: Session, project_id: int, user: User) -> RedevelopmentProject:
    project = load_visible_project(db, project_id, user)
    redevelopment_service.ensure_can_manage(project, user)
    return project


@router.get("/projects", response_model=List[RedevelopmentProjectRead])
def list_projects(
    society_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[RedevelopmentProject]:
    return redevelopment_service.list_projects(db, current_user, society_id=society_id, status=status_filter)


@router.post("/projects", response_model=RedevelopmentProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(
    payload: RedevelopmentProjectCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles("SOCIETY_OWNER", "ADMIN")),
) -> RedevelopmentProject:
    return redevelopment_service.create_project(db, current_user, payload)


@router.get("/projects/{project_id}", response_model=RedevelopmentProjectRead)
def get_project(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RedevelopmentProject:
    return load_visible_project(db, project_id, current_user)


@router.post("/projects/{project_id}/status", response_model=RedevelopmentProjectRead)
def update_project_status(
    project_id: int,
    payload: ProjectStatusUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RedevelopmentProject:
    project = load_managed_project(db, project_id, current_user)
    return redevelopment_service.transition_project_status(
        db, project, payload.target_status, current_user, notes=payload.notes
    )


@router.post("/projects/{project_id}/progress", response_model=RedevelopmentProjectRead)
def update_project_progress(
    project_id: int,
    payload: ProjectProgressUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RedevelopmentProject:
    project = load_managed_project(db, project_id, current_user)
    return redevelopment_service.update_progress(db, project, payload.progress, current_user)


@router.post("/projects/{project_id}/voting/open", response_model=RedevelopmentProjectRead)
def open_voting(
    project_id: int,
    payload: OpenVotingRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RedevelopmentProject:
    project = load_managed_project(db, project_id, current_user)
    return redevelopment_service.open_voting(db, project, payload.deadline, current_user)


@router.post("/projects/{project_id}/voting/close")
def close_voting(
    project_id: int,
    payload: Optional[CloseVotingRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    project = load_managed_project(db, project_id, current_user)
    reason = payload.reason if payload else "manual"
    return redevelopment_service.close_voting(db, project, reason, actor=current_user)


@router.get("/projects/{project_id}/voting/results", response_model=VotingResultsRead)
def get_voting_results(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> VotingResultsRead:
    project = load_visible_project(db, project_id, current_user)
    statistics = vote_service.build_voting_statistics(db, project)
    return VotingResultsRead(statistics=statistics, final_results=project.voting_results)


@router.post("/projects/{project_id}/select-developer", response_model=RedevelopmentProjectRead)
def select_developer(
    project_id: int,
    payload: SelectDeveloperRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RedevelopmentProject:
    project = load_managed_project(db, project_id, current_user)
    return redevelopment_service.select_developer(
        db, project, payload.developer_id, payload.proposal_id, current_user
    )


@router.get("/projects/{project_id}/updates", response_model=List[ProjectUpdateRead])
def list_updates(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list:
    return list(load_visible_project(db, project_id, current_user).updates)


@router.post("/projects/{project_id}/updates", response_model=ProjectUpdateRead, status_code=status.HTTP_201_CREATED)
def post_update(
    project_id: int,
    payload: ProjectUpdateCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = load_visible_project(db, project_id, current_user)
    return redevelopment_service.post_update(db, project, current_user, payload)


@router.get("/projects/{project_id}/queries", response_model=List[ProjectQueryRead])
def list_queries(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list:
    return list(load_visible_project(db, project_id, current_user).queries)


@router.post("/projects/{project_id}/queries", response_model=ProjectQueryRead, status_code=status.HTTP_201_CREATED)
def raise_query(
    project_id: int,
    payload: ProjectQueryCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = load_visible_project(db, project_id, current_user)
    return redevelopment_service.raise_query(db, project, current_user, payload)


@router.post("/projects/{project_id}/queries/{query_id}/respond", response_model=ProjectQueryRead)
def respond_to_query(
    project_id: int,
    query_id: int,
    payload: ProjectQueryResponse,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = load_visible_project(db, project_id, current_user)
    return redevelopment_service.respond_to_query(db, project, query_id, current_user, payload)


@router.get("/projects/{project_id}/documents", response_model=List[ProjectDocumentRead])
def list_documents(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list:
    project = load_visible_project(db, project_id, current_user)
    if redevelopment_service.can_manage_project(project, current_user):
        return list(project.documents)
    return [document for document in project.documents if document.is_public]


@router.post("/projects/{project_id}/documents", response_model=ProjectDocumentRead, status_code=status.HTTP_201_CREATED)
def add_document(
    project_id: int,
    payload: ProjectDocumentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = load_visible_project(db, project_id, current_user)
    return redevelopment_service.add_document(db, project, current_user, payload)


@router.patch("/projects/{project_id}/phases/{phase_id}", response_model=ProjectPhaseRead)
def update_phase(
    project_id: int,
    phase_id: int,
    payload: ProjectPhaseStatusUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    project = load_visible_project(db, project_id, current_user)
    return redevelopment_service.update_phase_status(db, project, phase_id, payload.status, current_user)
