from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user, require_roles
from ..core.errors import PermissionDenied, ResourceNotFound
from ..models.models import Society, SocietyMember, User
from ..schemas.schemas import SocietyCreate, SocietyMemberCreate, SocietyMemberRead, SocietyRead
from ..services import membership as membership_service

router = APIRouter()


def _load_managed_society(db: Session, society_id: int, user: User) -> Society:
    society = membership_service.get_society(db, society_id)
    if not membership_service.can_manage_society(society, user):
        raise PermissionDenied(f"User {user.id} cannot manage society {society_id}")
    return society


@router.post("/", response_model=SocietyRead, status_code=status.HTTP_201_CREATED)
def create_society(
    payload: SocietyCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles("SOCIETY_OWNER", "ADMIN")),
) -> Society:
    society = Society(
        name=payload.name,
        address=payload.address,
        total_flats=payload.total_flats,
        owner_user_id=current_user.id,
    )
    db.add(society)
    db.commit()
    db.refresh(society)
    return society


@router.get("/{society_id}", response_model=SocietyRead)
def get_society(
    society_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Society:
    society = membership_service.get_society(db, society_id)
    if society_id not in membership_service.user_society_ids(db, current_user.id) and not current_user.has_role("ADMIN"):
        raise ResourceNotFound(f"Society {society_id} not found")
    return society


@router.get("/{society_id}/members", response_model=List[SocietyMemberRead])
def list_members(
    society_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[SocietyMember]:
    society = membership_service.get_society(db, society_id)
    if not (
        membership_service.can_manage_society(society, current_user)
        or membership_service.is_active_member(db, society_id, current_user.id)
    ):
        raise PermissionDenied(f"User {current_user.id} cannot view members of society {society_id}")
    return membership_service.list_active_members(db, society_id)


@router.post("/{society_id}/members", response_model=SocietyMemberRead, status_code=status.HTTP_201_CREATED)
def add_member(
    society_id: int,
    payload: SocietyMemberCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SocietyMember:
    society = _load_managed_society(db, society_id, current_user)
    user = db.get(User, payload.user_id)
    if not user or not user.is_active:
        raise ResourceNotFound(f"User {payload.user_id} not found")
    return membership_service.add_member(
        db,
        society,
        user,
        role=payload.role,
        flat_number=payload.flat_number,
        block_number=payload.block_number,
        ownership_type=payload.ownership_type,
        notes=payload.notes,
        added_by=current_user,
    )


@router.delete("/{society_id}/members/{user_id}", response_model=SocietyMemberRead)
def remove_member(
    society_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SocietyMember:
    society = _load_managed_society(db, society_id, current_user)
    return membership_service.remove_member(db, society, user_id)
