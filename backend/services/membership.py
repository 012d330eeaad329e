from __future__ import annotations

import logging
from typing import List, Optional, Set

from sqlalchemy.orm import Session

from ..core.errors import InvalidStateTransition, ResourceNotFound
from ..models.models import RedevelopmentProject, Society, SocietyMember, User, utcnow

logger = logging.getLogger(__name__)


def get_society(session: Session, society_id: int) -> Society:
    society = session.get(Society, society_id)
    if not society:
        raise ResourceNotFound(f"Society {society_id} not found")
    return society


def count_active_members(session: Session, society_id: int) -> int:
    """Eligible-voter denominator for majority auto-close."""
    return (
        session.query(SocietyMember)
        .filter(SocietyMember.society_id == society_id, SocietyMember.status == "active")
        .count()
    )


def list_active_members(session: Session, society_id: int) -> List[SocietyMember]:
    return (
        session.query(SocietyMember)
        .filter(SocietyMember.society_id == society_id, SocietyMember.status == "active")
        .order_by(SocietyMember.id.asc())
        .all()
    )


def active_member_user_ids(session: Session, society_id: int) -> List[int]:
    rows = (
        session.query(SocietyMember.user_id)
        .filter(SocietyMember.society_id == society_id, SocietyMember.status == "active")
        .order_by(SocietyMember.user_id.asc())
        .all()
    )
    return [row[0] for row in rows]


def get_active_membership(session: Session, society_id: int, user_id: int) -> Optional[SocietyMember]:
    return (
        session.query(SocietyMember)
        .filter(
            SocietyMember.society_id == society_id,
            SocietyMember.user_id == user_id,
            SocietyMember.status == "active",
        )
        .first()
    )


def is_active_member(session: Session, society_id: int, user_id: int) -> bool:
    return get_active_membership(session, society_id, user_id) is not None


def user_society_ids(session: Session, user_id: int) -> Set[int]:
    """Societies a user may follow in realtime: active memberships plus owned societies."""
    member_rows = (
        session.query(SocietyMember.society_id)
        .filter(SocietyMember.user_id == user_id, SocietyMember.status == "active")
        .all()
    )
    owned_rows = session.query(Society.id).filter(Society.owner_user_id == user_id).all()
    return {row[0] for row in member_rows} | {row[0] for row in owned_rows}


def user_project_ids(session: Session, user_id: int) -> Set[int]:
    society_ids = user_society_ids(session, user_id)
    query = session.query(RedevelopmentProject.id)
    if society_ids:
        query = query.filter(
            (RedevelopmentProject.owner_user_id == user_id) | (RedevelopmentProject.society_id.in_(society_ids))
        )
    else:
        query = query.filter(RedevelopmentProject.owner_user_id == user_id)
    return {row[0] for row in query.all()}


def can_manage_society(society: Society, user: User) -> bool:
    return society.owner_user_id == user.id or user.has_role("ADMIN")


def add_member(
    session: Session,
    society: Society,
    user: User,
    *,
    role: str = "society_member",
    flat_number: Optional[str] = None,
    block_number: Optional[str] = None,
    ownership_type: str = "owner",
    notes: Optional[str] = None,
    added_by: Optional[User] = None,
) -> SocietyMember:
    """Add or reactivate a member. The (society, user) pair stays unique."""
    member = (
        session.query(SocietyMember)
        .filter(SocietyMember.society_id == society.id, SocietyMember.user_id == user.id)
        .first()
    )
    if member and member.status == "active":
        raise InvalidStateTransition(
            f"User {user.id} is already an active member of society {society.id}",
            current_status=member.status,
            target_status="active",
        )
    if member is None:
        member = SocietyMember(society_id=society.id, user_id=user.id)
        session.add(member)
    member.role = role
    member.status = "active"
    member.flat_number = flat_number
    member.block_number = block_number
    member.ownership_type = ownership_type
    member.notes = notes
    member.joined_at = utcnow()
    member.removed_at = None
    member.added_by_user_id = added_by.id if added_by else None
    session.commit()
    session.refresh(member)
    logger.info("Member %s added to society %s", user.id, society.id, extra={"society_id": society.id})
    return member


def remove_member(session: Session, society: Society, user_id: int) -> SocietyMember:
    member = (
        session.query(SocietyMember)
        .filter(SocietyMember.society_id == society.id, SocietyMember.user_id == user_id)
        .first()
    )
    if not member or member.status == "removed":
        raise ResourceNotFound(f"User {user_id} is not a member of society {society.id}")
    member.status = "removed"
    member.removed_at = utcnow()
    session.commit()
    session.refresh(member)
    logger.info("Member %s removed from society %s", user_id, society.id, extra={"society_id": society.id})
    return member
