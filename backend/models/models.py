from datetime import datetime, timezone
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship as orm_relationship

from ..config import Base
from ..constants import ROLE_PRIORITY


def utcnow():
    # Stored naive; every timestamp column holds UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value):
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime, default=utcnow, nullable=False),
)


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False)
    description = Column(String, nullable=True)

    users = orm_relationship(
        "User",
        secondary=user_roles,
        back_populates="roles",
        overlaps="primary_role,primary_users",
    )
    primary_users = orm_relationship(
        "User",
        back_populates="primary_role",
        foreign_keys="User.role_id",
        overlaps="users,roles",
    )


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=True)
    phone = Column(String, unique=True, index=True, nullable=True)
    full_name = Column(String, nullable=True)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    primary_role = orm_relationship(
        "Role",
        back_populates="primary_users",
        foreign_keys=[role_id],
        overlaps="users,roles",
    )
    roles = orm_relationship(
        "Role",
        secondary=user_roles,
        back_populates="users",
        overlaps="primary_role,primary_users",
    )
    memberships = orm_relationship(
        "SocietyMember",
        back_populates="user",
        foreign_keys="SocietyMember.user_id",
        cascade="all, delete-orphan",
    )
    owned_societies = orm_relationship("Society", back_populates="owner")
    notifications = orm_relationship(
        "Notification",
        back_populates="recipient",
        foreign_keys="Notification.recipient_id",
        cascade="all, delete-orphan",
    )

    @property
    def role(self):
        if self.primary_role:
            return self.primary_role
        if self.roles:
            return max(self.roles, key=lambda role: ROLE_PRIORITY.get(role.name, 0))
        return None

    @role.setter
    def role(self, value):
        self.primary_role = value

    @property
    def role_names(self) -> list[str]:
        return [role.name for role in self.roles] if self.roles else ([self.primary_role.name] if self.primary_role else [])

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or self.phone or f"User {self.id}"

    def has_role(self, role_name: str) -> bool:
        if any(role.name == role_name for role in self.roles):
            return True
        return self.primary_role.name == role_name if self.primary_role else False

    def has_any_role(self, *role_names: str) -> bool:
        targets = set(role_names)
        if not targets:
            return False
        return any(role.name in targets for role in self.roles) or (
            self.primary_role.name in targets if self.primary_role else False
        )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    actor_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    target_entity_type = Column(String, nullable=True)
    target_entity_id = Column(String, nullable=True)
    before = Column(Text, nullable=True)
    after = Column(Text, nullable=True)

    actor = orm_relationship("User")


class Society(Base):
    __tablename__ = "societies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    address = Column(String, nullable=True)
    owner_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    total_flats = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    owner = orm_relationship("User", back_populates="owned_societies")
    members = orm_relationship("SocietyMember", back_populates="society", cascade="all, delete-orphan")
    projects = orm_relationship("RedevelopmentProject", back_populates="society")


class SocietyMember(Base):
    __tablename__ = "society_members"
    __table_args__ = (UniqueConstraint("society_id", "user_id", name="uq_society_members_society_user"),)

    id = Column(Integer, primary_key=True, index=True)
    society_id = Column(Integer, ForeignKey("societies.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False, default="society_member")
    status = Column(String, nullable=False, default="pending", index=True)
    flat_number = Column(String, nullable=True)
    block_number = Column(String, nullable=True)
    ownership_type = Column(String, nullable=False, default="owner")
    joined_at = Column(DateTime, default=utcnow, nullable=False)
    removed_at = Column(DateTime, nullable=True)
    notes = Column(String(500), nullable=True)
    added_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    society = orm_relationship("Society", back_populates="members")
    user = orm_relationship("User", back_populates="memberships", foreign_keys=[user_id])
    added_by = orm_relationship("User", foreign_keys=[added_by_user_id])


class RedevelopmentProject(Base):
    __tablename__ = "redevelopment_projects"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    society_id = Column(Integer, ForeignKey("societies.id"), nullable=False, index=True)
    owner_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    expected_amenities = Column(JSON, nullable=False, default=list)
    start_date = Column(DateTime, nullable=True, index=True)
    expected_completion_date = Column(DateTime, nullable=True)

    status = Column(String, nullable=False, default="planning", index=True)
    progress = Column(Integer, nullable=False, default=0)

    estimated_budget = Column(Numeric(14, 2), nullable=True)
    corpus_amount = Column(Numeric(14, 2), nullable=True)
    rent_amount = Column(Numeric(14, 2), nullable=True)

    voting_session = Column(String, nullable=False, default="proposal_selection")
    voting_deadline = Column(DateTime, nullable=True, index=True)
    voting_status = Column(String, nullable=False, default="open", index=True)
    voting_opened_at = Column(DateTime, nullable=True)
    voting_closed_at = Column(DateTime, nullable=True)
    voting_close_reason = Column(String, nullable=True)
    voting_results = Column(JSON, nullable=True)
    minimum_approval_percentage = Column(Integer, nullable=False, default=51)
    last_voting_reminder_at = Column(DateTime, nullable=True)

    selected_developer_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    selected_proposal_id = Column(
        Integer,
        ForeignKey("developer_proposals.id", use_alter=True, name="fk_projects_selected_proposal"),
        nullable=True,
    )
    developer_selected_at = Column(DateTime, nullable=True)
    developer_selected_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    is_public = Column(Boolean, nullable=False, default=True)
    allow_member_queries = Column(Boolean, nullable=False, default=True)
    require_voting_approval = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    society = orm_relationship("Society", back_populates="projects")
    owner = orm_relationship("User", foreign_keys=[owner_user_id])
    selected_developer = orm_relationship("User", foreign_keys=[selected_developer_id])
    developer_selected_by = orm_relationship("User", foreign_keys=[developer_selected_by_user_id])
    selected_proposal = orm_relationship("DeveloperProposal", foreign_keys=[selected_proposal_id], post_update=True)
    proposals = orm_relationship(
        "DeveloperProposal",
        back_populates="project",
        foreign_keys="DeveloperProposal.project_id",
        order_by="DeveloperProposal.submitted_at",
    )
    votes = orm_relationship("MemberVote", back_populates="project")
    phases = orm_relationship(
        "ProjectPhase",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="ProjectPhase.sequence_order",
    )
    updates = orm_relationship(
        "ProjectUpdate",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="ProjectUpdate.posted_at.desc()",
    )
    queries = orm_relationship(
        "ProjectQuery",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="ProjectQuery.raised_at.desc()",
    )
    documents = orm_relationship("ProjectDocument", back_populates="project", cascade="all, delete-orphan")


class ProjectPhase(Base):
    __tablename__ = "project_phases"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("redevelopment_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence_order = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default="pending")  # pending | in_progress | completed | delayed
    completed_at = Column(DateTime, nullable=True)

    project = orm_relationship("RedevelopmentProject", back_populates="phases")


class ProjectUpdate(Base):
    __tablename__ = "project_updates"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("redevelopment_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    posted_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    posted_at = Column(DateTime, default=utcnow, nullable=False)
    is_important = Column(Boolean, default=False, nullable=False)

    project = orm_relationship("RedevelopmentProject", back_populates="updates")
    poster = orm_relationship("User")


class ProjectQuery(Base):
    __tablename__ = "project_queries"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("redevelopment_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    raised_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    raised_at = Column(DateTime, default=utcnow, nullable=False)
    status = Column(String, nullable=False, default="open")  # open | in_review | resolved | closed
    response = Column(Text, nullable=True)
    responded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    responded_at = Column(DateTime, nullable=True)

    project = orm_relationship("RedevelopmentProject", back_populates="queries")
    raiser = orm_relationship("User", foreign_keys=[raised_by_user_id])
    responder = orm_relationship("User", foreign_keys=[responded_by_user_id])


class ProjectDocument(Base):
    __tablename__ = "project_documents"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("redevelopment_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    document_type = Column(String, nullable=False, default="other")
    url = Column(String, nullable=False)
    uploaded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    uploaded_at = Column(DateTime, default=utcnow, nullable=False)
    is_public = Column(Boolean, default=False, nullable=False)

    project = orm_relationship("RedevelopmentProject", back_populates="documents")
    uploader = orm_relationship("User")


class DeveloperProposal(Base):
    __tablename__ = "developer_proposals"
    __table_args__ = (UniqueConstraint("project_id", "developer_id", name="uq_developer_proposals_project_developer"),)

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("redevelopment_projects.id"), nullable=False, index=True)
    developer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    corpus_amount = Column(Numeric(14, 2), nullable=False)
    rent_amount = Column(Numeric(14, 2), nullable=False)
    fsi = Column(Float, nullable=False)
    proposed_amenities = Column(JSON, nullable=False, default=list)
    timeline_summary = Column(String, nullable=True)
    proposed_start_date = Column(DateTime, nullable=True)
    proposed_completion_date = Column(DateTime, nullable=True)
    proposed_phases = Column(JSON, nullable=False, default=list)

    construction_cost = Column(Numeric(14, 2), nullable=True)
    amenities_cost = Column(Numeric(14, 2), nullable=True)
    legal_cost = Column(Numeric(14, 2), nullable=True)
    contingency_cost = Column(Numeric(14, 2), nullable=True)
    total_cost = Column(Numeric(14, 2), nullable=True)
    payment_schedule = Column(JSON, nullable=False, default=list)
    developer_info = Column(JSON, nullable=False, default=dict)

    status = Column(String, nullable=False, default="submitted", index=True)
    submitted_at = Column(DateTime, default=utcnow, nullable=False)

    technical_score = Column(Integer, nullable=True)
    financial_score = Column(Integer, nullable=True)
    timeline_score = Column(Integer, nullable=True)
    overall_score = Column(Integer, nullable=True, index=True)
    evaluated_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    evaluated_at = Column(DateTime, nullable=True)
    evaluation_comments = Column(Text, nullable=True)

    rejection_reason = Column(Text, nullable=True)
    rejected_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    project = orm_relationship("RedevelopmentProject", back_populates="proposals", foreign_keys=[project_id])
    developer = orm_relationship("User", foreign_keys=[developer_id])
    evaluator = orm_relationship("User", foreign_keys=[evaluated_by_user_id])

    @property
    def company_name(self) -> str:
        return (self.developer_info or {}).get("company_name") or "Developer"


class MemberVote(Base):
    __tablename__ = "member_votes"
    __table_args__ = (
        UniqueConstraint(
            "project_id",
            "member_id",
            "voting_session",
            "ballot_key",
            name="uq_member_votes_ballot",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("redevelopment_projects.id"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    voting_session = Column(String, nullable=False, index=True)
    proposal_id = Column(Integer, ForeignKey("developer_proposals.id"), nullable=True, index=True)
    # "general" for project-approval votes, "proposal:<id>" otherwise
    ballot_key = Column(String, nullable=False, default="general")
    vote = Column(String, nullable=False)  # yes | no | abstain
    reason = Column(String(500), nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    verified_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    voted_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    project = orm_relationship("RedevelopmentProject", back_populates="votes")
    member = orm_relationship("User", foreign_keys=[member_id])
    proposal = orm_relationship("DeveloperProposal")
    verified_by = orm_relationship("User", foreign_keys=[verified_by_user_id])


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    type = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    redevelopment_project_id = Column(Integer, ForeignKey("redevelopment_projects.id", ondelete="SET NULL"), nullable=True)
    proposal_id = Column(Integer, ForeignKey("developer_proposals.id", ondelete="SET NULL"), nullable=True)
    vote_id = Column(Integer, ForeignKey("member_votes.id", ondelete="SET NULL"), nullable=True)
    society_id = Column(Integer, ForeignKey("societies.id", ondelete="SET NULL"), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)
    priority = Column(String, default="medium", nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    recipient = orm_relationship("User", back_populates="notifications", foreign_keys=[recipient_id])
    sender = orm_relationship("User", foreign_keys=[sender_id])

    @property
    def data(self) -> dict:
        return {
            "redevelopment_project_id": self.redevelopment_project_id,
            "proposal_id": self.proposal_id,
            "vote_id": self.vote_id,
            "society_id": self.society_id,
            "metadata": self.metadata_json,
        }
