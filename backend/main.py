import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session, joinedload

from .api import notifications, proposals, redevelopment, societies, system, votes
from .auth.jwt import decode_token
from .config import Base, SessionLocal, engine, settings
from .constants import DEFAULT_ROLES
from .core.errors import register_exception_handlers
from .core.logging import configure_logging
from .core.request_context import REQUEST_ID_HEADER, assign_request_id
from .models.models import Role, User
from .services.audit import audit_log
from .services.notifications import notification_center
from .services.voting_scheduler import VotingScheduler

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Society Redevelopment - Voting & Developer Selection")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)


def ensure_default_roles(session: Session) -> None:
    for name, description in DEFAULT_ROLES:
        role = session.query(Role).filter(Role.name == name).first()
        if not role:
            session.add(Role(name=name, description=description))
    session.commit()


def ensure_user_role_links(session: Session) -> None:
    users = (
        session.query(User)
        .options(joinedload(User.primary_role), joinedload(User.roles))
        .all()
    )
    updated = False
    for user in users:
        if not user.roles and user.primary_role:
            user.roles.append(user.primary_role)
            updated = True
    if updated:
        session.commit()


@app.on_event("startup")
def startup() -> None:
    # In dev we make sure tables exist. Alembic migrations should be used for real schema evolution.
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        ensure_default_roles(session)
        ensure_user_role_links(session)


app.include_router(societies.router, prefix="/societies", tags=["societies"])
app.include_router(redevelopment.router, prefix="/redevelopment", tags=["redevelopment"])
app.include_router(proposals.router, prefix="/proposals", tags=["proposals"])
app.include_router(votes.router, prefix="/votes", tags=["votes"])
app.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
app.include_router(system.router, prefix="/system", tags=["system"])


@app.middleware("http")
async def audit_trail(request: Request, call_next):
    request_id = assign_request_id(request)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    if request.method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return response
    actor_id = None
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1]
        try:
            actor_id = int(decode_token(token).get("sub"))
        except Exception:
            actor_id = None
    with SessionLocal() as session:
        audit_log(
            db_session=session,
            actor_user_id=actor_id,
            action=f"{request.method} {request.url.path}",
            target_entity_type="HTTP",
            target_entity_id=request.url.path,
            after={"status": response.status_code, "request_id": request_id},
        )
    return response


@app.on_event("startup")
async def configure_notification_center() -> None:
    notification_center.configure_loop(asyncio.get_running_loop())


@app.on_event("startup")
def start_voting_scheduler() -> None:
    if not settings.scheduler_enabled:
        logger.info("Voting scheduler disabled by configuration")
        return
    scheduler = VotingScheduler.from_settings(SessionLocal, notifier=notification_center)
    scheduler.start()
    app.state.voting_scheduler = scheduler


@app.on_event("shutdown")
def stop_voting_scheduler() -> None:
    scheduler = getattr(app.state, "voting_scheduler", None)
    if scheduler is not None:
        scheduler.stop()
        app.state.voting_scheduler = None


@app.on_event("shutdown")
async def shutdown_notification_center() -> None:
    await notification_center.shutdown()
