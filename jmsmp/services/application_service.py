"""
jmsmp.services.application_service — Membership Application Registry
====================================================================

Owns the lifecycle of membership applications::

    submit ──► pending ──decide──► accepted | rejected   (terminal, never reopened)

Both review front-ends (the HTTP admin route and the Discord review
button) call the same :func:`decide`.

How ``decide`` keeps the application and its applicant in step:

1. **Application first.**  The ``pending → decided`` flip is a single
   conditional ``UPDATE … WHERE status = 'pending'``.  Of two concurrent
   reviewers exactly one wins; the other gets :class:`InvalidTransition`.
2. **Then the user.**  Membership status, optional role grant and the
   durable notification are written in a second transaction.  If that
   fails, a ``pending_user_syncs`` row keyed by the application id is left
   for :mod:`jmsmp.services.reconciliation_service` and the decision
   still succeeds with ``user_synced=False``.
3. **Then the live events**, which are best-effort.

``submit`` checks for an existing pending application right before the
insert.  Two submissions racing within the same instant can both pass the
check; the duplicate is visible to reviewers and each record is decided
independently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from math import ceil

from sqlalchemy import Engine, func, select, update
from sqlalchemy.orm import Session

from jmsmp.constants import (
    ADMIN_ROOM,
    EVENT_APPLICATION_UPDATED,
    EVENT_NEW_APPLICATION,
    EVENT_NOTIFICATION,
    EVENT_ROLE_UPDATED,
    OPERATION_ROLES,
    user_room,
)
from jmsmp.database.engine import get_session
from jmsmp.database.models import (
    Application,
    ApplicationStatus,
    ApplicationType,
    Notification,
    NotificationCategory,
    PendingUserSync,
    Role,
    User,
)
from jmsmp.database.seed import main_admin_username
from jmsmp.engine.realtime import RealtimeHub
from jmsmp.errors import (
    DuplicatePending,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from jmsmp.services.identity_service import Identity, authorize, require_approved
from jmsmp.services.notification_service import notification_to_dict

logger = logging.getLogger(__name__)

DECISION_MESSAGES: dict[str, tuple[str, str, str]] = {
    ApplicationStatus.ACCEPTED: (
        "Ваша заявка одобрена!",
        "Добро пожаловать на JMSMP! Теперь вам доступны все возможности сайта.",
        NotificationCategory.SUCCESS,
    ),
    ApplicationStatus.REJECTED: (
        "Ваша заявка отклонена.",
        "К сожалению, ваша заявка не прошла рассмотрение. Вы можете подать новую.",
        NotificationCategory.ERROR,
    ),
}


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ApplicationFilters:
    type: str | None = None
    status: str | None = None
    username: str | None = None   # substring, admins only
    email: str | None = None      # substring, admins only


@dataclass(slots=True)
class Page:
    items: list[dict] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def pages(self) -> int:
        return ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self, key: str = "applications") -> dict:
        return {
            key: self.items,
            "total": self.total,
            "page": self.page,
            "totalPages": self.pages,
        }


@dataclass(frozen=True, slots=True)
class DecisionResult:
    """What a review front-end needs after :func:`decide`."""

    application: dict
    applicant_id: int | None
    role_granted: str | None
    user_synced: bool
    # Locates the bot's review message so the caller can edit it
    external_message_id: str | None


def application_to_dict(app: Application) -> dict:
    return {
        "id": app.id,
        "username": app.username,
        "type": app.type,
        "status": app.status,
        "answers": app.answers or {},
        "reviewedBy": app.reviewed_by,
        "reviewDate": app.review_date.isoformat() if app.review_date else None,
        "externalMessageId": app.external_message_id,
        "createdAt": app.created_at.isoformat() if app.created_at else None,
    }


def _validate_type(app_type: str) -> str:
    try:
        return ApplicationType(app_type)
    except ValueError:
        raise ValidationError("Неверный тип заявки")


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------
def submit(
    engine: Engine,
    hub: RealtimeHub,
    applicant: Identity,
    app_type: str,
    answers: dict,
) -> dict:
    """Create a pending application for *applicant*.

    Raises
    ------
    ValidationError
        Unknown type or empty/non-mapping answers.
    Forbidden
        A ``studio`` application from a player who is not yet accepted.
    DuplicatePending
        A pending application of the same type already exists.
    """
    app_type = _validate_type(app_type)
    if not isinstance(answers, dict) or not answers:
        raise ValidationError("Заполните анкету")
    if app_type == ApplicationType.STUDIO:
        require_approved(applicant)

    with get_session(engine) as session:
        existing = session.scalar(
            select(Application.id)
            .where(
                Application.username == applicant.username,
                Application.type == app_type,
                Application.status == ApplicationStatus.PENDING,
            )
            .limit(1)
        )
        if existing is not None:
            raise DuplicatePending()

        app = Application(
            username=applicant.username,
            type=app_type,
            status=ApplicationStatus.PENDING,
            answers=answers,
        )
        session.add(app)

        if app_type == ApplicationType.SERVER:
            session.execute(
                update(User)
                .where(User.id == applicant.id)
                .values(application_status=ApplicationStatus.PENDING)
            )
        session.flush()
        payload = application_to_dict(app)

    logger.info(
        "Application #%d (%s) submitted by '%s'", payload["id"], app_type, applicant.username,
    )
    hub.emit(
        ADMIN_ROOM,
        EVENT_NEW_APPLICATION,
        {
            "application": payload,
            "user": {"username": applicant.username, "role": applicant.role},
        },
    )
    return payload


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------
def list_for_actor(
    engine: Engine,
    actor: Identity,
    filters: ApplicationFilters | None = None,
    page: int = 1,
    limit: int = 20,
    own_only: bool = False,
) -> Page:
    """Newest-first page of applications visible to *actor*.

    Reviewers see everything and may filter by handle/email substring
    (case-insensitive); everyone else, and anyone with *own_only*, sees
    only their own applications.
    """
    filters = filters or ApplicationFilters()
    is_reviewer = (
        not own_only and actor.role in OPERATION_ROLES["applications.list_all"]
    )

    q = select(Application)
    if not is_reviewer:
        q = q.where(Application.username == actor.username)
    else:
        if filters.username:
            q = q.where(Application.username.ilike(f"%{filters.username}%"))
        if filters.email:
            q = q.join(User, User.username == Application.username).where(
                User.email.ilike(f"%{filters.email}%")
            )
    if filters.type:
        q = q.where(Application.type == filters.type)
    if filters.status:
        q = q.where(Application.status == filters.status)

    with get_session(engine) as session:
        total = session.scalar(select(func.count()).select_from(q.subquery())) or 0
        rows = session.scalars(
            q.order_by(Application.created_at.desc(), Application.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return Page(
            items=[application_to_dict(a) for a in rows],
            total=total,
            page=page,
            limit=limit,
        )


def get_application(engine: Engine, actor: Identity, application_id: int) -> dict:
    """One application, visible to its owner and to reviewers."""
    with get_session(engine) as session:
        app = session.get(Application, application_id)
        if app is None:
            raise NotFound("Заявка не найдена")
        if (
            app.username != actor.username
            and actor.role not in OPERATION_ROLES["applications.list_all"]
        ):
            raise Forbidden("Недостаточно прав")
        return application_to_dict(app)


def load_review_card(engine: Engine, application_id: int) -> dict | None:
    """Application plus applicant summary for the Discord review embed."""
    with get_session(engine) as session:
        app = session.get(Application, application_id)
        if app is None:
            return None
        user = session.scalar(select(User).where(User.username == app.username))
        return {
            "application": application_to_dict(app),
            "user": {
                "username": app.username,
                "role": user.role if user else None,
                "registrationDate": (
                    user.registration_date.isoformat()
                    if user and user.registration_date else None
                ),
            },
        }


def attach_external_message(engine: Engine, application_id: int, message_ref: str) -> None:
    """Remember which bot message shows *application_id*."""
    with get_session(engine) as session:
        session.execute(
            update(Application)
            .where(Application.id == application_id)
            .values(external_message_id=message_ref)
        )


# ---------------------------------------------------------------------------
# Membership status source
# ---------------------------------------------------------------------------
def pick_governing_application(rows) -> tuple[int, str] | None:
    """Choose which server application sets a user's membership status.

    *rows* are ``(id, status, created_at, review_date)`` tuples for one
    user's ``server`` applications.  The most recently decided one wins,
    ordered by ``review_date`` (falling back to
    ``created_at``) then id.  A pending application wins instead
    when it was submitted after every decision.  Returns ``(id, status)``,
    or None for an empty *rows*.
    """
    # (timestamp, id, status) of the best candidate on each side
    decided = None
    pending = None
    for app_id, status, created_at, review_date in rows:
        if status == ApplicationStatus.PENDING:
            candidate = (created_at, app_id, status)
            if pending is None or candidate[:2] > pending[:2]:
                pending = candidate
        else:
            candidate = (review_date or created_at, app_id, status)
            if decided is None or candidate[:2] > decided[:2]:
                decided = candidate

    if pending is not None and (decided is None or pending[0] > decided[0]):
        return pending[1], pending[2]
    if decided is not None:
        return decided[1], decided[2]
    return None


def governing_server_application(session: Session, username: str) -> tuple[int, str] | None:
    """:func:`pick_governing_application` for *username*, read inside *session*."""
    rows = session.execute(
        select(
            Application.id, Application.status, Application.created_at, Application.review_date,
        ).where(Application.username == username, Application.type == ApplicationType.SERVER)
    ).all()
    return pick_governing_application(rows)


# ---------------------------------------------------------------------------
# Decide
# ---------------------------------------------------------------------------
def apply_user_side(
    session: Session,
    app: Application,
    role_grant: str | None,
    update_status: bool = True,
) -> tuple[User | None, Notification | None]:
    """Mirror a decided *app* onto its applicant inside *session*.

    Updates membership status (``server`` applications only, and only
    when *update_status*), applies
    *role_grant* and appends the decision notification.  Returns
    ``(None, None)`` when the applicant account no longer exists.
    """
    user = session.scalar(select(User).where(User.username == app.username))
    if user is None:
        return None, None

    if update_status and app.type == ApplicationType.SERVER:
        user.application_status = app.status
    if role_grant:
        user.role = role_grant

    title, message, category = DECISION_MESSAGES[app.status]
    note = Notification(title=title, message=message, category=category)
    user.notifications.append(note)
    session.flush()
    return user, note


def _queue_user_sync(
    engine: Engine, application_id: int, role_grant: str | None, error: Exception,
) -> None:
    try:
        with get_session(engine) as session:
            row = session.get(PendingUserSync, application_id)
            if row is None:
                row = PendingUserSync(application_id=application_id, attempts=0)
                session.add(row)
            row.role_grant = role_grant
            row.last_error = repr(error)[:500]
    except Exception:
        logger.critical(
            "Could not queue user sync for application #%d — "
            "status drift check will have to repair it",
            application_id, exc_info=True,
        )


def decide(
    engine: Engine,
    hub: RealtimeHub,
    actor: Identity,
    application_id: int,
    decision: str,
    role_grant: str | None = None,
) -> DecisionResult:
    """Accept or reject a pending application.

    Checks run in this order: Forbidden, ValidationError, NotFound,
    InvalidTransition.  *role_grant* takes effect only when *actor* holds
    one of the roles in ``OPERATION_ROLES["applications.grant_role"]`` and
    the applicant is not the main admin; otherwise the status still
    transitions and the grant is ignored.  Membership status follows the
    application chosen by :func:`pick_governing_application`.

    Raises
    ------
    Forbidden
        *actor* may not review applications.
    ValidationError
        *decision* is not ``accepted``/``rejected`` or *role_grant* is not a role.
    NotFound
        No application with that id.
    InvalidTransition
        The application is no longer pending.
    """
    authorize(actor, OPERATION_ROLES["applications.review"])

    if decision not in (ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED):
        raise ValidationError("Неверный статус")
    if role_grant is not None and role_grant not in {r.value for r in Role}:
        raise ValidationError("Неверная роль")

    effective_grant = role_grant
    if role_grant and actor.role not in OPERATION_ROLES["applications.grant_role"]:
        logger.info(
            "Ignoring role grant %r on application #%d: '%s' (%s) may not grant roles",
            role_grant, application_id, actor.username, actor.role,
        )
        effective_grant = None

    # --- 1. Application (source of truth) ---------------------------------
    with get_session(engine) as session:
        app = session.get(Application, application_id)
        if app is None:
            raise NotFound("Заявка не найдена")
        if app.status != ApplicationStatus.PENDING:
            raise InvalidTransition()

        flipped = session.execute(
            update(Application)
            .where(
                Application.id == application_id,
                Application.status == ApplicationStatus.PENDING,
            )
            .values(
                status=decision,
                reviewed_by=actor.username,
                review_date=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            # Another reviewer got there between our read and our write
            raise InvalidTransition()
        session.refresh(app)
        app_payload = application_to_dict(app)

    if effective_grant and app_payload["username"] == main_admin_username():
        logger.warning(
            "Ignoring role grant %r on application #%d: the main admin's role is fixed",
            effective_grant, application_id,
        )
        effective_grant = None

    logger.info(
        "Application #%d %s by '%s'", application_id, decision, actor.username,
    )

    # --- 2. Applicant ------------------------------------------------------
    applicant_id: int | None = None
    note_payload: dict | None = None
    user_synced = True
    try:
        with get_session(engine) as session:
            app = session.get(Application, application_id)
            governing = governing_server_application(session, app.username)
            user, note = apply_user_side(
                session, app, effective_grant,
                update_status=governing is None or governing[0] == app.id,
            )
            if user is None:
                logger.warning(
                    "Applicant '%s' of application #%d no longer exists",
                    app_payload["username"], application_id,
                )
            else:
                applicant_id = user.id
                note_payload = notification_to_dict(note)
    except Exception as exc:
        logger.exception(
            "User update for application #%d failed — queued for reconciliation",
            application_id,
        )
        user_synced = False
        _queue_user_sync(engine, application_id, effective_grant, exc)

    # --- 3. Live events (best-effort) -------------------------------------
    update_event = {
        "application": app_payload,
        "status": decision,
        "message": DECISION_MESSAGES[decision][0],
    }
    hub.emit(ADMIN_ROOM, EVENT_APPLICATION_UPDATED, update_event)
    if applicant_id is not None:
        room = user_room(applicant_id)
        hub.emit(room, EVENT_APPLICATION_UPDATED, update_event)
        hub.emit(room, EVENT_NOTIFICATION, note_payload)
        if effective_grant:
            hub.emit(room, EVENT_ROLE_UPDATED, {"role": effective_grant})

    return DecisionResult(
        application=app_payload,
        applicant_id=applicant_id,
        role_granted=effective_grant if user_synced and applicant_id is not None else None,
        user_synced=user_synced,
        external_message_id=app_payload["externalMessageId"],
    )
