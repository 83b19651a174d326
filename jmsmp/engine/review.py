"""
jmsmp.engine.review — Review Button Payloads
============================================

The Discord review message carries one button per action.  Each button's
``custom_id`` encodes a :data:`ReviewAction`::

    review:approve:42
    review:reject:42
    review:approve_role:42:Администратор

Discord caps ``custom_id`` at 100 characters, which every role name fits.
"""

from __future__ import annotations

from dataclasses import dataclass

from jmsmp.database.models import ApplicationStatus, Role
from jmsmp.errors import ValidationError

CUSTOM_ID_PREFIX = "review"


@dataclass(frozen=True, slots=True)
class Approve:
    application_id: int

    def to_decision(self) -> tuple[str, str | None]:
        return ApplicationStatus.ACCEPTED, None


@dataclass(frozen=True, slots=True)
class Reject:
    application_id: int

    def to_decision(self) -> tuple[str, str | None]:
        return ApplicationStatus.REJECTED, None


@dataclass(frozen=True, slots=True)
class ApproveWithRole:
    application_id: int
    role: str

    def to_decision(self) -> tuple[str, str | None]:
        return ApplicationStatus.ACCEPTED, self.role


ReviewAction = Approve | Reject | ApproveWithRole

_ACTION_TAGS: dict[type, str] = {
    Approve: "approve",
    Reject: "reject",
    ApproveWithRole: "approve_role",
}


def encode_review_action(action: ReviewAction) -> str:
    """Render *action* as a button ``custom_id``."""
    parts = [CUSTOM_ID_PREFIX, _ACTION_TAGS[type(action)], str(action.application_id)]
    if isinstance(action, ApproveWithRole):
        parts.append(action.role)
    return ":".join(parts)


def is_review_payload(custom_id: str | None) -> bool:
    return bool(custom_id) and custom_id.startswith(CUSTOM_ID_PREFIX + ":")


def parse_review_action(custom_id: str) -> ReviewAction:
    """Decode a button ``custom_id`` back into a :data:`ReviewAction`.

    Raises
    ------
    ValidationError
        If the payload is not a well-formed review action.
    """
    parts = custom_id.split(":", 3)
    if len(parts) < 3 or parts[0] != CUSTOM_ID_PREFIX:
        raise ValidationError(f"Unknown review payload: {custom_id!r}")

    _, tag, raw_id, *rest = parts
    try:
        application_id = int(raw_id)
    except ValueError:
        raise ValidationError(f"Bad application id in review payload: {raw_id!r}")

    if tag == "approve" and not rest:
        return Approve(application_id)
    if tag == "reject" and not rest:
        return Reject(application_id)
    if tag == "approve_role" and rest:
        role = rest[0]
        if role not in {r.value for r in Role}:
            raise ValidationError(f"Unknown role in review payload: {role!r}")
        return ApproveWithRole(application_id, role)
    raise ValidationError(f"Unknown review action: {tag!r}")
