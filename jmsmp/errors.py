"""
jmsmp.errors — Domain Error Taxonomy
====================================

Every failure a service can report to a caller.  Services raise these;
the HTTP layer renders them as ``{"detail", "code"}`` JSON with the
error's status code, and the bot adapter turns them into ephemeral
replies.  None of them are retried automatically.
"""

from __future__ import annotations


class JmsmpError(Exception):
    """Base class for all domain errors."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Внутренняя ошибка сервера"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(JmsmpError):
    """No credential, a malformed or expired one, or its user is gone."""

    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = "Требуется авторизация"


class Forbidden(JmsmpError):
    """Authenticated, but the role or ownership check failed."""

    status_code = 403
    code = "FORBIDDEN"
    default_message = "Недостаточно прав"


class NotFound(JmsmpError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Не найдено"


class ValidationError(JmsmpError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Некорректные данные"


class DuplicatePending(JmsmpError):
    """A pending application of the same type already exists."""

    status_code = 409
    code = "DUPLICATE_PENDING"
    default_message = "У вас уже есть заявка на рассмотрении"


class InvalidTransition(JmsmpError):
    """The application has already been decided."""

    status_code = 409
    code = "INVALID_TRANSITION"
    default_message = "Заявка уже рассмотрена"
