"""
api/helpers.py -- Small helpers shared by the v1 route modules.

failed_validation() builds the 422 used for field-level business rule
failures (duplicate e-mail, unknown e-mail, bad token) so they share one
shape with pydantic's own validation errors.

send_in_background() wraps Mailer.send() in a closure that logs its own
failure and hands it to the dispatcher. The HTTP response never waits for,
or learns about, the delivery outcome.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request

logger = logging.getLogger("tokenward.api")


def failed_validation(fields: dict[str, str]) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"code": "validation_error", "message": "Request validation failed.", "fields": fields},
    )


def send_in_background(request: Request, recipient: str, template_name: str, data: dict[str, Any]) -> None:
    """Queue an e-mail on the application's dispatcher and return immediately.

    Always send to the address stored for the user, not the one typed into
    the request. Addresses may be case-sensitive on the receiving side.
    """
    mailer = request.app.state.mailer

    def send_mail() -> None:
        try:
            mailer.send(recipient, template_name, data)
        except Exception:
            logger.exception("Failed to send %s", template_name)

    request.app.state.dispatcher.submit(send_mail)
