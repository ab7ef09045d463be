"""
Staff session check for the /api endpoints.
"""

import logging

from fastapi import Request

from tillsms.config import settings
from tillsms.errors import Forbidden, Unauthenticated
from tillsms.utils import verify_session_token

logger = logging.getLogger(__name__)


def require_staff(request: Request) -> str:
    """
    FastAPI dependency returning the signed-in staff email.

    Raises:
        Unauthenticated: no cookie, or a cookie whose signature does not verify
        Forbidden: the email is not on TX_ALLOWED_EMAILS (when that list is set)
    """
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    email = verify_session_token(token, settings.SESSION_SECRET)
    if not email:
        raise Unauthenticated()

    allowed = settings.allowed_emails
    if allowed and email.lower() not in allowed:
        logger.warning(f"Staff email not allow-listed: {email}")
        raise Forbidden()

    request.state.staff = email
    return email
