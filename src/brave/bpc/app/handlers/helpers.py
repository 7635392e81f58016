from datetime import datetime, timezone
import json
import logging
import traceback

from aiohttp import web
import sentry_sdk

from brave.bpc.app.config import SessionIdentityAppKey, SettingsAppKey
from brave.bpc.auth.session import Authenticated, Identity

logger = logging.getLogger(__name__)


def json_error(status_class, error: str, **fields):
    """
    Build an aiohttp HTTP exception carrying a JSON error body.

    Example:
        raise json_error(web.HTTPForbidden, "not authorized for this action", scope=scope)
    """
    return status_class(
        body=json.dumps({"error": error, **fields}),
        content_type="application/json",
    )


async def identity_helper(request: web.Request) -> Identity:
    """
    Identify the caller from the session cookie.

    A missing, unknown or expired session is anonymous; this never fails for a bad cookie.
    """
    settings = request.app[SettingsAppKey]
    session_identity = request.app[SessionIdentityAppKey]
    session_key = request.cookies.get(settings.session_cookie)
    return await session_identity.identify(session_key, datetime.now(timezone.utc))


async def require_authenticated(request: web.Request) -> Authenticated:
    """
    Raises:
        HTTPUnauthorized: If the request carries no valid session
    """
    identity = await identity_helper(request)
    if not isinstance(identity, Authenticated):
        raise json_error(web.HTTPUnauthorized, "Not Authorized")
    return identity


def internal_error(request: web.Request, error: Exception):
    """
    Report an unexpected handler error and build the 500 response for it.

    The exception type is always included; the message and traceback only in debug mode.
    """
    logger.exception("Unexpected error handling %s %s", request.method, request.path)
    sentry_sdk.capture_exception(error)

    fields = {"error_type": type(error).__name__}
    if request.app[SettingsAppKey].debug:
        fields["error_message"] = str(error)
        fields["traceback"] = traceback.format_exc()
    return json_error(web.HTTPInternalServerError, "Internal Server Error", **fields)
