"""
EVE SSO Handlers

Linking a character is a standard OAuth 2.0 authorization code flow:

1. GET /login stores a random state in Redis and redirects the member to EVE SSO
2. The member picks a character and approves the requested scopes
3. EVE SSO redirects to GET /callback with the code and the state
4. The state is consumed, the code exchanged for the character's tokens, the character's corporation looked up,
   and the token stored in the pool
5. A session is issued for the character and its key set in the session cookie

GET /logout destroys the session. With ``forget=true`` the character's token is removed from the pool as well,
which is how a member de-authorizes the service.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
import logging
import secrets
from typing import Optional

from aiohttp import ClientError, web
import sentry_sdk

from brave.bpc.app.config import (
    LOGIN_STATE_PREFIX,
    RedisClientAppKey,
    SessionAppKey,
    SessionIdentityAppKey,
    SettingsAppKey,
    SSOClientAppKey,
    TokenStoreAppKey,
)
from brave.bpc.app.handlers.helpers import identity_helper, json_error
from brave.bpc.auth.session import Authenticated
from brave.bpc.esi.corporation import fetch_character_corporation
from brave.bpc.esi.errors import ESIError

logger = logging.getLogger(__name__)

LOGIN_STATE_TTL = 600
"""Seconds a member has to complete the SSO login."""


async def handle_login(request: web.Request):
    """
    Redirect to EVE SSO.

    Query Parameters:
        destination: Optional path to return to after the callback, defaults to /
    """
    sso_client = request.app[SSOClientAppKey]
    redis_session = request.app[RedisClientAppKey]

    destination = request.query.get("destination", "/")
    if not destination.startswith("/") or destination.startswith("//"):
        destination = "/"

    state = secrets.token_urlsafe(32)
    await redis_session.set(f"{LOGIN_STATE_PREFIX}{state}", destination, ex=LOGIN_STATE_TTL)

    raise web.HTTPFound(sso_client.authorization_url(state))


async def handle_callback(request: web.Request):
    state: Optional[str] = request.query.get("state", None)
    code: Optional[str] = request.query.get("code", None)

    if not state or not code:
        raise json_error(web.HTTPBadRequest, "missing state or code")

    settings = request.app[SettingsAppKey]
    redis_session = request.app[RedisClientAppKey]
    sso_client = request.app[SSOClientAppKey]
    token_store = request.app[TokenStoreAppKey]
    session_identity = request.app[SessionIdentityAppKey]

    destination = await redis_session.getdel(f"{LOGIN_STATE_PREFIX}{state}")
    if destination is None:
        raise json_error(web.HTTPBadRequest, "unknown or expired login state")
    if isinstance(destination, bytes):
        destination = destination.decode()

    now = datetime.now(timezone.utc)
    try:
        token = await sso_client.exchange_code(code, now)
    except (ESIError, ValueError) as e:
        logger.warning("SSO code exchange rejected: %s", e)
        raise json_error(web.HTTPBadRequest, "login failed")
    except (ClientError, asyncio.TimeoutError) as e:
        sentry_sdk.capture_exception(e)
        logger.exception("SSO code exchange failed")
        raise json_error(web.HTTPBadGateway, "login service unavailable")

    try:
        corporation_id = await fetch_character_corporation(
            request.app[SessionAppKey], token.character_id, timeout=settings.esi_timeout
        )
        token = replace(token, corporation_id=corporation_id)
    except (ESIError, ClientError, asyncio.TimeoutError) as e:
        # Stored without a corporation, the token is not used for corporation operations until the next login.
        logger.warning("Affiliation lookup for character %d failed: %s", token.character_id, e)

    await token_store.put(token)
    session_key = await session_identity.issue(token.character_id, now)

    response = web.HTTPFound(destination)
    response.set_cookie(
        settings.session_cookie,
        session_key,
        max_age=settings.session_max_age,
        httponly=True,
        secure=not settings.debug,
        samesite="Lax",
    )
    raise response


async def handle_logout(request: web.Request):
    settings = request.app[SettingsAppKey]
    session_identity = request.app[SessionIdentityAppKey]
    token_store = request.app[TokenStoreAppKey]

    identity = await identity_helper(request)
    if isinstance(identity, Authenticated) and request.query.get("forget") == "true":
        await token_store.remove(identity.character_id)

    await session_identity.destroy(request.cookies.get(settings.session_cookie))

    response = web.HTTPFound("/")
    response.del_cookie(settings.session_cookie)
    raise response
