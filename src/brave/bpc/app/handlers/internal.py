import logging

from aiohttp import web

from brave.bpc.app.config import HealthGaugeAppKey, TokenStoreAppKey
from brave.bpc.app.handlers.helpers import internal_error, require_authenticated
from brave.bpc.esi.scopes import OPERATION_SCOPES

logger = logging.getLogger(__name__)


async def handle_internal_me(request: web.Request):
    """
    Describe the signed-in character: its session, its token without credentials, and the operations its own
    scopes cover.
    """
    identity = await require_authenticated(request)
    try:
        token = request.app[TokenStoreAppKey].get(identity.character_id)
        operations = (
            sorted(op for op, scopes in OPERATION_SCOPES.items() if scopes <= token.scopes)
            if token is not None
            else []
        )
        return web.json_response(
            {
                "character_id": identity.character_id,
                "session_issued_at": identity.issued_at.isoformat(),
                "token": token.to_public_dict() if token is not None else None,
                "operations": operations,
            }
        )
    except Exception as e:
        raise internal_error(request, e)


async def handle_internal_ready(request: web.Request):
    if await request.app[HealthGaugeAppKey].is_healthy():
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
