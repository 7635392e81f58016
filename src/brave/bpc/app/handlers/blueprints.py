"""
Blueprint Handlers

- GET /api/blueprints returns the stored blueprint snapshot of the configured corporation
- POST /api/blueprints/reconcile runs a reconciliation now and returns the events it wrote

Both require a signed-in member. Running a reconciliation additionally needs some linked character to grant the
blueprint scope; the signed-in member does not have to be that character.
"""

import logging

from aiohttp import web

from brave.bpc.app.config import (
    BlueprintRepositoryAppKey,
    HealthGaugeAppKey,
    ReconcilerAppKey,
    SettingsAppKey,
)
from brave.bpc.app.handlers.helpers import json_error, require_authenticated
from brave.bpc.app.tasks import reconcile_corporation
from brave.bpc.auth.resolver import NoCoverage, ResolutionTransient
from brave.bpc.reconcile.reconciler import ReconciliationAborted

logger = logging.getLogger(__name__)


def _corporation_id(request: web.Request) -> int:
    corporation_id = request.app[SettingsAppKey].corporation_id
    if not corporation_id:
        raise json_error(web.HTTPNotFound, "no corporation configured")
    return corporation_id


async def handle_blueprints(request: web.Request):
    await require_authenticated(request)
    corporation_id = _corporation_id(request)

    repository = request.app[BlueprintRepositoryAppKey]
    reconciler = request.app[ReconcilerAppKey]

    snapshot = await repository.load_snapshot(corporation_id)
    return web.json_response(
        {
            "corporation_id": corporation_id,
            "reconciling": reconciler.in_flight(corporation_id),
            "blueprints": [record.to_dict() for record in snapshot],
        }
    )


async def handle_reconcile(request: web.Request):
    identity = await require_authenticated(request)
    corporation_id = _corporation_id(request)

    logger.info(
        "Character %d requested reconciliation of corporation %d",
        identity.character_id,
        corporation_id,
    )

    try:
        events = await reconcile_corporation(request.app, corporation_id)
    except NoCoverage as e:
        raise json_error(web.HTTPForbidden, "not authorized for this action", scope=e.scope)
    except ResolutionTransient as e:
        raise json_error(
            web.HTTPServiceUnavailable, "token refresh failed, try again later", kind=e.kind.value
        )
    except ReconciliationAborted as e:
        await request.app[HealthGaugeAppKey].record_failure()
        raise json_error(
            web.HTTPServiceUnavailable, "blueprint fetch failed, try again later", kind=e.kind.value
        )

    if events is None:
        raise json_error(web.HTTPConflict, "reconciliation already running")

    return web.json_response(
        {
            "corporation_id": corporation_id,
            "events": [event.to_dict() for event in events],
        }
    )
