"""Corporation endpoints of ESI, and the affiliation lookup placing a character in one.

Paginated collections report their page count in the ``X-Pages`` header; every
page is fetched before anything is returned, so a failure on any page fails
the whole fetch.
"""
import logging
from typing import Any, Dict, List

from aiohttp import ClientSession, ClientTimeout

from brave.bpc.esi.errors import ESIError
from brave.bpc.esi.oauth import read_body
from brave.bpc.reconcile.records import ResourceRecord

logger = logging.getLogger(__name__)

ESI_BASE_URL = "https://esi.evetech.net/latest"
ESI_DATASOURCE = "tranquility"
ERROR_LIMIT_WARNING = 20


async def get_paginated(
    http_session: ClientSession,
    url: str,
    access_token: str,
    timeout: float,
) -> List[Dict[str, Any]]:
    headers = {"Authorization": f"Bearer {access_token}"}
    results: List[Dict[str, Any]] = []
    page = 1
    pages = 1

    while page <= pages:
        async with http_session.get(
            url,
            params={"datasource": ESI_DATASOURCE, "page": str(page)},
            headers=headers,
            timeout=ClientTimeout(total=timeout),
        ) as response:
            error_remain = response.headers.get("X-ESI-Error-Limit-Remain")
            if error_remain is not None and int(error_remain) < ERROR_LIMIT_WARNING:
                logger.warning("ESI error limit low: %s remaining", error_remain)

            body = await read_body(response)
            if response.status != 200:
                raise ESIError(response.status, body)
            if not isinstance(body, list):
                raise ESIError(response.status, body, "ESI returned a non-list page")

            results.extend(body)
            pages = int(response.headers.get("X-Pages", "1"))
        page += 1

    return results


async def fetch_corporation_blueprints(
    http_session: ClientSession,
    access_token: str,
    corporation_id: int,
    timeout: float = 30.0,
    base_url: str = ESI_BASE_URL,
) -> List[ResourceRecord]:
    """
    Fetch every blueprint owned by a corporation.

    Requires a token granting ``esi-corporations.read_blueprints.v1`` from a character holding the Director
    role in the corporation.
    """
    url = f"{base_url}/corporations/{corporation_id}/blueprints/"
    payload = await get_paginated(http_session, url, access_token, timeout)
    logger.debug("Fetched %d blueprints for corporation %d", len(payload), corporation_id)
    return [ResourceRecord.from_esi(item) for item in payload]


async def fetch_character_corporation(
    http_session: ClientSession,
    character_id: int,
    timeout: float = 10.0,
    base_url: str = ESI_BASE_URL,
) -> int:
    """
    Look up the corporation a character currently belongs to.

    Uses the public affiliation endpoint, so no token is needed.

    Raises:
        ESIError: If ESI rejects the lookup or does not know the character
    """
    async with http_session.post(
        f"{base_url}/characters/affiliation/",
        params={"datasource": ESI_DATASOURCE},
        json=[character_id],
        timeout=ClientTimeout(total=timeout),
    ) as response:
        body = await read_body(response)
        if response.status != 200:
            raise ESIError(response.status, body)

    if isinstance(body, list):
        for affiliation in body:
            if isinstance(affiliation, dict) and affiliation.get("character_id") == character_id:
                return int(affiliation["corporation_id"])
    raise ESIError(response.status, body, f"No affiliation returned for character {character_id}")
