"""
EVE SSO OAuth Client

This module implements the parts of the EVE SSO (OAuth 2.0 authorization code grant) that the service needs:

1. Authorization (`SSOClient.authorization_url`): Build the URL a member is redirected to in order to link a
   character, requesting the scopes every privileged operation could need
2. Completion (`SSOClient.exchange_code`): Exchange the authorization code for tokens and verify the JWT access
   token against the SSO key set to learn which character authorized and which scopes it granted
3. Refresh (`TokenRefresher.refresh`): Use a refresh token to obtain a new access token

Refresh is deliberately pure: it returns a new CharacterToken or raises RefreshError and never writes to the
token pool. Deciding what a failure means for the pool (drop the token on invalid_grant, keep it otherwise) is
up to the caller, which in practice is the scope resolver.

Every request is bounded by a timeout. A timeout is reported as a transient failure.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlencode

from aiohttp import BasicAuth, ClientError, ClientResponse, ClientSession, ClientTimeout
from jwcrypto import jwk, jwt

from brave.bpc.auth.token import CharacterToken
from brave.bpc.esi.errors import ESIError, ErrorKind, RefreshError, classify

logger = logging.getLogger(__name__)

SSO_BASE = "https://login.eveonline.com"
AUTHORIZE_URL = f"{SSO_BASE}/v2/oauth/authorize"
TOKEN_URL = f"{SSO_BASE}/v2/oauth/token"
JWKS_URL = f"{SSO_BASE}/oauth/jwks"
ISSUERS = frozenset({"login.eveonline.com", SSO_BASE})

DEFAULT_EXPIRES_IN = 1199
"""SSO access tokens live for twenty minutes; used when a response omits expires_in."""


async def read_body(response: ClientResponse) -> Any:
    """Decode a response body as JSON when possible, falling back to text."""
    try:
        return await response.json(content_type=None)
    except ValueError:
        return await response.text()


def verify_access_token(
    access_token: str,
    key_set: jwk.JWKSet,
    client_id: str,
    now: datetime,
    skew: timedelta,
) -> Dict[str, Any]:
    """
    Verify an SSO access token and return its claims.

    The signature is checked against ``key_set``. Claims are checked here rather than by jwcrypto so the
    expiry check can honor the configured clock skew: a token is accepted until ``exp + skew``.

    Raises:
        ValueError: If the signature, issuer, audience or expiry is not acceptable
    """
    try:
        parsed = jwt.JWT(
            jwt=access_token, key=key_set, algs=["RS256", "ES256"], check_claims=False
        )
    except Exception as e:
        raise ValueError(f"Invalid access token: {e}") from e

    claims: Dict[str, Any] = json.loads(parsed.claims)

    if claims.get("iss") not in ISSUERS:
        raise ValueError(f"Unexpected issuer: {claims.get('iss')}")

    audience = claims.get("aud", [])
    if isinstance(audience, str):
        audience = [audience]
    if client_id not in audience:
        raise ValueError("Access token was not issued to this application")

    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise ValueError("Access token has no expiry")
    if now - skew >= datetime.fromtimestamp(exp, timezone.utc):
        raise ValueError("Access token has expired")

    return claims


def character_id_from_subject(subject: Any) -> int:
    """Parse the ``sub`` claim, which has the form ``CHARACTER:EVE:<character id>``."""
    parts = str(subject or "").split(":")
    if len(parts) != 3 or parts[0] != "CHARACTER" or parts[1] != "EVE":
        raise ValueError(f"Unexpected sub claim format: {subject}")
    return int(parts[2])


def scopes_from_claims(claims: Dict[str, Any]) -> frozenset:
    """The ``scp`` claim is a string when a single scope was granted and a list otherwise."""
    scp = claims.get("scp", [])
    if isinstance(scp, str):
        return frozenset(scp.split())
    return frozenset(str(scope) for scope in scp)


class TokenRefresher:
    """
    Exchanges refresh tokens for new access tokens at the SSO token endpoint.

    Args:
        http_session: Shared aiohttp session
        client_id: ESI application client id
        client_secret: ESI application secret
        timeout: Default bound, in seconds, on a refresh request
        token_url: Token endpoint, overridable for tests and Singularity
    """

    def __init__(
        self,
        http_session: ClientSession,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
        token_url: str = TOKEN_URL,
    ) -> None:
        self.http_session = http_session
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.token_url = token_url

    async def _token_request(self, data: Dict[str, str], timeout: float) -> Any:
        async with self.http_session.post(
            self.token_url,
            data=data,
            auth=BasicAuth(self.client_id, self.client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=ClientTimeout(total=timeout),
        ) as response:
            body = await read_body(response)
            if response.status != 200:
                raise ESIError(response.status, body)
            return body

    async def refresh(
        self,
        token: CharacterToken,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> CharacterToken:
        """
        Refresh ``token`` and return its successor.

        The successor keeps the character and the granted scopes; the access token and expiry are replaced, and
        the refresh token is replaced when SSO rotates it.

        Raises:
            RefreshError: With INVALID_GRANT when the refresh token was revoked or expired, otherwise with a
                retryable kind
        """
        try:
            body = await self._token_request(
                {"grant_type": "refresh_token", "refresh_token": token.refresh_token},
                timeout if timeout is not None else self.timeout,
            )
        except (ESIError, ClientError, asyncio.TimeoutError) as e:
            kind = classify(e)
            logger.warning(
                "Token refresh failed for character %d: %s (%s)",
                token.character_id,
                kind.value,
                e,
            )
            raise RefreshError(token.character_id, kind, e) from e

        if not isinstance(body, dict) or not body.get("access_token"):
            logger.error("Token refresh for character %d returned no access token", token.character_id)
            raise RefreshError(token.character_id, ErrorKind.UNKNOWN)

        expires_in = int(body.get("expires_in", DEFAULT_EXPIRES_IN))

        logger.debug("Refreshed token for character %d", token.character_id)
        return replace(
            token,
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or token.refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
        )


class SSOClient(TokenRefresher):
    """
    Full SSO client: authorization URL, code exchange and refresh.

    The JWKS document is fetched lazily and cached for the lifetime of the client.
    """

    def __init__(
        self,
        http_session: ClientSession,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        scopes: Iterable[str],
        skew: timedelta,
        timeout: float = 10.0,
        token_url: str = TOKEN_URL,
        authorize_url: str = AUTHORIZE_URL,
        jwks_url: str = JWKS_URL,
    ) -> None:
        super().__init__(http_session, client_id, client_secret, timeout, token_url)
        self.redirect_url = redirect_url
        self.scopes = sorted(scopes)
        self.skew = skew
        self.authorize_url = authorize_url
        self.jwks_url = jwks_url
        self._key_set: Optional[jwk.JWKSet] = None

    def authorization_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "redirect_uri": self.redirect_url,
            "client_id": self.client_id,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def key_set(self) -> jwk.JWKSet:
        if self._key_set is None:
            async with self.http_session.get(
                self.jwks_url, timeout=ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    raise ESIError(response.status, await read_body(response))
                self._key_set = jwk.JWKSet.from_json(await response.text())
        return self._key_set

    async def exchange_code(self, code: str, now: datetime) -> CharacterToken:
        """
        Exchange an authorization code for the linking character's token.

        Raises:
            ESIError: If SSO rejects the code
            ValueError: If the returned access token does not verify
        """
        body = await self._token_request(
            {"grant_type": "authorization_code", "code": code}, self.timeout
        )
        if not isinstance(body, dict) or not body.get("access_token"):
            raise ValueError("Token response has no access token")

        claims = verify_access_token(
            body["access_token"], await self.key_set(), self.client_id, now, self.skew
        )

        token = CharacterToken(
            character_id=character_id_from_subject(claims.get("sub")),
            character_name=str(claims.get("name", "")),
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token", ""),
            expires_at=now + timedelta(seconds=int(body.get("expires_in", DEFAULT_EXPIRES_IN))),
            scopes=scopes_from_claims(claims),
        )

        logger.info(
            "Authenticated character %s (%d) with %d scopes",
            token.character_name,
            token.character_id,
            len(token.scopes),
        )
        return token
