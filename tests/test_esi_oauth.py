"""
Tests for the EVE SSO client: token verification, code exchange and refresh.
"""

import asyncio
from datetime import timedelta
import json
from typing import Any, Dict
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
from aiohttp import BasicAuth, ClientConnectionError, ClientResponse, ClientSession
from jwcrypto import jwk, jwt

from brave.bpc.esi.errors import ESIError, ErrorKind, RefreshError
from brave.bpc.esi.oauth import (
    SSOClient,
    TokenRefresher,
    character_id_from_subject,
    scopes_from_claims,
    verify_access_token,
)
from tests.test_helpers import NOW, make_token

CLIENT_ID = "test-client-id"
BLUEPRINTS = "esi-corporations.read_blueprints.v1"
STRUCTURES = "esi-universe.read_structures.v1"


def create_test_jwk() -> jwk.JWK:
    return jwk.JWK.generate(kty="EC", crv="P-256", kid="JWT-Signature-Key", alg="ES256")


def public_key_set(key: jwk.JWK) -> jwk.JWKSet:
    key_set = jwk.JWKSet()
    key_set.add(jwk.JWK.from_json(key.export_public()))
    return key_set


def sign_access_token(key: jwk.JWK, **overrides) -> str:
    claims: Dict[str, Any] = {
        "iss": "https://login.eveonline.com",
        "aud": [CLIENT_ID, "EVE Online"],
        "sub": "CHARACTER:EVE:90000001",
        "name": "Test Pilot",
        "scp": [BLUEPRINTS, STRUCTURES],
        "exp": int((NOW + timedelta(minutes=20)).timestamp()),
    }
    claims.update(overrides)
    token = jwt.JWT(header={"alg": "ES256", "kid": key.key_id}, claims=claims)
    token.make_signed_token(key)
    return token.serialize()


def create_mock_response(status: int = 200, body: Any = None) -> ClientResponse:
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status
    mock_response.headers = {}
    mock_response.json = AsyncMock(return_value=body)
    mock_response.text = AsyncMock(
        return_value=json.dumps(body) if not isinstance(body, str) else body
    )
    return mock_response


def create_mock_session(post_response=None, get_response=None):
    mock_session = AsyncMock(spec=ClientSession)
    if post_response is not None:
        mock_session.post.return_value.__aenter__.return_value = post_response
    if get_response is not None:
        mock_session.get.return_value.__aenter__.return_value = get_response
    return mock_session


class TestClaims:

    def test_character_id_from_subject(self):
        assert character_id_from_subject("CHARACTER:EVE:90000001") == 90000001

    @pytest.mark.parametrize(
        "subject", [None, "", "CORPORATION:EVE:1", "CHARACTER:EVE", "CHARACTER:EVE:abc"]
    )
    def test_character_id_from_bad_subject(self, subject):
        with pytest.raises(ValueError):
            character_id_from_subject(subject)

    def test_scopes_from_single_string(self):
        assert scopes_from_claims({"scp": BLUEPRINTS}) == frozenset({BLUEPRINTS})

    def test_scopes_from_list(self):
        assert scopes_from_claims({"scp": [BLUEPRINTS, STRUCTURES]}) == frozenset(
            {BLUEPRINTS, STRUCTURES}
        )

    def test_scopes_missing(self):
        assert scopes_from_claims({}) == frozenset()


class TestVerifyAccessToken:

    def test_valid_token(self):
        key = create_test_jwk()
        claims = verify_access_token(
            sign_access_token(key), public_key_set(key), CLIENT_ID, NOW, timedelta(minutes=5)
        )

        assert claims["sub"] == "CHARACTER:EVE:90000001"

    def test_accepted_within_skew_after_expiry(self):
        key = create_test_jwk()
        access_token = sign_access_token(key, exp=int((NOW - timedelta(minutes=2)).timestamp()))

        claims = verify_access_token(
            access_token, public_key_set(key), CLIENT_ID, NOW, timedelta(minutes=5)
        )
        assert claims["name"] == "Test Pilot"

    def test_rejected_beyond_skew(self):
        key = create_test_jwk()
        access_token = sign_access_token(key, exp=int((NOW - timedelta(minutes=6)).timestamp()))

        with pytest.raises(ValueError):
            verify_access_token(
                access_token, public_key_set(key), CLIENT_ID, NOW, timedelta(minutes=5)
            )

    def test_wrong_issuer(self):
        key = create_test_jwk()
        with pytest.raises(ValueError):
            verify_access_token(
                sign_access_token(key, iss="https://evil.example"),
                public_key_set(key),
                CLIENT_ID,
                NOW,
                timedelta(minutes=5),
            )

    def test_wrong_audience(self):
        key = create_test_jwk()
        with pytest.raises(ValueError):
            verify_access_token(
                sign_access_token(key, aud="someone-else"),
                public_key_set(key),
                CLIENT_ID,
                NOW,
                timedelta(minutes=5),
            )

    def test_wrong_signing_key(self):
        key = create_test_jwk()
        other = create_test_jwk()
        with pytest.raises(ValueError):
            verify_access_token(
                sign_access_token(key), public_key_set(other), CLIENT_ID, NOW, timedelta(minutes=5)
            )

    def test_garbage_token(self):
        key = create_test_jwk()
        with pytest.raises(ValueError):
            verify_access_token("not-a-jwt", public_key_set(key), CLIENT_ID, NOW, timedelta(0))


class TestTokenRefresher:

    async def test_refresh_success_rotates_refresh_token(self):
        mock_session = create_mock_session(
            create_mock_response(
                200, {"access_token": "new-access", "expires_in": 1199, "refresh_token": "new-refresh"}
            )
        )
        refresher = TokenRefresher(mock_session, CLIENT_ID, "secret")
        token = make_token(1, [BLUEPRINTS], expires_in_minutes=-1)

        refreshed = await refresher.refresh(token, NOW)

        assert refreshed.character_id == 1
        assert refreshed.access_token == "new-access"
        assert refreshed.refresh_token == "new-refresh"
        assert refreshed.expires_at == NOW + timedelta(seconds=1199)
        assert refreshed.scopes == token.scopes

        _, kwargs = mock_session.post.call_args
        assert kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "refresh-1"}
        assert kwargs["auth"] == BasicAuth(CLIENT_ID, "secret")

    async def test_refresh_keeps_refresh_token_when_not_rotated(self):
        mock_session = create_mock_session(
            create_mock_response(200, {"access_token": "new-access", "expires_in": 60})
        )
        refresher = TokenRefresher(mock_session, CLIENT_ID, "secret")

        refreshed = await refresher.refresh(make_token(1, [BLUEPRINTS]), NOW)

        assert refreshed.refresh_token == "refresh-1"
        assert refreshed.expires_at == NOW + timedelta(seconds=60)

    async def test_refresh_invalid_grant(self):
        mock_session = create_mock_session(
            create_mock_response(400, {"error": "invalid_grant", "error_description": "revoked"})
        )
        refresher = TokenRefresher(mock_session, CLIENT_ID, "secret")

        with pytest.raises(RefreshError) as exc_info:
            await refresher.refresh(make_token(1, [BLUEPRINTS]), NOW)

        assert exc_info.value.kind is ErrorKind.INVALID_GRANT
        assert exc_info.value.character_id == 1
        assert isinstance(exc_info.value.cause, ESIError)

    async def test_refresh_server_error_is_transient(self):
        mock_session = create_mock_session(create_mock_response(502, "Bad Gateway"))
        refresher = TokenRefresher(mock_session, CLIENT_ID, "secret")

        with pytest.raises(RefreshError) as exc_info:
            await refresher.refresh(make_token(1, [BLUEPRINTS]), NOW)
        assert exc_info.value.kind is ErrorKind.TRANSIENT

    async def test_refresh_timeout_is_transient(self):
        mock_session = AsyncMock(spec=ClientSession)
        mock_session.post.side_effect = asyncio.TimeoutError()
        refresher = TokenRefresher(mock_session, CLIENT_ID, "secret", timeout=0.1)

        with pytest.raises(RefreshError) as exc_info:
            await refresher.refresh(make_token(1, [BLUEPRINTS]), NOW)
        assert exc_info.value.kind is ErrorKind.TRANSIENT

    async def test_refresh_connection_error_is_transient(self):
        mock_session = AsyncMock(spec=ClientSession)
        mock_session.post.return_value.__aenter__.side_effect = ClientConnectionError("reset")
        refresher = TokenRefresher(mock_session, CLIENT_ID, "secret")

        with pytest.raises(RefreshError) as exc_info:
            await refresher.refresh(make_token(1, [BLUEPRINTS]), NOW)
        assert exc_info.value.kind is ErrorKind.TRANSIENT

    async def test_refresh_without_access_token_is_unknown(self):
        mock_session = create_mock_session(create_mock_response(200, {"token_type": "Bearer"}))
        refresher = TokenRefresher(mock_session, CLIENT_ID, "secret")

        with pytest.raises(RefreshError) as exc_info:
            await refresher.refresh(make_token(1, [BLUEPRINTS]), NOW)
        assert exc_info.value.kind is ErrorKind.UNKNOWN


class TestSSOClient:

    def create_client(self, mock_session) -> SSOClient:
        return SSOClient(
            mock_session,
            CLIENT_ID,
            "secret",
            "https://bpc.example/callback",
            [STRUCTURES, BLUEPRINTS],
            timedelta(minutes=5),
        )

    def test_authorization_url(self):
        client = self.create_client(AsyncMock(spec=ClientSession))

        url = urlparse(client.authorization_url("state-123"))
        query = parse_qs(url.query)

        assert f"{url.scheme}://{url.netloc}{url.path}" == "https://login.eveonline.com/v2/oauth/authorize"
        assert query["response_type"] == ["code"]
        assert query["client_id"] == [CLIENT_ID]
        assert query["redirect_uri"] == ["https://bpc.example/callback"]
        assert query["state"] == ["state-123"]
        assert query["scope"] == [f"{BLUEPRINTS} {STRUCTURES}"]

    async def test_exchange_code(self):
        key = create_test_jwk()
        access_token = sign_access_token(key)
        jwks_response = create_mock_response(200, public_key_set(key).export(private_keys=False))
        mock_session = create_mock_session(
            create_mock_response(
                200, {"access_token": access_token, "expires_in": 1199, "refresh_token": "refresh"}
            ),
            jwks_response,
        )
        client = self.create_client(mock_session)

        token = await client.exchange_code("auth-code", NOW)

        assert token.character_id == 90000001
        assert token.character_name == "Test Pilot"
        assert token.access_token == access_token
        assert token.refresh_token == "refresh"
        assert token.scopes == frozenset({BLUEPRINTS, STRUCTURES})
        assert token.expires_at == NOW + timedelta(seconds=1199)

        _, kwargs = mock_session.post.call_args
        assert kwargs["data"] == {"grant_type": "authorization_code", "code": "auth-code"}

    async def test_key_set_is_cached(self):
        key = create_test_jwk()
        mock_session = create_mock_session(
            get_response=create_mock_response(200, public_key_set(key).export(private_keys=False))
        )
        client = self.create_client(mock_session)

        first = await client.key_set()
        second = await client.key_set()

        assert first is second
        assert mock_session.get.call_count == 1

    async def test_exchange_code_rejected(self):
        mock_session = create_mock_session(create_mock_response(400, {"error": "invalid_request"}))
        client = self.create_client(mock_session)

        with pytest.raises(ESIError) as exc_info:
            await client.exchange_code("bad-code", NOW)
        assert exc_info.value.status == 400

    async def test_exchange_code_without_scopes_rejected(self):
        """A character that granted nothing cannot be linked."""
        key = create_test_jwk()
        mock_session = create_mock_session(
            create_mock_response(
                200, {"access_token": sign_access_token(key, scp=[]), "refresh_token": "r"}
            ),
            create_mock_response(200, public_key_set(key).export(private_keys=False)),
        )
        client = self.create_client(mock_session)

        with pytest.raises(ValueError):
            await client.exchange_code("auth-code", NOW)
