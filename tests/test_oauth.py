from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest
from intuitlib.exceptions import AuthClientError
from jose import jwt

from conftest import CLIENT_ID, REALM_ID, REDIRECT_URI, FakeAuthClient
from errors import MissingConfigurationError, MissingParameterError, RefreshFailedError, UpstreamAuthError
from qbo_oauth import OAuthExchange, identity_claims, normalize_base_url, redirect_uri_for


def _intuit_error(status_code=400, content=b'{"error":"invalid_grant"}'):
    return AuthClientError(SimpleNamespace(status_code=status_code, content=content, headers={"intuit_tid": "tid-1"}))


def test_redirect_uri_is_derived_from_base_url():
    assert normalize_base_url("example.com/") == "http://example.com"
    assert normalize_base_url(None) == "http://localhost:8000"
    assert redirect_uri_for("https://app.example.com/") == "https://app.example.com/auth/callback"


def test_authorization_url_carries_scopes_and_state(oauth):
    url = oauth.build_authorization_url("state-123")
    query = parse_qs(urlparse(url).query)
    assert query["client_id"] == [CLIENT_ID]
    assert query["redirect_uri"] == [REDIRECT_URI]
    assert query["state"] == ["state-123"]
    assert "com.intuit.quickbooks.accounting" in query["scope"][0]
    assert "openid" in query["scope"][0]


def test_authorization_url_requires_configuration():
    oauth = OAuthExchange(None, None, REDIRECT_URI, client_factory=FakeAuthClient)
    with pytest.raises(MissingConfigurationError) as excinfo:
        oauth.build_authorization_url()
    assert excinfo.value.details == {"clientId": "Missing", "clientSecret": "Missing", "redirectUri": REDIRECT_URI}
    assert FakeAuthClient.instances == []


def test_exchange_code_returns_grant(oauth):
    grant = oauth.exchange_code(f"{REDIRECT_URI}?code=auth-code&state=s&realmId={REALM_ID}")
    assert grant.access_token == "access-1"
    assert grant.refresh_token == "refresh-1"
    assert grant.expires_in == 3600
    assert grant.realm_id == REALM_ID


def test_every_exchange_uses_a_fresh_client(oauth):
    oauth.exchange_code(f"{REDIRECT_URI}?code=a&realmId={REALM_ID}")
    oauth.client_secret = "rotated-secret"
    oauth.exchange_code(f"{REDIRECT_URI}?code=b&realmId={REALM_ID}")
    assert [c.client_secret for c in FakeAuthClient.instances] == ["test-client-secret", "rotated-secret"]


@pytest.mark.parametrize(
    "query, message",
    [
        (f"realmId={REALM_ID}", "Missing authorization code"),
        ("code=auth-code", "Missing realmId parameter"),
    ],
)
def test_exchange_code_rejects_missing_parameters(oauth, query, message):
    with pytest.raises(MissingParameterError) as excinfo:
        oauth.exchange_code(f"{REDIRECT_URI}?{query}")
    assert excinfo.value.message == message


def test_exchange_code_upstream_rejection(oauth):
    FakeAuthClient.error = _intuit_error()
    with pytest.raises(UpstreamAuthError) as excinfo:
        oauth.exchange_code(f"{REDIRECT_URI}?code=bad&realmId={REALM_ID}")
    assert excinfo.value.message.startswith("Token exchange failed")
    assert excinfo.value.details["status"] == 400


def test_exchange_code_without_access_token(oauth):
    FakeAuthClient.bearer_grant = {"access_token": None}
    with pytest.raises(UpstreamAuthError):
        oauth.exchange_code(f"{REDIRECT_URI}?code=auth-code&realmId={REALM_ID}")


def test_refresh_returns_new_tokens(oauth):
    grant = oauth.refresh("refresh-1")
    assert grant.access_token == "access-2"
    assert grant.refresh_token == "refresh-2"
    assert grant.expires_in == 3600


def test_refresh_keeps_old_refresh_token_when_not_rotated(oauth):
    FakeAuthClient.refresh_grant = {"access_token": "access-2", "refresh_token": None, "expires_in": 3600}
    grant = oauth.refresh("refresh-1")
    assert grant.refresh_token == "refresh-1"


@pytest.mark.parametrize("configure", ["upstream", "unconfigured", "no-token"])
def test_refresh_failures_are_refresh_failed(oauth, configure):
    if configure == "upstream":
        FakeAuthClient.error = _intuit_error(401)
    elif configure == "unconfigured":
        oauth.client_secret = None
    else:
        FakeAuthClient.refresh_grant = {"access_token": None}
    with pytest.raises(RefreshFailedError):
        oauth.refresh("refresh-1")


def test_refresh_without_token(oauth):
    with pytest.raises(RefreshFailedError):
        oauth.refresh("")


def test_revoke_is_best_effort(oauth):
    assert oauth.revoke("refresh-1") is True
    assert FakeAuthClient.revoked == ["refresh-1"]
    assert oauth.revoke(None) is False


def test_identity_claims_reads_unverified_id_token():
    token = jwt.encode({"sub": "user-1", "email": "owner@example.com", "realmid": REALM_ID, "aud": "x"}, "secret", algorithm="HS256")
    assert identity_claims(token) == {"sub": "user-1", "email": "owner@example.com", "realmid": REALM_ID}
    assert identity_claims("not-a-jwt") == {}
    assert identity_claims(None) == {}
