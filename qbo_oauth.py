import os
import secrets
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlparse

from intuitlib.client import AuthClient
from intuitlib.enums import Scopes
from intuitlib.exceptions import AuthClientError
from jose import jwt, JWTError
from pydantic import BaseModel

from errors import MissingConfigurationError, MissingParameterError, RefreshFailedError, UpstreamAuthError
from utils import logger, mask_secret, safe_exception_message

# Environment variables
QUICKBOOKS_CLIENT_ID = os.environ.get("QUICKBOOKS_CLIENT_ID")
QUICKBOOKS_CLIENT_SECRET = os.environ.get("QUICKBOOKS_CLIENT_SECRET")
QUICKBOOKS_ENVIRONMENT = os.environ.get("QUICKBOOKS_ENVIRONMENT", "sandbox")
BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000")

CALLBACK_PATH = "/auth/callback"
OAUTH_SCOPES = [Scopes.ACCOUNTING, Scopes.OPENID, Scopes.PROFILE, Scopes.EMAIL]


def normalize_base_url(base_url: Optional[str]) -> str:
    """Ensure the base URL carries a scheme and no trailing slash."""
    base_url = (base_url or "http://localhost:8000").strip()
    if not base_url.startswith(("http://", "https://")):
        base_url = f"http://{base_url}"
    return base_url.rstrip("/")

def redirect_uri_for(base_url: Optional[str]) -> str:
    return f"{normalize_base_url(base_url)}{CALLBACK_PATH}"


class TokenGrant(BaseModel):
    access_token: str
    realm_id: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    id_token: Optional[str] = None


class OAuthExchange:
    """
    Authorization-code and refresh-token exchanges against Intuit's OAuth 2.0 server.

    A new `AuthClient` is built for every operation: the client binds the
    client secret when it is constructed, so a cached instance keeps signing
    with whatever secret it was created with.
    """

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        environment: str = "sandbox",
        client_factory: Callable[..., Any] = AuthClient,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.environment = environment
        self._client_factory = client_factory

    @classmethod
    def from_env(cls) -> "OAuthExchange":
        return cls(
            client_id=QUICKBOOKS_CLIENT_ID,
            client_secret=QUICKBOOKS_CLIENT_SECRET,
            redirect_uri=redirect_uri_for(BASE_URL),
            environment=QUICKBOOKS_ENVIRONMENT,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id) and bool(self.client_secret)

    def required_configuration(self) -> Dict[str, str]:
        return {
            "clientId": "Set" if self.client_id else "Missing",
            "clientSecret": "Set" if self.client_secret else "Missing",
            "redirectUri": self.redirect_uri or "Missing base URL",
        }

    def _new_client(self, **kwargs):
        if not self.configured:
            raise MissingConfigurationError(
                "QuickBooks client credentials are not configured",
                details=self.required_configuration(),
            )
        return self._client_factory(
            self.client_id,
            self.client_secret,
            self.redirect_uri,
            self.environment,
            **kwargs,
        )

    def build_authorization_url(self, state: Optional[str] = None) -> str:
        state = state or secrets.token_urlsafe(16)
        client = self._new_client(state_token=state)
        url = client.get_authorization_url(OAUTH_SCOPES, state_token=state)
        logger.info("Generated QuickBooks authorization URL (redirect_uri=%s)", self.redirect_uri)
        return url

    def exchange_code(self, callback_url: str) -> TokenGrant:
        params = parse_qs(urlparse(callback_url).query)
        code = (params.get("code") or [None])[0]
        realm_id = (params.get("realmId") or [None])[0]

        logger.info(
            "QuickBooks callback parameters: code=%s realmId=%s configured=%s",
            bool(code),
            bool(realm_id),
            self.configured,
        )
        if not code:
            raise MissingParameterError("Missing authorization code")
        if not realm_id:
            raise MissingParameterError("Missing realmId parameter")

        client = self._new_client()
        try:
            client.get_bearer_token(code, realm_id=realm_id)
        except AuthClientError as e:
            logger.error("QuickBooks token exchange failed: status=%s intuit_tid=%s", e.status_code, getattr(e, "intuit_tid", None))
            raise UpstreamAuthError(
                f"Token exchange failed: {safe_exception_message(e)}",
                details={"status": e.status_code, "intuitTid": getattr(e, "intuit_tid", None)},
            )
        except Exception as e:
            logger.error("QuickBooks token exchange failed: %s", e)
            raise UpstreamAuthError(f"Token exchange failed: {safe_exception_message(e)}")

        if not client.access_token:
            raise UpstreamAuthError("No access token received from QuickBooks")

        grant = TokenGrant(
            access_token=client.access_token,
            realm_id=getattr(client, "realm_id", None) or realm_id,
            refresh_token=client.refresh_token,
            expires_in=client.expires_in,
            id_token=getattr(client, "id_token", None),
        )
        logger.info(
            "QuickBooks token received: realm=%s refresh_token=%s expires_in=%s",
            mask_secret(grant.realm_id),
            bool(grant.refresh_token),
            grant.expires_in,
        )
        return grant

    def refresh(self, refresh_token: str) -> TokenGrant:
        if not refresh_token:
            raise RefreshFailedError("No refresh token available")
        try:
            client = self._new_client(refresh_token=refresh_token)
            client.refresh(refresh_token=refresh_token)
        except MissingConfigurationError as e:
            raise RefreshFailedError(f"Token refresh failed: {e.message}")
        except AuthClientError as e:
            logger.error("QuickBooks token refresh failed: status=%s", e.status_code)
            raise RefreshFailedError(f"Token refresh failed: {safe_exception_message(e)}", details={"status": e.status_code})
        except Exception as e:
            logger.error("QuickBooks token refresh failed: %s", e)
            raise RefreshFailedError(f"Token refresh failed: {safe_exception_message(e)}")

        if not client.access_token:
            raise RefreshFailedError("No access token in refresh response")

        logger.info("QuickBooks token refreshed (new refresh token: %s)", bool(client.refresh_token))
        return TokenGrant(
            access_token=client.access_token,
            # upstream may rotate the refresh token or omit it
            refresh_token=client.refresh_token or refresh_token,
            expires_in=client.expires_in,
        )

    def revoke(self, token: Optional[str]) -> bool:
        if not token or not self.configured:
            return False
        try:
            client = self._new_client(refresh_token=token)
            return bool(client.revoke(token=token))
        except Exception as e:
            logger.warning("QuickBooks token revocation failed: %s", safe_exception_message(e))
            return False


def identity_claims(id_token: Optional[str]) -> Dict[str, Any]:
    """Read a few OpenID claims from the id_token without verifying it (display only)."""
    if not id_token:
        return {}
    try:
        claims = jwt.get_unverified_claims(id_token)
    except JWTError as e:
        logger.warning("Unable to parse id_token claims: %s", e)
        return {}
    return {k: claims[k] for k in ("sub", "email", "realmid") if k in claims}
