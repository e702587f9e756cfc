import os
from typing import Any, Callable, Dict, Optional

import httpx
from intuitlib.client import AuthClient
from quickbooks import QuickBooks

from credentials import CredentialStore
from invoice_fetch import FETCH_TIMEOUT, STRATEGY_TIMEOUT, InvoiceFetchOrchestrator, api_base_url_for
from invoice_tools import ToolDispatcher
from qbo_client import QUICKBOOKS_MINOR_VERSION, AccountingClientAdapter
from qbo_oauth import OAuthExchange
from utils import logger, mask_secret

QUICKBOOKS_API_BASE_URL = os.environ.get("QUICKBOOKS_API_BASE_URL")


class Services:
    """The per-process object graph shared by every route."""

    def __init__(
        self,
        store: CredentialStore,
        oauth: OAuthExchange,
        adapter: AccountingClientAdapter,
        orchestrator: InvoiceFetchOrchestrator,
        dispatcher: ToolDispatcher,
    ):
        self.store = store
        self.oauth = oauth
        self.adapter = adapter
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher
        # OpenID claims from the last successful callback, for /auth/status
        self.identity: Dict[str, Any] = {}

    @classmethod
    def build(
        cls,
        oauth: OAuthExchange,
        store: Optional[CredentialStore] = None,
        api_base_url: Optional[str] = None,
        minor_version: Optional[str] = QUICKBOOKS_MINOR_VERSION,
        strategy_timeout: float = STRATEGY_TIMEOUT,
        overall_timeout: float = FETCH_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        auth_client_factory: Callable[..., Any] = AuthClient,
        client_factory: Callable[..., Any] = QuickBooks,
    ) -> "Services":
        store = store or CredentialStore()
        adapter = AccountingClientAdapter(
            store,
            oauth.client_id,
            oauth.client_secret,
            oauth.redirect_uri,
            environment=oauth.environment,
            minor_version=minor_version,
            auth_client_factory=auth_client_factory,
            client_factory=client_factory,
        )
        orchestrator = InvoiceFetchOrchestrator(
            store,
            oauth,
            adapter,
            api_base_url=api_base_url or api_base_url_for(oauth.environment),
            strategy_timeout=strategy_timeout,
            overall_timeout=overall_timeout,
            minor_version=minor_version,
            transport=transport,
        )
        return cls(store, oauth, adapter, orchestrator, ToolDispatcher(orchestrator))

    @classmethod
    def from_env(cls) -> "Services":
        oauth = OAuthExchange.from_env()
        logger.info(
            "QuickBooks configuration: client_id=%s client_secret=%s environment=%s redirect_uri=%s",
            mask_secret(oauth.client_id),
            bool(oauth.client_secret),
            oauth.environment,
            oauth.redirect_uri,
        )
        return cls.build(oauth, api_base_url=QUICKBOOKS_API_BASE_URL)
