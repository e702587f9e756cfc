import asyncio
import os
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from credentials import (
    CredentialStore,
    clear_credential_cookies,
    has_credential_cookies,
    read_credential_cookies,
    set_credential_cookies,
)
from errors import (
    AuthenticationExpiredError,
    AuthenticationRequiredError,
    AuthenticationStateError,
    InvalidUpstreamResponseError,
    MissingParameterError,
    NotAuthenticatedError,
    NotFoundError,
    QuickBooksError,
    RefreshFailedError,
    StrategyTimeout,
    UpstreamUnavailableError,
)
from models import CredentialRecord, InvoiceList, MalformedResponse, NormalizedInvoice, decode_query_response, normalize_invoice_id
from qbo_client import QUICKBOOKS_MINOR_VERSION, AccountingClientAdapter
from qbo_oauth import OAuthExchange
from utils import get_services, logger, safe_exception_message

SANDBOX_API_BASE_URL = "https://sandbox-quickbooks.api.intuit.com"
PRODUCTION_API_BASE_URL = "https://quickbooks.api.intuit.com"

STRATEGY_TIMEOUT = float(os.environ.get("QUICKBOOKS_STRATEGY_TIMEOUT", "15"))
FETCH_TIMEOUT = float(os.environ.get("QUICKBOOKS_FETCH_TIMEOUT", "30"))

MICRO_QUERY = "select * from Invoice MAXRESULTS 5"
DIRECT_QUERY = "SELECT * FROM Invoice STARTPOSITION 1 MAXRESULTS 1000"

AUTH_REQUIRED_MESSAGE = "QuickBooks authentication required. Please connect your QuickBooks account."
AUTH_EXPIRED_MESSAGE = "QuickBooks authentication expired. Please reconnect your account."
NO_INVOICES_MESSAGE = "No invoices found in this QuickBooks account"
EXHAUSTED_MESSAGE = "No invoices could be retrieved from QuickBooks"


def api_base_url_for(environment: str) -> str:
    return PRODUCTION_API_BASE_URL if environment == "production" else SANDBOX_API_BASE_URL


class FetchResult(BaseModel):
    """Outcome of one pass over the strategy ladder. Never carries an exception."""

    invoices: List[NormalizedInvoice] = Field(default_factory=list)
    strategy: Optional[str] = None
    failures: Dict[str, str] = Field(default_factory=dict)
    message: Optional[str] = None
    refreshed: bool = False

    @property
    def exhausted(self) -> bool:
        return self.strategy is None

    def to_payload(self) -> Union[List[Dict[str, Any]], Dict[str, Any]]:
        if self.invoices:
            return [inv.to_dict() for inv in self.invoices]
        if self.exhausted:
            return {
                "invoices": [],
                "message": self.message or EXHAUSTED_MESSAGE,
                "error": "All fetch methods failed",
                "errorDetails": dict(self.failures),
            }
        return {"invoices": [], "message": self.message or NO_INVOICES_MESSAGE}


class InvoiceFetchOrchestrator:
    """
    Produce invoices from QuickBooks under partial upstream failure.

    Three retrieval strategies are tried one after another (micro HTTP query,
    full HTTP query, SDK query). The first structurally valid answer wins,
    even an empty one. If all of them fail, or the ladder runs past
    `overall_timeout`, an empty result with the recorded failure reasons is
    returned instead of raising.
    """

    def __init__(
        self,
        store: CredentialStore,
        oauth: OAuthExchange,
        adapter: AccountingClientAdapter,
        api_base_url: str = SANDBOX_API_BASE_URL,
        strategy_timeout: float = STRATEGY_TIMEOUT,
        overall_timeout: float = FETCH_TIMEOUT,
        minor_version: Optional[str] = QUICKBOOKS_MINOR_VERSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.oauth = oauth
        self.adapter = adapter
        self.api_base_url = api_base_url.rstrip("/")
        self.strategy_timeout = strategy_timeout
        self.overall_timeout = overall_timeout
        self.minor_version = minor_version
        self._transport = transport

    # ---- credential handling ----

    async def _usable_credentials(self, cookies: Optional[Mapping[str, str]] = None) -> tuple[CredentialRecord, bool]:
        record = self.store.get(cookies)
        if record is None:
            logger.warning("No valid QuickBooks credentials for invoice fetch")
            raise AuthenticationRequiredError(AUTH_REQUIRED_MESSAGE)

        if not (record.is_expired() and record.refresh_token):
            return record, False

        logger.info("QuickBooks access token expired; refreshing")
        loop = asyncio.get_running_loop()
        try:
            grant = await loop.run_in_executor(None, self.oauth.refresh, record.refresh_token)
        except RefreshFailedError as e:
            logger.error("QuickBooks token refresh failed: %s", e.message)
            self.store.clear()
            raise AuthenticationExpiredError(AUTH_EXPIRED_MESSAGE, details={"refresh": e.message})

        record = self.store.put(grant.access_token, record.realm_id, grant.refresh_token, grant.expires_in)
        if not self.adapter.initialize(record.access_token, record.realm_id, record.refresh_token):
            logger.warning("QuickBooks client re-initialization after refresh failed: %s", self.adapter.last_init_failures)
        return record, True

    # ---- strategies ----

    def _headers(self, record: CredentialRecord, content_type: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {record.access_token}",
            "Accept": "application/json",
            "Content-Type": content_type,
        }

    def _query_url(self, record: CredentialRecord) -> str:
        return f"{self.api_base_url}/v3/company/{record.realm_id}/query"

    def _params(self, **extra) -> Dict[str, str]:
        params = dict(extra)
        if self.minor_version:
            params["minorversion"] = str(self.minor_version)
        return params

    @staticmethod
    def _check_status(response: httpx.Response) -> None:
        if response.status_code == 401:
            raise NotAuthenticatedError(f"API responded with status: {response.status_code}")
        if response.status_code >= 400:
            raise UpstreamUnavailableError(f"API responded with status: {response.status_code}", code=str(response.status_code))

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise InvalidUpstreamResponseError(f"Response is not valid JSON: {safe_exception_message(e)}")

    async def _micro_strategy(self, record: CredentialRecord) -> List[Dict[str, Any]]:
        async with httpx.AsyncClient(transport=self._transport, timeout=self.strategy_timeout) as client:
            response = await client.get(
                self._query_url(record),
                params=self._params(query=MICRO_QUERY),
                headers=self._headers(record, "application/json"),
            )
        self._check_status(response)
        envelope = decode_query_response(self._json(response))
        if isinstance(envelope, InvoiceList):
            return envelope.invoices
        if isinstance(envelope, MalformedResponse):
            logger.warning("Micro method: response does not contain an invoice array (%s)", envelope.reason)
        return []

    async def _direct_strategy(self, record: CredentialRecord) -> List[Dict[str, Any]]:
        async with httpx.AsyncClient(transport=self._transport, timeout=self.overall_timeout) as client:
            response = await client.post(
                self._query_url(record),
                params=self._params(),
                headers=self._headers(record, "application/text"),
                content=DIRECT_QUERY,
            )
        self._check_status(response)
        envelope = decode_query_response(self._json(response))
        if isinstance(envelope, MalformedResponse):
            raise InvalidUpstreamResponseError(f"Invalid response format from QuickBooks API: {envelope.reason}")
        return envelope.invoices

    async def _sdk_strategy(self, record: CredentialRecord) -> List[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        # the SDK is synchronous; on timeout the worker thread is abandoned, not stopped
        return await loop.run_in_executor(None, self.adapter.find_invoices)

    def _strategy_plan(self) -> List[tuple[str, Callable[[CredentialRecord], Awaitable[List[Dict[str, Any]]]], Optional[float]]]:
        return [
            ("micro", self._micro_strategy, self.strategy_timeout),
            ("direct", self._direct_strategy, None),
            ("sdk", self._sdk_strategy, self.strategy_timeout),
        ]

    async def _run_strategy(self, name: str, strategy, record: CredentialRecord, timeout: Optional[float]):
        try:
            if timeout is None:
                return await strategy(record)
            return await asyncio.wait_for(strategy(record), timeout)
        except asyncio.TimeoutError:
            raise StrategyTimeout(f"{name} method request timed out after {timeout:g} seconds")
        except httpx.TimeoutException as e:
            raise StrategyTimeout(f"{name} method request timed out: {safe_exception_message(e)}")
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"{name} method transport error: {safe_exception_message(e)}")

    async def _ladder(self, record: CredentialRecord, result: FetchResult) -> None:
        for name, strategy, timeout in self._strategy_plan():
            logger.info("Trying %s invoice fetch method", name)
            try:
                raw_invoices = await self._run_strategy(name, strategy, record, timeout)
            except QuickBooksError as e:
                code = getattr(e, "code", None)
                logger.warning("%s fetch method failed (%s%s): %s", name, type(e).__name__, f", code {code}" if code else "", e.message)
                result.failures[name] = e.message
                continue
            except Exception as e:
                logger.exception("%s fetch method raised unexpectedly", name)
                result.failures[name] = safe_exception_message(e)
                continue

            result.strategy = name
            result.invoices = [NormalizedInvoice.from_quickbooks(raw) for raw in raw_invoices]
            logger.info("Fetched %d invoices with %s method", len(result.invoices), name)
            if not result.invoices:
                result.message = NO_INVOICES_MESSAGE
            return

    # ---- public operations ----

    async def fetch_invoices(self, cookies: Optional[Mapping[str, str]] = None) -> FetchResult:
        record, refreshed = await self._usable_credentials(cookies)
        result = FetchResult(refreshed=refreshed)
        try:
            await asyncio.wait_for(self._ladder(record, result), self.overall_timeout)
        except asyncio.TimeoutError:
            logger.error("Invoice fetch timed out after %g seconds", self.overall_timeout)
            result.strategy = None
            result.invoices = []
            result.failures["timeout"] = f"Request timed out after {self.overall_timeout:g} seconds"

        if result.exhausted:
            logger.error("All invoice fetch methods failed: %s", result.failures)
            result.message = EXHAUSTED_MESSAGE
        return result

    async def get_invoice_by_id(self, invoice_id: Any, cookies: Optional[Mapping[str, str]] = None) -> NormalizedInvoice:
        clean_id = normalize_invoice_id(invoice_id)
        if not clean_id:
            raise MissingParameterError("Invoice ID is required")

        await self._usable_credentials(cookies)
        errors: List[str] = []

        loop = asyncio.get_running_loop()
        try:
            raw = await asyncio.wait_for(
                loop.run_in_executor(None, self.adapter.get_invoice, clean_id),
                self.strategy_timeout,
            )
            return NormalizedInvoice.from_quickbooks(raw)
        except asyncio.TimeoutError:
            errors.append(f"getInvoice: timed out after {self.strategy_timeout:g} seconds")
        except AuthenticationStateError:
            raise
        except QuickBooksError as e:
            logger.info("Direct lookup of invoice %s failed: %s", clean_id, e.message)
            errors.append(f"getInvoice: {e.message}")

        result = await self.fetch_invoices(cookies)
        for invoice in result.invoices:
            if invoice.matches(clean_id):
                logger.info("Found invoice %s by scanning %d invoices", clean_id, len(result.invoices))
                return invoice
        errors.extend(f"{name}: {reason}" for name, reason in result.failures.items())

        raise NotFoundError(f"Invoice {clean_id} not found. Tried multiple methods.", details={"errors": errors})


# ---- Router Setup ----

router = APIRouter()

def sync_credential_cookies(request: Request, response, store: CredentialStore) -> None:
    """Bring the client's credential cookies in line with the store after a call."""
    record = store.record
    if not record.usable:
        # the call cleared the store (rejected token, failed refresh)
        if has_credential_cookies(request.cookies)["hasAccessToken"]:
            clear_credential_cookies(response)
        return
    if read_credential_cookies(request.cookies).access_token != record.access_token:
        set_credential_cookies(response, record)

def _auth_error_response(error: AuthenticationStateError) -> JSONResponse:
    response = JSONResponse(status_code=401, content={"error": error.message})
    clear_credential_cookies(response)
    return response

@router.get("/invoices")
async def get_invoices(request: Request, id: Optional[str] = None, services=Depends(get_services)):
    orchestrator: InvoiceFetchOrchestrator = services.orchestrator

    if id is None:
        try:
            result = await orchestrator.fetch_invoices(request.cookies)
        except AuthenticationStateError as e:
            return _auth_error_response(e)
        except Exception as e:
            logger.exception("Invoice list request failed")
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Failed to fetch invoices from QuickBooks",
                    "details": e.message if isinstance(e, QuickBooksError) else safe_exception_message(e),
                    "suggestion": "Please check server logs for more details and ensure your QuickBooks connection is valid.",
                    "fallback": {"invoices": [], "message": "Could not retrieve invoices due to an error"},
                },
            )
        response = JSONResponse(content=result.to_payload())
        sync_credential_cookies(request, response, services.store)
        return response

    try:
        invoice = await orchestrator.get_invoice_by_id(id, request.cookies)
    except AuthenticationStateError as e:
        return _auth_error_response(e)
    except NotFoundError as e:
        return JSONResponse(status_code=404, content={"error": e.message, **e.details})
    except MissingParameterError as e:
        return JSONResponse(status_code=400, content={"error": e.message})
    except Exception as e:
        logger.exception("Invoice lookup for %s failed", id)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Failed to fetch invoice details",
                "details": e.message if isinstance(e, QuickBooksError) else safe_exception_message(e),
                "fallback": {"invoices": []},
            },
        )
    response = JSONResponse(content=invoice.to_dict())
    sync_credential_cookies(request, response, services.store)
    return response
