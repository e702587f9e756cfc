import asyncio
import inspect
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import pytest
from fastapi.testclient import TestClient
from quickbooks.exceptions import QuickbooksException

sys.path.append(str(Path(__file__).resolve().parents[1]))

import qbo_client
from app import create_app
from credentials import CredentialStore
from qbo_oauth import OAuthExchange
from services import Services

CLIENT_ID = "test-client-id"
CLIENT_SECRET = "test-client-secret"
REDIRECT_URI = "http://localhost:8000/auth/callback"
REALM_ID = "9130355377388888"


class FakeAuthClient:
    """Stands in for intuitlib's AuthClient. Class attributes script the next outcome."""

    instances: List["FakeAuthClient"] = []
    bearer_grant: Dict[str, Any] = {}
    refresh_grant: Dict[str, Any] = {}
    error: Optional[Exception] = None
    revoked: List[str] = []

    def __init__(self, client_id, client_secret, redirect_uri, environment, state_token=None,
                 access_token=None, refresh_token=None, id_token=None, realm_id=None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.environment = environment
        self.state_token = state_token
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.id_token = id_token
        self.realm_id = realm_id
        self.expires_in = None
        FakeAuthClient.instances.append(self)

    @classmethod
    def reset(cls):
        cls.instances = []
        cls.error = None
        cls.revoked = []
        cls.bearer_grant = {"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600, "id_token": None}
        cls.refresh_grant = {"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600}

    def get_authorization_url(self, scopes, state_token=None):
        scope = " ".join(getattr(s, "value", str(s)) for s in scopes)
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": scope,
            "state": state_token,
        })
        return f"https://appcenter.intuit.com/connect/oauth2?{query}"

    def get_bearer_token(self, auth_code, realm_id=None):
        if self.error:
            raise self.error
        for key, value in self.bearer_grant.items():
            setattr(self, key, value)
        self.realm_id = realm_id

    def refresh(self, refresh_token=None):
        if self.error:
            raise self.error
        for key, value in self.refresh_grant.items():
            setattr(self, key, value)

    def revoke(self, token=None):
        FakeAuthClient.revoked.append(token)
        return True


class FakeQuickBooks:
    """Records the keyword arguments python-quickbooks' client would be built with."""

    instances: List["FakeQuickBooks"] = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.auth_client = kwargs.get("auth_client")
        self.company_id = kwargs.get("company_id")
        self.minorversion = kwargs.get("minorversion")
        FakeQuickBooks.instances.append(self)


class FakeInvoiceApi:
    """Replaces `quickbooks.objects.invoice.Invoice` inside qbo_client."""

    def __init__(self):
        self.invoices: List[Dict[str, Any]] = []
        # consumed in order by query(); an exception is raised, a list is returned
        self.query_outcomes: List[Any] = []
        self.get_error: Optional[Exception] = None
        self.queries: List[str] = []
        self.gets: List[str] = []

    def query(self, select, qb=None):
        self.queries.append(select)
        if self.query_outcomes:
            outcome = self.query_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return list(self.invoices)

    def get(self, invoice_id, qb=None):
        self.gets.append(invoice_id)
        if self.get_error:
            raise self.get_error
        for invoice in self.invoices:
            if str(invoice.get("Id")) == str(invoice_id):
                return invoice
        raise QuickbooksException("Object Not Found", error_code=610, detail=f"Invoice {invoice_id} not found")


class FakeCompanyInfoApi:
    def __init__(self):
        self.error: Optional[Exception] = None

    def get(self, company_id, qb=None):
        if self.error:
            raise self.error
        return {
            "CompanyName": "Sandbox Company_US_1",
            "LegalName": "Sandbox Company_US_1 LLC",
            "NameValue": [{"Name": "IndustryType", "Value": "Retail"}],
        }


def respond(status_code: int = 200, payload: Any = None) -> Callable[[httpx.Request], httpx.Response]:
    def _route(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload if payload is not None else {})
    return _route


def hang(seconds: float, payload: Any = None) -> Callable[[httpx.Request], Any]:
    async def _route(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(seconds)
        return httpx.Response(200, json=payload or {"QueryResponse": {}})
    return _route


class FakeQboApi:
    """httpx.MockTransport handler for the accounting `/query` endpoint."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.micro = respond(200, {"QueryResponse": {}})
        self.direct = respond(200, {"QueryResponse": {}})

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.micro if request.method == "GET" else self.direct
        result = route(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    @property
    def methods(self) -> List[str]:
        return [r.method for r in self.requests]


def make_invoice(invoice_id="42", doc_number="INV-42", customer="Acme Corp", total=1234.5,
                 balance=1234.5, txn_date="2024-03-05", due_date="2024-04-04", memo=None) -> Dict[str, Any]:
    invoice = {
        "Id": invoice_id,
        "DocNumber": doc_number,
        "CustomerRef": {"value": "1", "name": customer},
        "TxnDate": txn_date,
        "DueDate": due_date,
        "TotalAmt": total,
        "Balance": balance,
        "CurrencyRef": {"value": "USD", "name": "United States Dollar"},
        "Line": [
            {
                "Id": "1",
                "Description": "Consulting",
                "Amount": total,
                "DetailType": "SalesItemLineDetail",
                "SalesItemLineDetail": {"Qty": 1, "UnitPrice": total},
            },
            {"Amount": total, "DetailType": "SubTotalLineDetail", "SubTotalLineDetail": {}},
        ],
    }
    if memo:
        invoice["CustomerMemo"] = {"value": memo}
    return invoice


@pytest.fixture(autouse=True)
def reset_fakes():
    FakeAuthClient.reset()
    FakeQuickBooks.instances = []
    yield


@pytest.fixture
def invoice_factory():
    return make_invoice


@pytest.fixture
def invoice_api(monkeypatch: pytest.MonkeyPatch) -> FakeInvoiceApi:
    api = FakeInvoiceApi()
    monkeypatch.setattr(qbo_client, "Invoice", api)
    return api


@pytest.fixture
def company_info_api(monkeypatch: pytest.MonkeyPatch) -> FakeCompanyInfoApi:
    api = FakeCompanyInfoApi()
    monkeypatch.setattr(qbo_client, "CompanyInfo", api)
    return api


@pytest.fixture
def qbo_api() -> FakeQboApi:
    return FakeQboApi()


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore()


@pytest.fixture
def oauth() -> OAuthExchange:
    return OAuthExchange(CLIENT_ID, CLIENT_SECRET, REDIRECT_URI, "sandbox", client_factory=FakeAuthClient)


@pytest.fixture
def services(store, oauth, qbo_api, invoice_api, company_info_api) -> Services:
    return Services.build(
        oauth,
        store=store,
        strategy_timeout=0.5,
        overall_timeout=2,
        transport=httpx.MockTransport(qbo_api.handler),
        auth_client_factory=FakeAuthClient,
        client_factory=FakeQuickBooks,
    )


@pytest.fixture
def connect(services):
    """Put a usable credential record into the store and build the SDK client."""
    def _connect(access_token="access-1", realm_id=REALM_ID, refresh_token="refresh-1", expires_in=3600):
        record = services.store.put(access_token, realm_id, refresh_token, expires_in)
        services.adapter.initialize(record.access_token, record.realm_id, record.refresh_token)
        return record
    return _connect


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client
