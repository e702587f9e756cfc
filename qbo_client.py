import json
import os
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence

from intuitlib.client import AuthClient
from quickbooks import QuickBooks
from quickbooks.exceptions import AuthorizationException, QuickbooksException
from quickbooks.objects.company_info import CompanyInfo
from quickbooks.objects.invoice import Invoice

from credentials import CredentialStore
from errors import NotAuthenticatedError, NotFoundError, UpstreamUnavailableError
from models import normalize_invoice_id
from utils import logger, mask_secret, safe_exception_message

QUICKBOOKS_MINOR_VERSION = os.environ.get("QUICKBOOKS_MINOR_VERSION", "75")

SIMPLE_QUERY = "SELECT * FROM Invoice"
FILTERED_QUERY = "SELECT * FROM Invoice WHERE MetaData.LastUpdatedTime > '2010-01-01T00:00:00'"

# "80040408" is the connection/initialization fault, "270" and "3200" mean the token was rejected
INITIALIZATION_FAULT_CODES = {"80040408"}
INVALID_TOKEN_FAULT_CODES = {"270", "3200"}
NOT_FOUND_FAULT_CODES = {"610"}


class ClientShape(NamedTuple):
    """One way of constructing the SDK client; tried in order until one yields a usable client."""
    name: str
    environment: str
    minor_version: Optional[str]


def default_client_shapes(environment: str, minor_version: Optional[str]) -> List[ClientShape]:
    shapes = [ClientShape("configured", environment, minor_version)]
    if environment != "sandbox" or minor_version:
        shapes.append(ClientShape("sandbox-compat", "sandbox", None))
    return shapes


def fault_code(exc: BaseException) -> Optional[str]:
    code = getattr(exc, "error_code", None)
    if code is None:
        code = getattr(exc, "code", None)
    return str(code) if code not in (None, "", 0) else None


def is_auth_fault(exc: BaseException) -> bool:
    code = fault_code(exc)
    if code in INITIALIZATION_FAULT_CODES or code in INVALID_TOKEN_FAULT_CODES:
        return True
    if isinstance(exc, AuthorizationException):
        return True
    return "token invalid" in safe_exception_message(exc).lower()


def is_not_found_fault(exc: BaseException) -> bool:
    if fault_code(exc) in NOT_FOUND_FAULT_CODES:
        return True
    if type(exc).__name__ == "ObjectNotFoundException":
        return True
    return getattr(exc, "status_code", None) == 404


def _to_raw(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    to_json = getattr(obj, "to_json", None)
    if callable(to_json):
        return json.loads(to_json())
    raise TypeError(f"Cannot convert {type(obj).__name__} to a QuickBooks record")


class AccountingClientAdapter:
    """
    Read-only invoice access through the python-quickbooks SDK.

    The live SDK client is derived from the credential store and dropped
    whenever the store is cleared.
    """

    def __init__(
        self,
        store: CredentialStore,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        environment: str = "sandbox",
        minor_version: Optional[str] = QUICKBOOKS_MINOR_VERSION,
        shapes: Optional[Sequence[ClientShape]] = None,
        auth_client_factory: Callable[..., Any] = AuthClient,
        client_factory: Callable[..., Any] = QuickBooks,
    ):
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.shapes = list(shapes) if shapes else default_client_shapes(environment, minor_version)
        self._auth_client_factory = auth_client_factory
        self._client_factory = client_factory
        self._client = None
        self.active_shape: Optional[str] = None
        self.last_init_failures: Dict[str, str] = {}
        store.add_clear_listener(self.reset)

    @property
    def client(self):
        return self._client

    def reset(self) -> None:
        if self._client is not None:
            logger.info("Dropping QuickBooks SDK client")
        self._client = None
        self.active_shape = None

    def _build(self, shape: ClientShape, access_token: str, realm_id: str, refresh_token: Optional[str]):
        auth_client = self._auth_client_factory(
            self.client_id,
            self.client_secret,
            self.redirect_uri,
            shape.environment,
            access_token=access_token,
            refresh_token=refresh_token,
            realm_id=realm_id,
        )
        kwargs: Dict[str, Any] = {"auth_client": auth_client, "company_id": realm_id}
        if refresh_token:
            kwargs["refresh_token"] = refresh_token
        if shape.minor_version:
            kwargs["minorversion"] = int(shape.minor_version)
        client = self._client_factory(**kwargs)
        if client is None:
            raise RuntimeError("QuickBooks constructor returned nothing")

        # the constructor does not set these for every argument combination
        client.company_id = realm_id
        if getattr(client, "auth_client", None) is None:
            client.auth_client = auth_client
        client.auth_client.access_token = access_token
        client.auth_client.realm_id = realm_id
        if refresh_token:
            client.auth_client.refresh_token = refresh_token
        return client

    @staticmethod
    def _client_complete(client) -> bool:
        auth_client = getattr(client, "auth_client", None)
        return bool(getattr(client, "company_id", None)) and bool(getattr(auth_client, "access_token", None))

    def initialize(self, access_token: str, realm_id: str, refresh_token: Optional[str] = None) -> bool:
        logger.info(
            "Initializing QuickBooks client: token=%s realm=%s client_id=%s client_secret=%s",
            bool(access_token),
            mask_secret(realm_id),
            bool(self.client_id),
            bool(self.client_secret),
        )
        self.last_init_failures = {}
        if not access_token or not realm_id:
            logger.error("Missing token or realmId for QuickBooks initialization")
            return False
        if not self.client_id or not self.client_secret:
            logger.error("Missing QuickBooks client credentials")
            return False

        for shape in self.shapes:
            try:
                client = self._build(shape, access_token, realm_id, refresh_token)
            except Exception as e:
                logger.warning("QuickBooks client construction (%s) failed: %s", shape.name, e)
                self.last_init_failures[shape.name] = safe_exception_message(e)
                continue
            if not self._client_complete(client):
                logger.warning("QuickBooks client construction (%s) left required properties unset", shape.name)
                self.last_init_failures[shape.name] = "missing access token or company id after construction"
                continue

            self._client = client
            self.active_shape = shape.name
            self.store.mark_initialized()
            logger.info("QuickBooks client initialized with %s shape", shape.name)
            return True

        self.reset()
        self.store.mark_initialized(False)
        logger.error("All QuickBooks client construction shapes failed: %s", self.last_init_failures)
        return False

    def ensure_initialized(self, cookies: Optional[Mapping[str, str]] = None):
        record = self.store.get(cookies)
        client = self._client
        if client is not None:
            stale = record is not None and getattr(client.auth_client, "access_token", None) != record.access_token
            if not self._client_complete(client) or stale:
                logger.info("QuickBooks client is missing required properties or holds a stale token; reinitializing")
                self.reset()
                self.store.mark_initialized(False)
            elif record is not None:
                return client

        if record is None:
            raise NotAuthenticatedError("QuickBooks client not initialized. Please connect your QuickBooks account first.")
        if not self.initialize(record.access_token, record.realm_id, record.refresh_token):
            raise NotAuthenticatedError(
                "Failed to initialize QuickBooks client. Please reconnect your QuickBooks account.",
                details={"shapes": dict(self.last_init_failures)},
            )
        return self._client

    def _handle_auth_fault(self, exc: BaseException) -> None:
        code = fault_code(exc)
        if code in INITIALIZATION_FAULT_CODES:
            logger.warning("QuickBooks initialization error (%s); clearing credentials", code)
            self.store.clear()
            raise NotAuthenticatedError("QuickBooks connection error. Please reconnect your QuickBooks account.")
        logger.warning("QuickBooks rejected the access token (%s); clearing credentials", code)
        self.store.clear()
        raise NotAuthenticatedError("QuickBooks authentication has expired. Please reconnect your QuickBooks account.")

    def find_invoices(self, query: Optional[str] = None, max_results: int = 1000) -> List[Dict[str, Any]]:
        client = self.ensure_initialized()
        shapes = [query] if query else []
        shapes += [SIMPLE_QUERY, FILTERED_QUERY]

        failures: Dict[str, str] = {}
        last_code = None
        for statement in shapes:
            sql = f"{statement} MAXRESULTS {int(max_results)}"
            try:
                logger.info("QuickBooks SDK query: %s", sql)
                results = Invoice.query(sql, qb=client)
            except QuickbooksException as e:
                if is_auth_fault(e):
                    self._handle_auth_fault(e)
                logger.warning("QuickBooks SDK query failed (%s): %s", fault_code(e), e)
                failures[statement] = safe_exception_message(e)
                last_code = fault_code(e)
                continue
            except Exception as e:
                logger.warning("QuickBooks SDK query raised %s: %s", type(e).__name__, e)
                failures[statement] = safe_exception_message(e)
                continue
            return [_to_raw(inv) for inv in results or []]

        raise UpstreamUnavailableError("All QuickBooks SDK query shapes failed", details=failures, code=last_code)

    def get_invoice(self, invoice_id: Any) -> Dict[str, Any]:
        clean_id = normalize_invoice_id(invoice_id)
        client = self.ensure_initialized()
        logger.info("Calling QuickBooks getInvoice for ID: %s", clean_id)
        try:
            invoice = Invoice.get(clean_id, qb=client)
        except QuickbooksException as e:
            if is_auth_fault(e):
                self._handle_auth_fault(e)
            if is_not_found_fault(e):
                raise NotFoundError(f"Invoice #{invoice_id} not found. Please check the invoice number and try again.")
            logger.error("Error fetching invoice %s from QuickBooks: %s", clean_id, e)
            raise UpstreamUnavailableError(
                "Failed to fetch invoice from QuickBooks. Please check your connection.",
                details={"detail": getattr(e, "detail", None)},
                code=fault_code(e),
            )
        except Exception as e:
            if is_not_found_fault(e):
                raise NotFoundError(f"Invoice #{invoice_id} not found. Please check the invoice number and try again.")
            logger.error("Error fetching invoice %s from QuickBooks: %s", clean_id, e)
            raise UpstreamUnavailableError("Failed to fetch invoice from QuickBooks. Please check your connection.")
        if invoice is None:
            raise NotFoundError(f"Invoice #{invoice_id} not found. Please check the invoice number and try again.")
        return _to_raw(invoice)

    def get_company_info(self) -> Dict[str, Any]:
        client = self.ensure_initialized()
        try:
            info = _to_raw(CompanyInfo.get(client.company_id, qb=client))
        except QuickbooksException as e:
            if is_auth_fault(e):
                self._handle_auth_fault(e)
            raise UpstreamUnavailableError(safe_exception_message(e), code=fault_code(e))
        except Exception as e:
            logger.error("Error fetching company info from QuickBooks: %s", e)
            raise UpstreamUnavailableError(f"Failed to fetch company info from QuickBooks: {safe_exception_message(e)}")
        industry = None
        for name_value in info.get("NameValue") or []:
            if name_value.get("Name") == "IndustryType":
                industry = name_value.get("Value")
        return {
            "companyName": info.get("CompanyName"),
            "legalName": info.get("LegalName"),
            "industry": industry,
        }

    def describe(self) -> Optional[Dict[str, Any]]:
        client = self._client
        if client is None:
            return None
        auth_client = getattr(client, "auth_client", None)
        return {
            "hasAccessToken": bool(getattr(auth_client, "access_token", None)),
            "hasRealmId": bool(getattr(client, "company_id", None)),
            "shape": self.active_shape,
        }
