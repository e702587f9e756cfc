import statistics
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from errors import AuthenticationStateError, MissingParameterError, NotFoundError, QuickBooksError, UnknownToolError
from invoice_fetch import InvoiceFetchOrchestrator, sync_credential_cookies
from models import NormalizedInvoice
from utils import get_services, logger, safe_exception_message

ANALYSIS_TYPES = ["trends", "customer", "amounts"]
TIMEFRAMES = {"week": 7, "month": 31, "year": 366}

GET_INVOICE_SUGGESTIONS = ["Try a different invoice number", "Check if QuickBooks is connected"]
RETRY_SUGGESTIONS = ["Try again later", "Check your QuickBooks connection"]

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "getInvoice",
        "description": "Get details of a specific invoice by ID or invoice number",
        "parameters": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "The ID or document number of the invoice (e.g. 42, #42, INV-42)"},
            },
            "required": ["id"],
        },
    },
    {
        "name": "listInvoices",
        "description": "List all invoices",
        "parameters": {"type": "object", "properties": {}},
    },
    {
        "name": "summarizeInvoice",
        "description": "Get a natural language summary of an invoice",
        "parameters": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "The ID or document number of the invoice to summarize"},
            },
            "required": ["id"],
        },
    },
    {
        "name": "analyzeInvoices",
        "description": "Perform analysis of invoices: monthly trends, totals per customer, or amount statistics",
        "parameters": {
            "type": "object",
            "properties": {
                "analysisType": {"type": "string", "enum": ANALYSIS_TYPES, "description": "Type of analysis to perform"},
                "timeframe": {"type": "string", "enum": list(TIMEFRAMES), "description": "Only include invoices from the last week, month or year"},
            },
            "required": ["analysisType"],
        },
    },
]

_KNOWN_TOOL_NAMES: Set[str] = {tool["name"] for tool in TOOL_DEFINITIONS}

_TOOL_NAME_ALIASES = {
    "get_invoice": "getInvoice",
    "list_invoices": "listInvoices",
    "summarize_invoice": "summarizeInvoice",
    "analyze_invoices": "analyzeInvoices",
}


def _coerce_params(params: Any) -> Dict[str, Any]:
    """Tool params arrive either as an object or as a bare invoice id."""
    if params is None:
        return {}
    if isinstance(params, Mapping):
        return dict(params)
    if isinstance(params, (str, int)) and not isinstance(params, bool):
        return {"id": str(params)}
    return {}

def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value)[:10]).date()
    except ValueError:
        return None

def format_currency(amount: Optional[float]) -> str:
    return f"${(amount or 0.0):,.2f}"

def format_date(value: Optional[str]) -> str:
    if not value:
        return "Unknown"
    parsed = _parse_date(value)
    return parsed.isoformat() if parsed else str(value)

def _money(value: float) -> float:
    return round(value, 2)


class ToolDispatcher:
    """Runs the chat tools against the fetch orchestrator. Failures come back as `{error}` bodies."""

    def __init__(self, orchestrator: InvoiceFetchOrchestrator, today: Callable[[], date] = date.today):
        self.orchestrator = orchestrator
        self.today = today
        self._handlers = {
            "getInvoice": self.get_invoice,
            "listInvoices": self.list_invoices,
            "summarizeInvoice": self.summarize_invoice,
            "analyzeInvoices": self.analyze_invoices,
        }

    @staticmethod
    def resolve_tool_name(name: Any) -> Optional[str]:
        if not isinstance(name, str):
            return None
        name = _TOOL_NAME_ALIASES.get(name, name)
        return name if name in _KNOWN_TOOL_NAMES else None

    async def dispatch(self, tool: Any, params: Any = None, cookies: Optional[Mapping[str, str]] = None):
        name = self.resolve_tool_name(tool)
        if name is None:
            logger.info("Tool not found: %s", tool)
            raise UnknownToolError(f"Tool not found: {tool}")
        logger.info("Executing tool: %s", name)
        result = await self._handlers[name](_coerce_params(params), cookies)
        logger.info("Tool execution result for %s: %s", name, "failure" if isinstance(result, dict) and "error" in result else "success")
        return result

    async def _lookup(self, invoice_id: Any, cookies) -> NormalizedInvoice | Dict[str, Any]:
        try:
            return await self.orchestrator.get_invoice_by_id(invoice_id, cookies)
        except NotFoundError as e:
            return {
                "error": e.message,
                "errors": e.details.get("errors", []),
                "suggestedActions": GET_INVOICE_SUGGESTIONS,
            }
        except MissingParameterError as e:
            return {"error": e.message, "suggestedActions": GET_INVOICE_SUGGESTIONS}
        except AuthenticationStateError as e:
            return {"error": e.message, "suggestedActions": ["Check if QuickBooks is connected"]}
        except Exception as e:
            logger.exception("Error in getInvoice(%s)", invoice_id)
            detail = e.message if isinstance(e, QuickBooksError) else safe_exception_message(e)
            return {"error": f"Failed to fetch invoice {invoice_id}: {detail}", "suggestedActions": RETRY_SUGGESTIONS}

    async def _all_invoices(self, cookies) -> List[NormalizedInvoice] | Dict[str, Any]:
        try:
            result = await self.orchestrator.fetch_invoices(cookies)
        except AuthenticationStateError as e:
            return {"error": e.message, "invoices": []}
        except Exception as e:
            logger.exception("Error fetching invoices")
            detail = e.message if isinstance(e, QuickBooksError) else safe_exception_message(e)
            return {"error": f"Failed to fetch invoices: {detail}", "invoices": []}

        if result.invoices:
            return result.invoices
        body: Dict[str, Any] = {"error": "No invoices found in your QuickBooks account", "invoices": []}
        if result.exhausted:
            body["errorDetails"] = dict(result.failures)
        return body

    # ---- tools ----

    async def get_invoice(self, params: Dict[str, Any], cookies=None):
        invoice = await self._lookup(params.get("id"), cookies)
        return invoice.to_dict() if isinstance(invoice, NormalizedInvoice) else invoice

    async def list_invoices(self, params: Dict[str, Any], cookies=None):
        invoices = await self._all_invoices(cookies)
        if isinstance(invoices, dict):
            return invoices
        return [inv.to_dict() for inv in invoices]

    async def summarize_invoice(self, params: Dict[str, Any], cookies=None):
        invoice = await self._lookup(params.get("id"), cookies)
        if isinstance(invoice, dict):
            return invoice
        return {
            "summary": f"Invoice #{invoice.document_number or invoice.id} for {invoice.customer_name}",
            "details": {
                "customer": invoice.customer_name,
                "amount": format_currency(invoice.total_amount),
                "date": format_date(invoice.transaction_date),
                "dueDate": format_date(invoice.due_date),
                "balance": format_currency(invoice.balance),
                "status": invoice.status.value,
                "memo": invoice.memo or "No memo available",
            },
        }

    async def analyze_invoices(self, params: Dict[str, Any], cookies=None):
        analysis_type = params.get("analysisType") or "trends"
        timeframe = params.get("timeframe")
        if analysis_type not in ANALYSIS_TYPES:
            return {"error": f"Unsupported analysis type: {analysis_type}", "supported": ANALYSIS_TYPES}
        if timeframe is not None and timeframe not in TIMEFRAMES:
            return {"error": f"Unsupported timeframe: {timeframe}", "supported": list(TIMEFRAMES)}

        invoices = await self._all_invoices(cookies)
        if isinstance(invoices, dict):
            return invoices

        if timeframe:
            cutoff = self.today() - timedelta(days=TIMEFRAMES[timeframe])
            invoices = [
                inv for inv in invoices
                if (_parse_date(inv.transaction_date) or date.min) >= cutoff
            ]

        total = sum(inv.total_amount for inv in invoices)
        status_breakdown: Dict[str, int] = defaultdict(int)
        for inv in invoices:
            status_breakdown[inv.status.value] += 1

        analysis: Dict[str, Any] = {
            "analysisType": analysis_type,
            "timeframe": timeframe,
            "invoiceCount": len(invoices),
            "totalAmount": _money(total),
            "outstandingBalance": _money(sum(inv.balance for inv in invoices)),
            "statusBreakdown": dict(status_breakdown),
            "result": f"Analyzed {len(invoices)} invoices",
            "summary": f"Found {len(invoices)} invoices with a total value of {format_currency(total)}",
        }

        if analysis_type == "trends":
            analysis["byMonth"] = _monthly_totals(invoices)
        elif analysis_type == "customer":
            analysis["byCustomer"] = _customer_totals(invoices)
        else:
            analysis["amounts"] = _amount_statistics(invoices)
        return analysis


def _monthly_totals(invoices: List[NormalizedInvoice]) -> List[Dict[str, Any]]:
    buckets: Dict[str, List[float]] = defaultdict(list)
    for inv in invoices:
        txn_date = _parse_date(inv.transaction_date)
        buckets[txn_date.strftime("%Y-%m") if txn_date else "Unknown"].append(inv.total_amount)
    return [
        {"month": month, "invoiceCount": len(amounts), "totalAmount": _money(sum(amounts))}
        for month, amounts in sorted(buckets.items())
    ]

def _customer_totals(invoices: List[NormalizedInvoice]) -> List[Dict[str, Any]]:
    buckets: Dict[str, Dict[str, Any]] = {}
    for inv in invoices:
        bucket = buckets.setdefault(inv.customer_name, {"customer": inv.customer_name, "invoiceCount": 0, "totalAmount": 0.0, "outstandingBalance": 0.0})
        bucket["invoiceCount"] += 1
        bucket["totalAmount"] += inv.total_amount
        bucket["outstandingBalance"] += inv.balance
    rows = sorted(buckets.values(), key=lambda b: (-b["totalAmount"], b["customer"]))
    for row in rows:
        row["totalAmount"] = _money(row["totalAmount"])
        row["outstandingBalance"] = _money(row["outstandingBalance"])
    return rows

def _amount_statistics(invoices: List[NormalizedInvoice]) -> Dict[str, Optional[float]]:
    amounts = [inv.total_amount for inv in invoices]
    if not amounts:
        return {"min": None, "max": None, "average": None, "median": None}
    return {
        "min": _money(min(amounts)),
        "max": _money(max(amounts)),
        "average": _money(statistics.mean(amounts)),
        "median": _money(statistics.median(amounts)),
    }


# ---- Router Setup ----

router = APIRouter()

@router.post("/chat/tool")
async def chat_tool(request: Request, services=Depends(get_services)):
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content={"error": "Request body must be a JSON object"})

    tool = body.get("tool")
    logger.info("Received tool request: %s", tool)
    try:
        result = await services.dispatcher.dispatch(tool, body.get("params"), request.cookies)
    except UnknownToolError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.message})
    except Exception as e:
        logger.exception("Error processing tool request")
        return JSONResponse(status_code=500, content={"error": f"Error executing tool: {safe_exception_message(e)}"})

    response = JSONResponse(content=result)
    sync_credential_cookies(request, response, services.store)
    return response

@router.get("/chat/tools")
def list_tools():
    return {"tools": TOOL_DEFINITIONS}
