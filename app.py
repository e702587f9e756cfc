import asyncio
import os
import secrets
import time
from typing import Optional
from urllib.parse import urlencode

import uvicorn
from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware

# Load environment variables
load_dotenv()

from utils import SERVICE_NAME, SERVICE_VERSION, get_services, logger, mask_secret, safe_exception_message
from credentials import APP_ENV, DEFAULT_COOKIE_MAX_AGE, clear_credential_cookies, has_credential_cookies, set_credential_cookies
from errors import QuickBooksError
from qbo_oauth import identity_claims
from services import Services
import invoice_fetch
import invoice_tools

SESSION_SECRET = os.environ.get("SESSION_SECRET") or os.environ.get("TOKEN_ENC_KEY") or secrets.token_urlsafe(32)


# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        logger.info(f"Incoming request: {request.method} {request.url.path}")
        try:
            response = await call_next(request)
            logger.info(f"Request completed: {response.status_code}")
            return response
        except Exception as e:
            logger.error(f"Request failed: {e}")
            raise


def _auth_redirect(status: str, message: Optional[str] = None) -> RedirectResponse:
    params = {"auth": status}
    if message:
        params["message"] = message
    return RedirectResponse(url=f"/?{urlencode(params)}", status_code=302)


# ---- Router Setup ----

router = APIRouter()

@router.get("/")
async def root():
    """Service index."""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "endpoints": [
            "/auth/url",
            "/auth/callback",
            "/auth/status",
            "/auth/check",
            "/auth/disconnect",
            "/invoices",
            "/chat/tool",
            "/chat/tools",
        ],
    }

# Health Check
@router.get("/healthz")
@router.get("/health")
def health_check():
    return {"status": "ok"}

@router.get("/auth/url")
async def auth_url(request: Request, services=Depends(get_services)):
    """Build the Intuit consent URL the browser should be sent to."""
    oauth = services.oauth
    state = secrets.token_urlsafe(16)
    try:
        url = oauth.build_authorization_url(state)
    except Exception as e:
        logger.error("Failed to generate QuickBooks authorization URL: %s", safe_exception_message(e))
        return JSONResponse(
            status_code=500,
            content={
                "error": "Failed to generate QuickBooks authorization URL",
                "details": e.message if isinstance(e, QuickBooksError) else safe_exception_message(e),
                "help": "Check QUICKBOOKS_CLIENT_ID, QUICKBOOKS_CLIENT_SECRET and BASE_URL in your environment",
                "required": oauth.required_configuration(),
            },
        )
    # Store state for CSRF protection
    request.session["oauth_state"] = state
    return {"authUrl": url, "callbackUrl": oauth.redirect_uri}

@router.get("/auth/callback")
async def auth_callback(request: Request, state: str = None, error: str = None, services=Depends(get_services)):
    """Handle the Intuit redirect: exchange the code, store the credentials, set the cookies."""
    if error:
        logger.error("QuickBooks authorization was declined: %s", error)
        return _auth_redirect("error", request.query_params.get("error_description") or error)

    stored_state = request.session.pop("oauth_state", None)
    if stored_state and stored_state != state:
        logger.error("QuickBooks callback state mismatch")
        return _auth_redirect("error", "Invalid state parameter")

    loop = asyncio.get_running_loop()
    try:
        grant = await loop.run_in_executor(None, services.oauth.exchange_code, str(request.url))
    except Exception as e:
        message = e.message if isinstance(e, QuickBooksError) else safe_exception_message(e)
        logger.error("QuickBooks callback failed: %s", message)
        return _auth_redirect("error", message)

    record = services.store.put(grant.access_token, grant.realm_id, grant.refresh_token, grant.expires_in)
    if not services.adapter.initialize(record.access_token, record.realm_id, record.refresh_token):
        logger.warning("QuickBooks client initialization after callback failed: %s", services.adapter.last_init_failures)
    services.identity = identity_claims(grant.id_token)

    response = _auth_redirect("success")
    set_credential_cookies(response, record)
    logger.info("QuickBooks connected for realm %s", mask_secret(record.realm_id))
    return response

@router.get("/auth/status")
async def auth_status(request: Request, services=Depends(get_services)):
    cookie_check = has_credential_cookies(request.cookies)
    record = services.store.get(request.cookies)
    if record is None:
        return {
            "authenticated": False,
            "message": "QuickBooks authentication required - no auth tokens found",
            "cookieCheck": cookie_check,
        }
    try:
        services.adapter.ensure_initialized(request.cookies)
    except QuickBooksError as e:
        return {
            "authenticated": False,
            "message": "QuickBooks client is not initialized",
            "error": e.message,
            "cookieCheck": cookie_check,
        }
    return {
        "authenticated": True,
        "message": "QuickBooks client is initialized and ready",
        "cookieCheck": cookie_check,
        "clientInfo": services.adapter.describe(),
        "tokenStatus": services.store.snapshot(),
        "identity": services.identity or None,
    }

@router.post("/auth/status")
async def manual_initialize(request: Request, services=Depends(get_services)):
    """Seed a diagnostic credential record. Disabled in production."""
    if APP_ENV == "production":
        return JSONResponse(status_code=403, content={"success": False, "error": "Manual initialization is disabled in production"})
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    stamp = int(time.time() * 1000)
    access_token = body.get("accessToken") or f"MANUAL_TOKEN_{stamp}"
    realm_id = body.get("realmId") or f"MANUAL_REALM_{stamp}"
    logger.warning("Manual QuickBooks initialization requested (realm=%s)", mask_secret(realm_id))

    record = services.store.put(access_token, realm_id, body.get("refreshToken"), DEFAULT_COOKIE_MAX_AGE)
    success = services.adapter.initialize(record.access_token, record.realm_id, record.refresh_token)
    return {
        "success": success,
        "message": "Manual initialization successful" if success else "Manual initialization failed",
    }

@router.get("/auth/check")
async def auth_check(request: Request, services=Depends(get_services)):
    """Initialization state plus a live CompanyInfo call."""
    initialized = False
    init_error = None
    try:
        services.adapter.ensure_initialized(request.cookies)
        initialized = True
    except QuickBooksError as e:
        init_error = e.message

    api_test = None
    if initialized:
        loop = asyncio.get_running_loop()
        try:
            company = await loop.run_in_executor(None, services.adapter.get_company_info)
            api_test = {"success": True, **company}
        except QuickBooksError as e:
            logger.error("QuickBooks API test failed: %s", e.message)
            api_test = {"success": False, "error": e.message, "code": getattr(e, "code", None)}

    return {
        "success": True,
        "initialized": initialized,
        "initError": init_error,
        "tokenStatus": services.store.snapshot(),
        "message": "QuickBooks client is initialized and ready" if initialized else "QuickBooks client is not initialized",
        "apiTest": api_test,
    }

@router.post("/auth/disconnect")
async def auth_disconnect(request: Request, services=Depends(get_services)):
    """Revoke (best effort) and forget the QuickBooks connection."""
    record = services.store.get(request.cookies)
    revoked = False
    if record is not None:
        loop = asyncio.get_running_loop()
        revoked = await loop.run_in_executor(None, services.oauth.revoke, record.refresh_token or record.access_token)
    services.store.clear()
    services.identity = {}

    response = JSONResponse(content={"success": True, "revoked": revoked})
    clear_credential_cookies(response)
    return response


def create_app(services: Optional[Services] = None) -> FastAPI:
    # Initialize FastAPI app
    app = FastAPI(title="QuickBooks Invoice Assistant", version=SERVICE_VERSION)
    app.state.services = services or Services.from_env()

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Session middleware for OAuth flow
    app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)
    app.add_middleware(RequestLoggingMiddleware)

    # Mount Routers
    app.include_router(router, tags=["auth"])
    app.include_router(invoice_fetch.router, tags=["invoices"])
    app.include_router(invoice_tools.router, tags=["chat"])
    return app


app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
