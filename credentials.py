import os
import time
from typing import Callable, Dict, List, Mapping, MutableMapping, Optional

from cryptography.fernet import Fernet, InvalidToken
from starlette.responses import Response

from models import CredentialRecord
from utils import logger

TOKEN_KEY = "qb_token"
REALM_ID_KEY = "qb_realm_id"
REFRESH_TOKEN_KEY = "qb_refresh_token"
TOKEN_EXPIRY_KEY = "qb_token_expiry"
CREDENTIAL_KEYS = (TOKEN_KEY, REALM_ID_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY)

DEFAULT_COOKIE_MAX_AGE = 30 * 24 * 60 * 60

APP_ENV = os.environ.get("APP_ENV", "development")

# Encryption setup
TOKEN_ENC_KEY = os.environ.get("TOKEN_ENC_KEY")

if not TOKEN_ENC_KEY:
    logger.warning("TOKEN_ENC_KEY not set; credential cookies will not be encrypted!")
fernet = Fernet(TOKEN_ENC_KEY) if TOKEN_ENC_KEY else None

def encrypt_value(value: str) -> str:
    if not fernet:
        return value
    return fernet.encrypt(value.encode("utf-8")).decode("ascii")

def decrypt_value(encrypted: str) -> str:
    if not fernet:
        return encrypted
    try:
        return fernet.decrypt(encrypted.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError):
        raise ValueError("Invalid encryption key or corrupted credential cookie")

def _parse_expiry(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable token expiry %r", value)
        return None

def _record_from_mapping(values: Mapping[str, Optional[str]]) -> CredentialRecord:
    return CredentialRecord(
        access_token=values.get(TOKEN_KEY) or None,
        realm_id=values.get(REALM_ID_KEY) or None,
        refresh_token=values.get(REFRESH_TOKEN_KEY) or None,
        expiry=_parse_expiry(values.get(TOKEN_EXPIRY_KEY)),
    )


class CredentialStore:
    """
    Process-wide holder of the QuickBooks credential record.

    Memory is authoritative. An optional `mirror` (any string mapping, for
    example a client-side cache) receives a copy of every mutation; request
    cookies are only ever read, to re-hydrate memory after a restart. Writes
    are last-write-wins without locking.
    """

    def __init__(self, mirror: Optional[MutableMapping[str, str]] = None):
        self._record = CredentialRecord()
        self.mirror = mirror
        self.initialized = False
        self._clear_listeners: List[Callable[[], None]] = []

    @property
    def record(self) -> CredentialRecord:
        return self._record

    def add_clear_listener(self, callback: Callable[[], None]) -> None:
        self._clear_listeners.append(callback)

    def mark_initialized(self, value: bool = True) -> None:
        self.initialized = value

    def put(
        self,
        access_token: str,
        realm_id: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[float] = None,
    ) -> CredentialRecord:
        record = self._record
        if access_token:
            record.access_token = access_token
        if realm_id:
            record.realm_id = realm_id
        if refresh_token:
            record.refresh_token = refresh_token
        if expires_in:
            record.expiry = time.time() + float(expires_in)
        logger.info(
            "Stored QuickBooks credentials (refresh_token=%s, expiry=%s)",
            bool(record.refresh_token),
            record.expiry,
        )
        self._write_mirror(record)
        return record

    def get(self, cookies: Optional[Mapping[str, str]] = None) -> Optional[CredentialRecord]:
        if self._record.usable:
            return self._record

        hydrated = self._read_mirror()
        source = "mirror"
        if not hydrated.usable and cookies:
            hydrated = read_credential_cookies(cookies)
            source = "cookies"
        if not hydrated.usable:
            logger.debug("No usable QuickBooks credentials in memory, mirror or cookies")
            return None

        logger.info("Hydrated QuickBooks credentials from %s", source)
        self._record = hydrated
        return self._record

    def clear(self) -> None:
        logger.info("Clearing all QuickBooks credentials")
        self._record = CredentialRecord()
        self.initialized = False
        if self.mirror is not None:
            for key in CREDENTIAL_KEYS:
                try:
                    self.mirror.pop(key, None)
                except Exception as e:
                    logger.error("Failed to clear %s from credential mirror: %s", key, e)
        for callback in self._clear_listeners:
            try:
                callback()
            except Exception:
                logger.exception("Credential clear listener failed")

    def snapshot(self) -> Dict[str, object]:
        record = self._record
        return {
            "hasAccessToken": bool(record.access_token),
            "hasRealmId": bool(record.realm_id),
            "hasRefreshToken": bool(record.refresh_token),
            "tokenExpiry": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.expiry)) if record.expiry else None,
            "expired": record.is_expired(),
            "initialized": self.initialized,
        }

    def _write_mirror(self, record: CredentialRecord) -> None:
        if self.mirror is None:
            return
        try:
            self.mirror[TOKEN_KEY] = record.access_token or ""
            self.mirror[REALM_ID_KEY] = record.realm_id or ""
            if record.refresh_token:
                self.mirror[REFRESH_TOKEN_KEY] = record.refresh_token
            if record.expiry:
                self.mirror[TOKEN_EXPIRY_KEY] = str(record.expiry)
        except Exception as e:
            # memory already holds the record; the mirror is best effort
            logger.error("Failed to store credentials in mirror: %s", e)

    def _read_mirror(self) -> CredentialRecord:
        if self.mirror is None:
            return CredentialRecord()
        try:
            return _record_from_mapping(self.mirror)
        except Exception as e:
            logger.error("Failed to read credentials from mirror: %s", e)
            return CredentialRecord()


# ---- Cookie representation ----

def read_credential_cookies(cookies: Mapping[str, str]) -> CredentialRecord:
    values: Dict[str, Optional[str]] = {}
    for key in CREDENTIAL_KEYS:
        raw = cookies.get(key)
        if not raw:
            continue
        try:
            values[key] = decrypt_value(raw)
        except ValueError as e:
            logger.warning("Ignoring credential cookie %s: %s", key, e)
    return _record_from_mapping(values)

def has_credential_cookies(cookies: Mapping[str, str]) -> Dict[str, bool]:
    return {
        "hasAccessToken": bool(cookies.get(TOKEN_KEY)),
        "hasRealmId": bool(cookies.get(REALM_ID_KEY)),
    }

def _set_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key=name,
        value=encrypt_value(value),
        max_age=max_age,
        path="/",
        httponly=True,
        secure=APP_ENV == "production",
        samesite="lax",
    )

def set_credential_cookies(response: Response, record: CredentialRecord, expires_in: Optional[float] = None) -> None:
    """Persist the credential record on the client as httpOnly cookies."""
    if not record.usable:
        return
    max_age = int(expires_in) if expires_in else DEFAULT_COOKIE_MAX_AGE
    _set_cookie(response, TOKEN_KEY, record.access_token, max_age)
    _set_cookie(response, REALM_ID_KEY, record.realm_id, max_age)
    if record.refresh_token:
        _set_cookie(response, REFRESH_TOKEN_KEY, record.refresh_token, max_age)
    if record.expiry:
        _set_cookie(response, TOKEN_EXPIRY_KEY, str(record.expiry), max_age)

def clear_credential_cookies(response: Response) -> None:
    for key in CREDENTIAL_KEYS:
        response.delete_cookie(key, path="/")
