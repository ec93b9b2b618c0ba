import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.contracts import ProvisionProgress
from core.errors import OperatorAPIError, OperatorAuthError

logger = logging.getLogger("OperatorClient")

AUTH_EXPIRED_MARKERS = ("expired", "invalid token", "unauthorized")
TOKEN_EXPIRY_MARGIN_SEC = 60


class _TransientStatus(Exception):
    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body[:120]}")


_TRANSIENT = (aiohttp.ClientConnectionError, asyncio.TimeoutError, _TransientStatus)


def is_auth_expired(status: int, body: str) -> bool:
    if status == 401:
        return True
    if status < 400:
        return False
    low = (body or "").lower()
    return any(m in low for m in AUTH_EXPIRED_MARKERS)


class OperatorClient:
    """
    Thin async client for the operator HTTP API.

    Reads (bot listing, provision progress) are unauthenticated but carry the
    session token when one is cached. Writes go through the challenge/session
    flow: the challenge message is signed with OPERATOR_PRIVATE_KEY and
    exchanged for a bearer token. A stale token triggers exactly one
    re-authentication and retry.
    """

    def __init__(self, config, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger("OperatorClient")
        self.base_url = (getattr(config, "OPERATOR_API_URL", "") or "").rstrip("/")
        self.timeout = float(getattr(config, "HTTP_TIMEOUT_SEC", 15.0))
        self.bot_limit = int(getattr(config, "OPERATOR_BOT_LIMIT", 200))
        key = getattr(config, "OPERATOR_PRIVATE_KEY", "") or ""
        self._account = Account.from_key(key) if key else None
        self.session: Optional[aiohttp.ClientSession] = None
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._auth_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    async def start(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self.logger.debug("aiohttp ClientSession created for %s", self.base_url or "<unset>")

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    # ---------------- token cache ----------------

    def _token_valid(self) -> bool:
        return bool(self._token) and (self._token_expires_at - time.time()) >= TOKEN_EXPIRY_MARGIN_SEC

    def _clear_token(self):
        self._token = None
        self._token_expires_at = 0.0

    async def authenticate(self, force: bool = False) -> str:
        async with self._auth_lock:
            if not force and self._token_valid():
                return self._token
            self._clear_token()
            if self._account is None:
                raise OperatorAuthError("No operator signer configured (OPERATOR_PRIVATE_KEY)")
            try:
                status, body = await self._send("POST", "/api/auth/challenge")
                if status >= 400:
                    raise OperatorAuthError(f"Challenge failed: {status}")
                challenge = json.loads(body)
                signed = self._account.sign_message(encode_defunct(text=challenge["message"]))
                payload = {"nonce": challenge["nonce"], "signature": "0x" + bytes(signed.signature).hex()}
                status, body = await self._send("POST", "/api/auth/session", json_body=payload)
                if status >= 400:
                    raise OperatorAuthError(body[:200] or f"Session exchange failed: {status}")
                session = json.loads(body)
            except OperatorAuthError:
                raise
            except (OperatorAPIError, ValueError, KeyError) as e:
                raise OperatorAuthError(f"Authentication failed: {e}") from e
            self._token = session["token"]
            self._token_expires_at = float(session.get("expires_at") or 0)
            self.logger.info("🔑 Operator session established for %s", self.signer_address)
            return self._token

    # ---------------- transport ----------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        retry=retry_if_exception_type(_TRANSIENT),
        reraise=True,
    )
    async def _raw(self, method: str, url: str, params=None, json_body=None, headers=None) -> Tuple[int, str]:
        async with self.session.request(method, url, params=params, json=json_body, headers=headers) as resp:
            text = await resp.text()
            if resp.status >= 500:
                raise _TransientStatus(resp.status, text)
            return resp.status, text

    async def _send(self, method: str, path: str, params=None, json_body=None) -> Tuple[int, str]:
        if not self.enabled:
            raise OperatorAPIError("operator API not configured")
        if self.session is None or self.session.closed:
            await self.start()
        headers = {"Authorization": f"Bearer {self._token}"} if self._token_valid() else None
        try:
            return await self._raw(method, f"{self.base_url}{path}", params, json_body, headers)
        except _TransientStatus as e:
            raise OperatorAPIError(e.body[:200], status=e.status) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OperatorAPIError(f"{method} {path}: {e!r}") from e

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        auth: bool = False,
        allow_404: bool = False,
    ) -> Any:
        if auth:
            await self.authenticate()
        status, body = await self._send(method, path, params, json_body)

        if is_auth_expired(status, body) and (auth or self._account is not None):
            self.logger.info("Operator token rejected on %s %s; re-authenticating once.", method, path)
            await self.authenticate(force=True)
            status, body = await self._send(method, path, params, json_body)
            if is_auth_expired(status, body):
                self._clear_token()
                raise OperatorAuthError(f"Operator rejected session after re-authentication ({status})")

        if status == 404 and allow_404:
            return None
        if status >= 400:
            raise OperatorAPIError(body[:200], status=status)
        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError as e:
            raise OperatorAPIError(f"invalid JSON from {path}", status=status) from e

    # ---------------- API ----------------

    async def list_bots(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/bots", params={"limit": str(limit or self.bot_limit)})
        bots = (data or {}).get("bots") if isinstance(data, dict) else None
        return [b for b in (bots or []) if isinstance(b, dict)]

    async def find_bots(self, call_id: int, service_id: int) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET", "/api/bots", params={"call_id": str(call_id), "service_id": str(service_id)}
        )
        bots = (data or {}).get("bots") if isinstance(data, dict) else None
        return [b for b in (bots or []) if isinstance(b, dict)]

    async def get_bot(self, bot_id: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/api/bots/{bot_id}", allow_404=True)

    async def get_provision_progress(self, call_id: int) -> Optional[ProvisionProgress]:
        data = await self._request("GET", f"/api/provisions/{call_id}", allow_404=True)
        if not isinstance(data, dict):
            return None
        return ProvisionProgress.from_payload(data)

    async def get_activation_progress(self, bot_id: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/api/bots/{bot_id}/activation-progress", allow_404=True)

    async def submit_secrets(self, bot_id: str, env_json: Dict[str, str]) -> Dict[str, Any]:
        data = await self._request(
            "POST", f"/api/bots/{bot_id}/secrets", json_body={"env_json": env_json}, auth=True
        )
        return data if isinstance(data, dict) else {}
