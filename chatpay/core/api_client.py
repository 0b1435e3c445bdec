"""
Async client for the payments backend REST API.

All calls are JSON over HTTPS with bearer-token auth. Failures are mapped
into the ChatPayError hierarchy so callers never see raw httpx exceptions.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from chatpay.core.errors import (
    BackendValidationError,
    ChatPayError,
    ComplianceError,
    SessionError,
    TransportError,
    is_compliance_rejection,
)

logger = logging.getLogger(__name__)


class PaymentsApiClient:
    """Thin wrapper over one shared httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        verify_ssl: bool = True,
        http2: bool = False,
        proxy: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize API client.

        Args:
            base_url: Backend root URL, e.g. https://api.example.com
            timeout: Request timeout in seconds
            verify_ssl: Whether to verify SSL certificates
            http2: Enable HTTP/2 (requires the h2 package)
            proxy: HTTP proxy URL (optional)
            transport: Custom transport (tests use httpx.MockTransport)
        """
        client_kwargs = {
            "base_url": base_url.rstrip("/"),
            "timeout": timeout,
            "verify": verify_ssl,
            "http2": http2,
            "headers": {
                "Accept": "application/json",
                "User-Agent": "ChatPay-Bot/1.0",
            },
        }
        if proxy:
            client_kwargs["proxy"] = proxy
        if transport is not None:
            client_kwargs["transport"] = transport

        self._client = httpx.AsyncClient(**client_kwargs)

    @classmethod
    def from_config(cls, api_config: dict) -> "PaymentsApiClient":
        return cls(
            base_url=api_config["base_url"],
            timeout=api_config.get("timeout", 30.0),
            verify_ssl=api_config.get("verify_ssl", True),
            http2=api_config.get("http2", False),
            proxy=api_config.get("proxy"),
        )

    async def aclose(self):
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        if not access_token:
            raise SessionError("No access token")

        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise map_api_error(e) from e
        except httpx.RequestError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise TransportError("Backend unavailable", detail=str(e)) from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                "Backend returned invalid JSON",
                status_code=response.status_code,
                detail=response.text[:200],
            ) from e

    async def get_balances(self, access_token: str) -> List[Dict[str, Any]]:
        """GET wallet balances: one entry per wallet with per-token balances."""
        return await self._request("GET", "/api/wallets/balances", access_token) or []

    async def get_wallets(self, access_token: str) -> List[Dict[str, Any]]:
        return await self._request("GET", "/api/wallets", access_token) or []

    async def get_default_wallet(self, access_token: str) -> Dict[str, Any]:
        return await self._request("GET", "/api/wallets/default", access_token)

    async def set_default_wallet(self, access_token: str, wallet_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST", "/api/wallets/default", access_token, json={"walletId": wallet_id}
        )

    async def get_networks(self, access_token: str) -> List[str]:
        return await self._request("GET", "/api/wallets/networks", access_token) or []

    async def get_token_balance(self, access_token: str, chain_id: str, token: str) -> Dict[str, Any]:
        """GET the balance of one token on one chain of the default wallet."""
        path = f"/api/wallets/{quote(chain_id, safe='')}/tokens/{quote(token, safe='')}/balance"
        return await self._request("GET", path, access_token)

    async def request_offramp_quote(self, access_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/quotes/offramp", access_token, json=payload)

    async def send_transfer(self, access_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/transfers/send", access_token, json=payload)

    async def withdraw_to_wallet(self, access_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/transfers/wallet-withdraw", access_token, json=payload)

    async def create_offramp(self, access_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/transfers/offramp", access_token, json=payload)

    async def send_batch(self, access_token: str, requests: List[Dict[str, Any]]) -> Dict[str, Any]:
        """POST a batch: ``requests`` is a list of ``{requestId, request}``."""
        return await self._request(
            "POST", "/api/transfers/send-batch", access_token, json={"requests": requests}
        )

    async def list_transfers(
        self,
        access_token: str,
        page: int = 1,
        limit: int = 5,
        types: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if types:
            params["type"] = types
        return await self._request("GET", "/api/transfers", access_token, params=params)


def map_api_error(error: httpx.HTTPStatusError) -> ChatPayError:
    """
    Translate a non-2xx backend response into a ChatPayError.

    - 401: SessionError
    - KYC/KYB rejection text: ComplianceError
    - 400/422 with field-structured message: BackendValidationError
    - anything else: TransportError with the raw text for diagnostics
    """
    response = error.response
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = None

    message = body.get("message") if isinstance(body, dict) else None
    detail = body.get("error") if isinstance(body, dict) else None
    raw_text = response.text[:500]

    logger.warning(f"Backend error {status} on {error.request.method} {error.request.url.path}: {raw_text}")

    if status == 401:
        return SessionError("Access token rejected")

    if is_compliance_rejection(_flatten(message)) or is_compliance_rejection(detail):
        return ComplianceError(_flatten(message) or str(detail))

    if status in (400, 422):
        field_errors = extract_field_errors(message)
        if field_errors:
            return BackendValidationError(field_errors, message=str(detail or "Validation failed"))

    return TransportError(
        _flatten(message) or f"Backend error {status}",
        status_code=status,
        detail=raw_text,
    )


def extract_field_errors(message: Any) -> Dict[str, List[str]]:
    """
    Pull ``{field: [messages]}`` out of the backend's validation payloads.

    Accepted shapes:
    - ``[{"property": "email", "constraints": {"isEmail": "email must be an email"}}]``
    - ``{"email": "must be an email"}`` or ``{"email": ["..."]}``
    """
    errors: Dict[str, List[str]] = {}

    if isinstance(message, list):
        for entry in message:
            if isinstance(entry, dict) and entry.get("property"):
                constraints = entry.get("constraints") or {}
                texts = [str(t) for t in constraints.values()] or ["is invalid"]
                errors.setdefault(str(entry["property"]), []).extend(texts)
            elif isinstance(entry, str):
                errors.setdefault("request", []).append(entry)
    elif isinstance(message, dict):
        for field_name, texts in message.items():
            if isinstance(texts, list):
                errors[str(field_name)] = [str(t) for t in texts]
            else:
                errors[str(field_name)] = [str(texts)]

    return errors


def _flatten(message: Any) -> str:
    if message is None:
        return ""
    if isinstance(message, str):
        return message
    if isinstance(message, list):
        return "; ".join(_flatten(m) for m in message)
    if isinstance(message, dict):
        return "; ".join(f"{k}: {_flatten(v)}" for k, v in message.items())
    return str(message)
