"""HTTP client for the stock ledger API.

The client never stores credentials itself. A `TokenProvider` supplies the
bearer token and is asked to refresh it once when the server answers 401.
"""

import logging
from typing import Any, Optional, Protocol

import requests

from stockledger.core.id_utils import generate_idempotency_key

logger = logging.getLogger("stockledger.client")

DEFAULT_TIMEOUT_SECONDS = 30


class StockLedgerAPIError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(f"{status_code} {code}: {message}")


class TokenProvider(Protocol):
    def get_token(self) -> str: ...

    def refresh(self) -> str: ...


class StaticTokenProvider:
    """Fixed token, for scripts and service accounts. Refresh is a no-op."""

    def __init__(self, token: str):
        self._token = token

    def get_token(self) -> str:
        return self._token

    def refresh(self) -> str:
        return self._token


def _raise_for_error(response: requests.Response) -> None:
    if response.status_code < 400:
        return
    code = "http_error"
    message = response.reason or "Request failed"
    details = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            code = error.get("code") or code
            message = error.get("message") or message
            details = error.get("details")
        elif body.get("detail"):
            message = str(body["detail"])
    raise StockLedgerAPIError(response.status_code, code, message, details)


class RefreshingTokenProvider:
    """Logs in with a password once, then rotates tokens through `/auth/refresh`."""

    def __init__(
        self,
        base_url: str,
        identifier: str,
        password: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.identifier = identifier
        self.password = password
        self.timeout = timeout
        self._session = session or requests.Session()
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None

    def _store(self, response: requests.Response) -> str:
        _raise_for_error(response)
        payload = response.json()
        self._access_token = payload["access_token"]
        self._refresh_token = payload["refresh_token"]
        return self._access_token

    def _login(self) -> str:
        response = self._session.post(
            f"{self.base_url}/auth/login",
            json={"identifier": self.identifier, "password": self.password},
            timeout=self.timeout,
        )
        return self._store(response)

    def get_token(self) -> str:
        if self._access_token is None:
            return self._login()
        return self._access_token

    def refresh(self) -> str:
        if self._refresh_token is None:
            return self._login()
        response = self._session.post(
            f"{self.base_url}/auth/refresh",
            json={"refresh_token": self._refresh_token},
            timeout=self.timeout,
        )
        if response.status_code == 401:
            # Refresh token expired or revoked; start over with the password.
            self._refresh_token = None
            return self._login()
        return self._store(response)


class StockLedgerClient:
    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        session: Optional[requests.Session] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timeout = timeout
        self._session = session or requests.Session()

    def _send(self, method: str, path: str, token: str, **kwargs) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        return self._session.request(
            method,
            f"{self.base_url}{path}",
            headers=headers,
            timeout=self.timeout,
            **kwargs,
        )

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = self._send(method, path, self.token_provider.get_token(), **kwargs)
        if response.status_code == 401:
            logger.info("Access token rejected for %s %s; refreshing once", method, path)
            response = self._send(method, path, self.token_provider.refresh(), **kwargs)
        _raise_for_error(response)
        return response.json()

    def create_movement(
        self,
        *,
        product_id: str,
        type: str,
        quantity: int,
        reason: str,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        body = {
            "product_id": product_id,
            "type": type,
            "quantity": quantity,
            "reason": reason,
            "reference": reference,
            "notes": notes,
        }
        # The same key rides along when _request retries after a token refresh.
        headers = {"Idempotency-Key": idempotency_key or generate_idempotency_key()}
        return self._request("POST", "/movements", json=body, headers=headers)

    def list_movements(self, **filters: Any) -> dict:
        params = {key: value for key, value in filters.items() if value is not None}
        return self._request("GET", "/movements", params=params)

    def reverse_movement(self, movement_id: str, *, notes: Optional[str] = None) -> dict:
        return self._request("POST", f"/movements/{movement_id}/reverse", json={"notes": notes})

    def get_product_balance(self, product_id: str) -> dict:
        return self._request("GET", f"/products/{product_id}/balance")

    def verify_balance(self, product_id: str) -> dict:
        return self._request("GET", f"/products/{product_id}/reconciliation")

    def verify_all_balances(self) -> dict:
        return self._request("GET", "/inventory/reconciliation")
