# cloudflare.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from errors import ControllerError, TransientError, ValidationError, from_status
from metrics import METRICS

logger = logging.getLogger(__name__)

CF_API_BASE = "https://api.cloudflare.com/client/v4"


class CloudflareAPIError(ControllerError):
    """Raised when the Cloudflare API answers with success=false."""

    def __init__(self, message: str, errors: Optional[list] = None, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.errors = errors or []


class CloudflareClient:
    """Just the tunnel-configuration calls the controller needs.

    GET/PUT  /accounts/{account}/cfd_tunnel/{tunnel}/configurations
    GET      /accounts
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = CF_API_BASE,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        metrics=None,
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.metrics = metrics or METRICS
        self._http = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "CloudflareClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def _cf_request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(method, url, headers=self._get_headers(), json=json, params=params)
        except httpx.TimeoutException as e:
            self.metrics.record_api_call(operation, "timeout")
            raise TransientError(f"cloudflare {operation}: timed out") from e
        except httpx.TransportError as e:
            self.metrics.record_api_call(operation, "network")
            raise TransientError(f"cloudflare {operation}: {e}") from e

        self.metrics.record_api_call(operation, str(response.status_code))

        data: Dict[str, Any] = {}
        if response.content and response.content.strip():
            try:
                data = response.json()
            except ValueError:
                data = {}

        if response.is_error:
            messages = [e.get("message", str(e)) for e in data.get("errors", []) or []]
            detail = ", ".join(messages) or response.reason_phrase
            raise from_status(response.status_code, f"cloudflare {operation}: HTTP {response.status_code}: {detail}")

        if not data.get("success", False):
            errors = data.get("errors", []) or []
            messages = [e.get("message", str(e)) for e in errors]
            raise CloudflareAPIError(
                f"cloudflare {operation}: {', '.join(messages) or 'request failed'}",
                errors=errors,
                status_code=response.status_code,
            )
        return data

    def get_configuration(self, account_id: str, tunnel_id: str) -> Dict[str, Any]:
        """Return the tunnel's `config` object (may be empty for a fresh tunnel)."""
        data = self._cf_request(
            "get_configuration", "GET", f"/accounts/{account_id}/cfd_tunnel/{tunnel_id}/configurations"
        )
        result = data.get("result") or {}
        return result.get("config") or {}

    def get_ingress(self, account_id: str, tunnel_id: str) -> List[dict]:
        return list(self.get_configuration(account_id, tunnel_id).get("ingress") or [])

    def update_configuration(self, account_id: str, tunnel_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        data = self._cf_request(
            "update_configuration",
            "PUT",
            f"/accounts/{account_id}/cfd_tunnel/{tunnel_id}/configurations",
            json={"config": config},
        )
        return (data.get("result") or {}).get("config") or {}

    def list_accounts(self) -> List[dict]:
        data = self._cf_request("list_accounts", "GET", "/accounts", params={"per_page": 50})
        result = data.get("result")
        if not isinstance(result, list):
            raise ValidationError("cloudflare list_accounts: unexpected response shape")
        return result
