"""
OpenRouter credential-issuing client.

Talks to the key provisioning API with a provisioning key. Transport
errors are translated at this boundary: timeouts, 429 and 5xx become
TransientIOError, 401/403 become AuthError.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from .base import CredentialIssuer, RawUsage
from ai_key_guard.core.errors import (
    AuthError,
    ConfigurationError,
    KeyGuardError,
    PartialDataError,
    TransientIOError,
)
from ai_key_guard.storage.models import Credential, IssuedCredential, UsageWindow

logger = logging.getLogger(__name__)

PROVISIONING_KEY_ENV = "OPENROUTER_PROVISIONING_KEY"
USER_AGENT = "ai-key-guard/0.1"

WINDOW_SPANS = {
    UsageWindow.DAILY: timedelta(days=1),
    UsageWindow.WEEKLY: timedelta(days=7),
    UsageWindow.MONTHLY: timedelta(days=30),
}

# Field on the key object that carries spend for each window
WINDOW_USAGE_FIELDS = {
    UsageWindow.DAILY: "usage_daily",
    UsageWindow.WEEKLY: "usage_weekly",
    UsageWindow.MONTHLY: "usage_monthly",
}


class OpenRouterIssuer(CredentialIssuer):
    """CredentialIssuer backed by the OpenRouter key provisioning API."""

    def __init__(
        self,
        provisioning_key: Optional[str] = None,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the issuer client.

        Args:
            provisioning_key: Management key; defaults to $OPENROUTER_PROVISIONING_KEY
            base_url: API base URL
            timeout: Timeout in seconds applied to every request
            client: Optional preconfigured HTTP client

        Raises:
            ConfigurationError: If no provisioning key is available
        """
        key = provisioning_key or os.environ.get(PROVISIONING_KEY_ENV)
        if not key:
            raise ConfigurationError(f"{PROVISIONING_KEY_ENV} is required")
        self._timeout = timeout
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {key}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(
                method, path, headers=self._headers, timeout=self._timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise TransientIOError(f"{method} {path} timed out: {e}")
        except httpx.TransportError as e:
            raise TransientIOError(f"{method} {path} failed: {e}")

        if response.status_code in (401, 403):
            raise AuthError(
                f"{method} {path} rejected with {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(f"{method} {path} returned {response.status_code}")
        return response

    @staticmethod
    def _json(response: httpx.Response, method: str, path: str) -> Dict[str, Any]:
        if response.status_code >= 400:
            raise KeyGuardError(f"{method} {path} returned {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise KeyGuardError(f"Failed to parse response of {method} {path}: {e}")

    def list_credentials(self) -> List[Credential]:
        response = self._request("GET", "/keys")
        body = self._json(response, "GET", "/keys")
        items = body.get("data")
        if not isinstance(items, list):
            raise KeyGuardError("Invalid response format from GET /keys")
        credentials = [_parse_credential(item) for item in items]
        logger.info("Listed %d credential(s)", len(credentials))
        return credentials

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        path = f"/keys/{credential_id}"
        response = self._request("GET", path)
        if response.status_code == 404:
            return None
        return _parse_credential(self._json(response, "GET", path).get("data", {}))

    def fetch_usage(self, credential_id: str, window: UsageWindow, now: datetime) -> RawUsage:
        """Fetch detailed usage, falling back to key-level spend totals.

        The detailed endpoint is not available for every account. When it
        returns 404 the spend totals on the key object are used and the
        result is flagged as estimated.
        """
        start = now - WINDOW_SPANS[window]
        path = f"/keys/{credential_id}/usage"
        response = self._request(
            "GET", path, params={"start": start.isoformat(), "end": now.isoformat()}
        )
        if response.status_code == 404:
            logger.info("Usage endpoint not available for %s, using key totals", credential_id)
            return self._fetch_usage_fallback(credential_id, window)

        data = self._json(response, "GET", path).get("data", {})
        models = data.get("models") or {}
        return RawUsage(
            request_count=int(data.get("requests", 0)),
            token_count=int(data.get("tokens", 0)),
            cost=float(data.get("cost", 0.0)),
            origins=frozenset(data.get("origins") or []),
            model_requests={str(m): int(c) for m, c in models.items()},
            client_id=str(data.get("user_agent") or ""),
        )

    def _fetch_usage_fallback(self, credential_id: str, window: UsageWindow) -> RawUsage:
        path = f"/keys/{credential_id}"
        response = self._request("GET", path)
        data = self._json(response, "GET", path).get("data", {})
        spend = data.get(WINDOW_USAGE_FIELDS[window])
        if spend is None:
            raise PartialDataError(
                f"No {window.value} spend reported for credential {credential_id}", credential_id
            )
        return RawUsage(
            request_count=0,
            token_count=0,
            cost=float(spend),
            estimated=True,
        )

    def create_credential(self, name: str, limit: Optional[float] = None) -> IssuedCredential:
        payload: Dict[str, Any] = {"name": name}
        if limit is not None:
            payload["limit"] = limit
        response = self._request("POST", "/keys", json=payload)
        body = self._json(response, "POST", "/keys")
        value = body.get("key")
        if not value:
            raise KeyGuardError("No key in create response")
        credential = _parse_credential(body.get("data", {}))
        logger.info("Created credential %s (%s)", credential.id, name)
        return IssuedCredential(credential=credential, value=value)

    def delete_credential(self, credential_id: str) -> bool:
        path = f"/keys/{credential_id}"
        response = self._request("DELETE", path)
        if response.status_code == 404:
            logger.info("Credential %s already deleted", credential_id)
            return False
        self._json(response, "DELETE", path)
        logger.info("Deleted credential %s", credential_id)
        return True


def _parse_credential(item: Dict[str, Any]) -> Credential:
    try:
        credential_id = item.get("hash") or item.get("id")
        if not credential_id:
            raise KeyGuardError("Credential without id in response")
        created_raw = item.get("created_at")
        if created_raw:
            created_at = datetime.fromisoformat(str(created_raw).replace("Z", "+00:00"))
        else:
            created_at = datetime.now(timezone.utc)
        limit = item.get("limit")
        return Credential(
            id=str(credential_id),
            name=str(item.get("name") or "Unnamed"),
            label=str(item.get("label") or ""),
            created_at=created_at,
            limit=float(limit) if limit is not None else None,
            disabled=bool(item.get("disabled", False)),
        )
    except (AttributeError, TypeError, ValueError) as e:
        raise KeyGuardError(f"Invalid credential in response: {e}")
