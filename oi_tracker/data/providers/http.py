from __future__ import annotations

import logging
from typing import Any

import requests

from oi_tracker.data.market_types import (
    AuthError,
    MalformedPayloadError,
    NetworkError,
    NotFoundError,
    ProviderTimeoutError,
)
from oi_tracker.data.providers.base import ProviderGateway
from oi_tracker.data.rate_limits import parse_rate_limit_headers

logger = logging.getLogger(__name__)


class HttpProviderGateway(ProviderGateway):
    """ProviderGateway over a `requests.Session` that maps HTTP failures onto the error taxonomy."""

    base_url: str = ""

    def __init__(self, *, session: requests.Session | None = None, base_url: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._session = session or requests.Session()
        if base_url:
            self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        merged = self._headers()
        if headers:
            merged.update(headers)
        try:
            resp = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=merged,
                timeout=self.current_timeout_seconds(),
            )
        except requests.Timeout as exc:
            raise ProviderTimeoutError(f"{self.name} {method} {path} timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"{self.name} {method} {path} failed: {exc}") from exc

        snapshot = parse_rate_limit_headers(getattr(resp, "headers", None))
        if snapshot is not None and snapshot.remaining is not None and snapshot.remaining <= 1:
            logger.warning(
                "%s rate limit nearly exhausted: remaining=%s reset_in=%s",
                self.name,
                snapshot.remaining,
                snapshot.reset_in_seconds(),
            )

        status = int(resp.status_code)
        if status == 401:
            raise AuthError(f"{self.name} {method} {path}: HTTP {status}")
        if status == 404:
            raise NotFoundError(f"{self.name} {method} {path}: HTTP 404")
        if status >= 400:
            raise NetworkError(f"{self.name} {method} {path}: HTTP {status}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise MalformedPayloadError(f"{self.name} {method} {path}: response is not JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedPayloadError(f"{self.name} {method} {path}: response is not an object")
        return payload
