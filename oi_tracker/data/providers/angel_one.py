from __future__ import annotations

from datetime import date, datetime, timezone
import logging
from typing import Any

import pyotp

from oi_tracker.data.market_types import AuthError, MalformedPayloadError, NotFoundError, Quote
from oi_tracker.data.providers.base import coerce_float, coerce_int
from oi_tracker.data.providers.http import HttpProviderGateway
from oi_tracker.models import ProviderCredentials

logger = logging.getLogger(__name__)

ANGEL_ONE_BASE_URL = "https://apiconnect.angelone.in"

# Index tokens on the NSE segment.
INDEX_TOKENS: dict[str, str] = {
    "NIFTY": "99926000",
    "BANKNIFTY": "99926009",
    "FINNIFTY": "99926037",
}

# Error codes Angel One returns with HTTP 200 when the JWT is invalid or expired.
_TOKEN_ERROR_CODES = {"AG8001", "AG8002", "AG8003"}


class AngelOneGateway(HttpProviderGateway):
    name = "angel-one"
    base_url = ANGEL_ONE_BASE_URL

    def __init__(self, credentials: ProviderCredentials | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._credentials = credentials or ProviderCredentials()
        self._jwt: str | None = None
        self._refresh: str | None = None
        self.feed_token: str | None = None

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers.update(
            {
                "X-UserType": "USER",
                "X-SourceID": "WEB",
                "X-PrivateKey": self._credentials.api_key,
            }
        )
        if self._jwt:
            headers["Authorization"] = f"Bearer {self._jwt}"
        return headers

    def _checked(self, payload: dict[str, Any], what: str, *, auth: bool = False) -> Any:
        if payload.get("status") is True or payload.get("status") == "true":
            return payload.get("data")
        code = str(payload.get("errorcode") or payload.get("errorCode") or "")
        message = payload.get("message") or "unknown error"
        if auth or code in _TOKEN_ERROR_CODES:
            raise AuthError(f"{self.name} {what}: {code} {message}")
        raise MalformedPayloadError(f"{self.name} {what}: {code or 'status=false'} {message}")

    def _store_tokens(self, data: Any, what: str) -> None:
        if not isinstance(data, dict) or not data.get("jwtToken"):
            raise AuthError(f"{self.name} {what}: no jwtToken in response")
        self._jwt = str(data["jwtToken"])
        self._refresh = str(data.get("refreshToken") or "") or None
        self.feed_token = data.get("feedToken")

    def _login(self) -> None:
        creds = self._credentials
        if not (creds.client_id and creds.pin and creds.totp_seed and creds.api_key):
            raise AuthError(f"{self.name}: client_id, pin, totp_seed and api_key are required")
        self._jwt = None
        payload = self._request(
            "POST",
            "/rest/auth/angelbroking/user/v1/loginByPassword",
            json_body={
                "clientcode": creds.client_id,
                "password": creds.pin,
                "totp": pyotp.TOTP(creds.totp_seed).now(),
            },
        )
        self._store_tokens(self._checked(payload, "login", auth=True), "login")
        logger.info("%s: logged in as %s", self.name, creds.client_id)

    def _refresh_token(self) -> None:
        if not self._refresh:
            raise AuthError(f"{self.name}: no refresh token available")
        payload = self._request(
            "POST",
            "/rest/auth/angelbroking/jwt/v1/generateTokens",
            json_body={"refreshToken": self._refresh},
        )
        self._store_tokens(self._checked(payload, "refresh", auth=True), "refresh")

    def _fetch_quote(self, symbol: str) -> Quote:
        token = INDEX_TOKENS.get(symbol.upper())
        if token is None:
            raise NotFoundError(f"{self.name}: no instrument token for {symbol}")
        payload = self._request(
            "POST",
            "/rest/secure/angelbroking/market/v1/getMarketData",
            json_body={"mode": "FULL", "exchangeTokens": {"NSE": [token]}},
        )
        data = self._checked(payload, "quote")
        fetched = (data or {}).get("fetched") if isinstance(data, dict) else None
        if not fetched:
            raise MalformedPayloadError(f"{self.name}: empty quote for {symbol}")
        row = fetched[0]
        return Quote(
            symbol=symbol.upper(),
            last_price=coerce_float(row.get("ltp")),
            open=coerce_float(row.get("open")),
            high=coerce_float(row.get("high")),
            low=coerce_float(row.get("low")),
            close=coerce_float(row.get("close")),
            volume=coerce_int(row.get("tradeVolume", row.get("volume"))),
            timestamp=datetime.now(timezone.utc),
        )

    def _fetch_option_chain(self, symbol: str, expiry: date | None) -> dict[str, Any]:
        params: dict[str, Any] = {"symbolname": symbol.upper(), "exchange": "NFO"}
        if expiry is not None:
            params["expirydate"] = expiry.strftime("%d%b%Y").upper()
        payload = self._request("GET", "/rest/secure/angelbroking/market/v1/optionChain", params=params)
        data = self._checked(payload, "option_chain")
        if isinstance(data, list):
            return {"data": data}
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            return data
        raise MalformedPayloadError(f"{self.name}: unexpected option chain shape for {symbol}")
