from __future__ import annotations

from datetime import date, datetime, timezone
import logging
from typing import Any

from oi_tracker.data.market_types import AuthError, MalformedPayloadError, NotFoundError, Quote
from oi_tracker.data.providers.base import coerce_float, coerce_int
from oi_tracker.data.providers.http import HttpProviderGateway
from oi_tracker.models import ProviderCredentials

logger = logging.getLogger(__name__)

DHAN_BASE_URL = "https://api.dhan.co"

# Index security ids on the IDX_I segment.
INDEX_SECURITY_IDS: dict[str, int] = {
    "NIFTY": 13,
    "BANKNIFTY": 25,
    "FINNIFTY": 27,
}


def _dhan_leg(raw: dict[str, Any] | None) -> dict[str, Any] | None:
    if not raw:
        return None
    oi = coerce_int(raw.get("oi"))
    last_price = coerce_float(raw.get("last_price"))
    return {
        "openInterest": oi,
        "changeinOpenInterest": oi - coerce_int(raw.get("previous_oi", oi)),
        "lastPrice": last_price,
        "change": last_price - coerce_float(raw.get("previous_close_price", last_price)),
        "totalTradedVolume": coerce_int(raw.get("volume")),
        "impliedVolatility": coerce_float(raw.get("implied_volatility")),
    }


def dhan_chain_to_payload(data: dict[str, Any], *, expiry: date | None) -> dict[str, Any]:
    """Reshape Dhan's `{"last_price", "oc": {"<strike>": {"ce", "pe"}}}` into the common chain payload."""
    oc = data.get("oc")
    if not isinstance(oc, dict):
        raise MalformedPayloadError("dhan: option chain has no 'oc' mapping")
    rows = []
    for strike_key, legs in oc.items():
        if not isinstance(legs, dict):
            raise MalformedPayloadError(f"dhan: strike {strike_key!r} is not an object")
        rows.append(
            {
                "strikePrice": coerce_float(strike_key),
                "expiryDate": expiry.isoformat() if expiry else None,
                "CE": _dhan_leg(legs.get("ce")),
                "PE": _dhan_leg(legs.get("pe")),
            }
        )
    return {"underlyingValue": coerce_float(data.get("last_price")), "data": rows}


class DhanGateway(HttpProviderGateway):
    name = "dhan"
    base_url = DHAN_BASE_URL

    def __init__(self, credentials: ProviderCredentials | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._credentials = credentials or ProviderCredentials()

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["access-token"] = self._credentials.access_token
        headers["client-id"] = self._credentials.client_id
        return headers

    def _security_id(self, symbol: str) -> int:
        security_id = INDEX_SECURITY_IDS.get(symbol.upper())
        if security_id is None:
            raise NotFoundError(f"{self.name}: no security id for {symbol}")
        return security_id

    def _login(self) -> None:
        if not (self._credentials.access_token and self._credentials.client_id):
            raise AuthError(f"{self.name}: access_token and client_id are required")
        # Dhan issues long-lived access tokens; a profile read confirms the token works.
        self._request("GET", "/v2/profile")
        logger.info("%s: access token verified for %s", self.name, self._credentials.client_id)

    def _refresh_token(self) -> None:
        raise AuthError(f"{self.name}: access tokens cannot be refreshed; issue a new token")

    def _fetch_quote(self, symbol: str) -> Quote:
        security_id = self._security_id(symbol)
        payload = self._request("POST", "/v2/marketfeed/ohlc", json_body={"IDX_I": [security_id]})
        try:
            row = payload["data"]["IDX_I"][str(security_id)]
        except (KeyError, TypeError) as exc:
            raise MalformedPayloadError(f"{self.name}: quote for {symbol} missing from response") from exc
        ohlc = row.get("ohlc") or {}
        return Quote(
            symbol=symbol.upper(),
            last_price=coerce_float(row.get("last_price")),
            open=coerce_float(ohlc.get("open")),
            high=coerce_float(ohlc.get("high")),
            low=coerce_float(ohlc.get("low")),
            close=coerce_float(ohlc.get("close")),
            volume=coerce_int(row.get("volume")),
            timestamp=datetime.now(timezone.utc),
        )

    def _fetch_option_chain(self, symbol: str, expiry: date | None) -> dict[str, Any]:
        body: dict[str, Any] = {"UnderlyingScrip": self._security_id(symbol), "UnderlyingSeg": "IDX_I"}
        if expiry is not None:
            body["Expiry"] = expiry.isoformat()
        payload = self._request("POST", "/v2/optionchain", json_body=body)
        data = payload.get("data")
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"{self.name}: option chain for {symbol} has no data")
        return dhan_chain_to_payload(data, expiry=expiry)
