from __future__ import annotations

from typing import Any, Callable

from oi_tracker.data.providers.base import (
    GatewayStats,
    ProviderGateway,
    normalize_option_chain,
)
from oi_tracker.data.providers.mock import MockGateway, SimulatedGateway
from oi_tracker.models import ProviderCredentials


def _angel_one_factory(**kwargs: Any) -> ProviderGateway:
    from oi_tracker.data.providers.angel_one import AngelOneGateway

    return AngelOneGateway(**kwargs)


def _dhan_factory(**kwargs: Any) -> ProviderGateway:
    from oi_tracker.data.providers.dhan import DhanGateway

    return DhanGateway(**kwargs)


def _mock_factory(**kwargs: Any) -> ProviderGateway:
    kwargs.pop("credentials", None)
    return MockGateway(**kwargs)


def _simulated_factory(**kwargs: Any) -> ProviderGateway:
    kwargs.pop("credentials", None)
    return SimulatedGateway(**kwargs)


_GATEWAYS: dict[str, Callable[..., ProviderGateway]] = {
    "angel_one": _angel_one_factory,
    "dhan": _dhan_factory,
    "mock": _mock_factory,
    "simulated": _simulated_factory,
}

_ALIASES: dict[str, str] = {
    "angel": "angel_one",
    "angel-one": "angel_one",
    "angelone": "angel_one",
    "dhanhq": "dhan",
    "sim": "simulated",
}


def available_gateways() -> list[str]:
    return sorted(_GATEWAYS.keys())


def get_gateway(
    kind: str,
    *,
    name: str | None = None,
    credentials: ProviderCredentials | None = None,
    **kwargs: Any,
) -> ProviderGateway:
    gateway_kind = kind.strip().lower()
    gateway_kind = _ALIASES.get(gateway_kind, gateway_kind)
    if gateway_kind not in _GATEWAYS:
        raise ValueError(f"Unknown gateway: {gateway_kind}. Available: {', '.join(available_gateways())}")
    if name:
        kwargs["name"] = name
    return _GATEWAYS[gateway_kind](credentials=credentials, **kwargs)


__all__ = [
    "GatewayStats",
    "MockGateway",
    "ProviderGateway",
    "SimulatedGateway",
    "available_gateways",
    "get_gateway",
    "normalize_option_chain",
]
