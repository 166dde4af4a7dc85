from __future__ import annotations

from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
import math
from typing import Any

import pandas as pd
from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clean_nan(value: Any) -> Any:
    """JSON-safe copy: NaN/inf become None, models/dataclasses/frames become plain data."""
    if value is pd.NaT:
        return None
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    if isinstance(value, BaseModel):
        return clean_nan(value.model_dump(mode="json"))
    if is_dataclass(value) and not isinstance(value, type):
        return clean_nan(asdict(value))
    if isinstance(value, dict):
        return {str(k): clean_nan(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [clean_nan(v) for v in value]
    if isinstance(value, pd.DataFrame):
        return clean_nan(value.to_dict(orient="records"))
    if isinstance(value, (datetime, date, pd.Timestamp)):
        return value.isoformat()
    return value


class ArtifactBase(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return clean_nan(self.model_dump(mode="json", by_alias=True))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]):  # noqa: ANN206
        return cls.model_validate(payload)
