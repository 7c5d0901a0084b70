from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from pricewatch.utils.types import Direction, canonical_symbol


class CreateAlertRequest(BaseModel):
    """Request body for creating an alert"""
    symbol: str = Field(min_length=1, max_length=20)
    alert_type: str = Field(min_length=1, max_length=50)
    target_value: float = Field(gt=0)
    direction: Direction = "above"
    enabled: bool = True
    notes: Optional[str] = None
    prompt: Optional[str] = None

    @field_validator("symbol")
    @classmethod
    def _symbol(cls, v: str) -> str:
        v = canonical_symbol(v)
        if not v:
            raise ValueError("symbol must not be blank")
        return v

    model_config = {
        "json_schema_extra": {
            "example": {
                "symbol": "AAPL",
                "alert_type": "price_target",
                "target_value": 200.0,
                "direction": "above",
                "notes": "take profit",
            }
        }
    }


class UpdateAlertRequest(BaseModel):
    """Partial update; omitted fields keep their stored value"""
    symbol: Optional[str] = Field(default=None, min_length=1, max_length=20)
    alert_type: Optional[str] = Field(default=None, min_length=1, max_length=50)
    target_value: Optional[float] = Field(default=None, gt=0)
    direction: Optional[Direction] = None
    enabled: Optional[bool] = None
    notes: Optional[str] = None
    prompt: Optional[str] = None

    @field_validator("symbol")
    @classmethod
    def _symbol(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = canonical_symbol(v)
        if not v:
            raise ValueError("symbol must not be blank")
        return v
