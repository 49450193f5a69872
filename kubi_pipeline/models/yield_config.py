"""Yield provider configuration models"""
import enum
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class RateMode(str, enum.Enum):
    APR = "apr"
    APY = "apy"


class ProviderExtra(BaseModel):
    """
    Free-form extension fields stored in yield_providers.extra_data.
    Validated once when providers are loaded; unset fields keep the
    values derived from the provider row.
    """
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    percent: Optional[float] = None
    mode: Optional[RateMode] = None
    name: Optional[str] = None
    active: bool = True
    skipIfZero: bool = False

    @field_validator('mode', mode='before')
    @classmethod
    def lower_mode(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


@dataclass
class TokenConfig:
    """Rate settings applied to one yield token"""
    mode: RateMode
    percent: float
    active: bool = True
    skip_if_zero: bool = False


@dataclass
class ProviderToken:
    """An active provider resolved to its representative token"""
    provider_id: str
    name: str
    address: str
    config: TokenConfig
