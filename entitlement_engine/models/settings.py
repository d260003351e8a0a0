"""Engine configuration models.

Models for config/entitlements.yaml.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from entitlement_engine.utils.billing_period import validate_billing_period


def _check_period(value: Optional[str]) -> Optional[str]:
    if value is not None and not validate_billing_period(value):
        raise ValueError(f"Invalid ISO 8601 period: '{value}' (expected P[n]D, P[n]W, P[n]M or P[n]Y)")
    return value


class ProProductDefinition(BaseModel):
    """Product that unlocks the Pro entitlement."""

    id: str = Field(..., min_length=1, description="Product ID (e.g., mindtrainer_pro_monthly)")
    title: Optional[str] = Field(None, description="Human-readable title")
    billing_period: Optional[str] = Field(None, description="ISO 8601 duration (e.g., P1M, P1Y)")

    @field_validator("billing_period")
    @classmethod
    def _validate_billing_period(cls, value: Optional[str]) -> Optional[str]:
        return _check_period(value)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "mindtrainer_pro_yearly",
                "title": "MindTrainer Pro (Yearly)",
                "billing_period": "P1Y",
            }
        }


class StoreSettings(BaseModel):
    """Receipt store configuration."""

    backend: Literal["memory", "json"] = Field(default="memory", description="Store backend")
    path: str = Field(default="data/receipts.json", description="File path for the json backend")


class WatcherSettings(BaseModel):
    """Entitlement watcher configuration."""

    auto_refresh: bool = Field(
        default=True, description="Re-resolve automatically when the cached entitlement goes stale"
    )
    clock: Literal["system", "virtual"] = Field(
        default="system", description="Clock driving the watcher: wall clock or controllable virtual clock"
    )


class EngineSettings(BaseModel):
    """Complete entitlements.yaml configuration."""

    default_grace_period: str = Field(
        default="P3D",
        description="Grace window applied when the billing platform omits the grace end",
    )
    pro_products: list[ProProductDefinition] = Field(
        default_factory=list,
        description="Products that unlock Pro; empty means every product counts",
    )
    store: StoreSettings = Field(default_factory=StoreSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)

    @field_validator("default_grace_period")
    @classmethod
    def _validate_grace_period(cls, value: str) -> str:
        return _check_period(value)

    class Config:
        json_schema_extra = {
            "example": {
                "default_grace_period": "P3D",
                "pro_products": [
                    {"id": "mindtrainer_pro_monthly", "billing_period": "P1M"},
                    {"id": "mindtrainer_pro_yearly", "billing_period": "P1Y"},
                ],
                "store": {"backend": "json", "path": "data/receipts.json"},
                "watcher": {"auto_refresh": True, "clock": "system"},
            }
        }
