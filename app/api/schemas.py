"""
Request bodies of the HTTP API.
"""
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from app.services.payments.service import Purchase


class CodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class PurchaseRequest(BaseModel):
    tariff_id: Optional[int] = None
    proxy_tariff_id: Optional[int] = None
    extra_option_id: Optional[str] = None
    promo_code: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def _one_purpose(self):
        chosen = [v for v in (self.tariff_id, self.proxy_tariff_id, self.extra_option_id) if v is not None]
        if len(chosen) != 1:
            raise ValueError("exactly one of tariff_id, proxy_tariff_id, extra_option_id is required")
        return self

    def to_purchase(self) -> Purchase:
        return Purchase(
            tariff_id=self.tariff_id,
            proxy_tariff_id=self.proxy_tariff_id,
            extra_option_id=self.extra_option_id,
        )


class CheckoutRequest(BaseModel):
    provider: Literal["yookassa", "platega", "yoomoney"]
    tariff_id: Optional[int] = None
    proxy_tariff_id: Optional[int] = None
    extra_option_id: Optional[str] = None
    top_up_amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    promo_code: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def _one_purpose(self):
        chosen = [
            v for v in (self.tariff_id, self.proxy_tariff_id, self.extra_option_id, self.top_up_amount)
            if v is not None
        ]
        if len(chosen) != 1:
            raise ValueError("exactly one of tariff_id, proxy_tariff_id, extra_option_id, top_up_amount is required")
        return self

    def to_purchase(self) -> Purchase:
        return Purchase(
            tariff_id=self.tariff_id,
            proxy_tariff_id=self.proxy_tariff_id,
            extra_option_id=self.extra_option_id,
            top_up_amount=self.top_up_amount,
        )


class MarkPaidRequest(BaseModel):
    external_id: Optional[str] = Field(default=None, max_length=128)


class CronRequest(BaseModel):
    cron: str = Field(min_length=9, max_length=100)
