"""
Pydantic schemas for API request/response models.

Amounts are integers in minor currency units. Payout amounts are validated by
the payout manager rather than by the schema so every rejection carries the
same structured error body.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CreateCheckoutRequest(BaseModel):
    """Request schema for opening a checkout session."""

    product_id: str = Field(..., min_length=1, description="Product identifier")
    seller_id: str = Field(..., min_length=1, description="Seller who owns the product")
    title: str = Field(..., min_length=1, max_length=250, description="Line item title")
    price: int = Field(..., gt=0, description="Gross price in minor units")
    affiliate_commission_percent: Decimal = Field(
        default=Decimal("0"), ge=0, le=100, description="Promoter share of gross"
    )
    description: Optional[str] = Field(default=None, description="Line item description")
    image_url: Optional[str] = Field(default=None, description="Product image URL")
    buyer_id: str = Field(..., min_length=1, description="Buyer identifier")
    buyer_email: Optional[str] = Field(default=None, description="Prefills the checkout page")
    promoter_code: Optional[str] = Field(default=None, description="Referral code from the buyer's link")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "product_id": "prod_42",
                    "seller_id": "seller_7",
                    "title": "Lightroom Preset Pack",
                    "price": 10000,
                    "affiliate_commission_percent": "10",
                    "buyer_id": "buyer_3",
                    "promoter_code": "ANNA10",
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    transaction_id: UUID
    session_id: str
    checkout_url: Optional[str]
    gross_amount: int
    fee_percent: int
    platform_fee: int
    affiliate_commission: int
    seller_net: int
    application_fee_amount: int


class CreatePayoutRequest(BaseModel):
    """Request schema for a seller payout."""

    seller_id: str = Field(..., min_length=1, description="Seller identifier")
    amount: Any = Field(..., description="Requested amount in minor units (positive integer)")

    model_config = {
        "json_schema_extra": {"examples": [{"seller_id": "seller_7", "amount": 5000}]}
    }


class CancelPayoutRequest(BaseModel):
    seller_id: Optional[str] = Field(
        default=None, description="Owner check; a mismatch answers 404"
    )


class PayoutResponse(BaseModel):
    """Response schema for a payout."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    seller_id: str
    amount: int
    fee: int
    net_amount: int
    currency: str
    status: str
    reference_number: str
    external_payout_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class PayoutListResponse(BaseModel):
    payouts: List[PayoutResponse]


class TransactionResponse(BaseModel):
    """Response schema for a transaction."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: str
    buyer_id: str
    seller_id: str
    promoter_id: Optional[str] = None
    gross_amount: int
    platform_fee: int
    affiliate_commission: int
    seller_net_amount: int
    fee_percent: int
    currency: str
    status: str
    external_session_id: Optional[str] = None
    failure_reason: Optional[str] = None
    affiliate_available_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]


class BalanceResponse(BaseModel):
    """Seller level and balance, aggregated on read."""

    seller_id: str
    level: int
    level_name: str
    fee_percent: int
    available_balance: int
    cumulative_earnings: int
    next_level: Optional[int] = None
    next_level_name: Optional[str] = None
    amount_to_next: int
    progress_percent: int


class LevelSchema(BaseModel):
    level: int
    name: str
    min_earnings: int
    fee_percent: int


class PayoutConfigResponse(BaseModel):
    currency: str
    levels: List[LevelSchema]
    payout_rules: Dict[str, Any]
    processing_days: int
    dispatch_mode: str


class SellerAccountUpdate(BaseModel):
    """Admin upsert of a seller's payout account status."""

    external_account_id: Optional[str] = Field(default=None, description="Connected account id")
    charges_enabled: bool = False
    payouts_enabled: bool = False
    onboarding_complete: bool = False


class SellerAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    seller_id: str
    level: int
    external_account_id: Optional[str] = None
    charges_enabled: bool
    payouts_enabled: bool
    onboarding_complete: bool


class AffiliateLinkUpdate(BaseModel):
    product_id: str = Field(..., min_length=1)
    promoter_id: str = Field(..., min_length=1)
    is_active: bool = True


class AffiliateLinkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    product_id: str
    promoter_id: str
    is_active: bool


class DisbursementCallbackRequest(BaseModel):
    outcome: Literal["completed", "failed"]
    failure_reason: Optional[str] = None


class WebhookResponse(BaseModel):
    """Minimal acknowledgement; no business data leaves the webhook endpoint."""

    received: bool = True


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
