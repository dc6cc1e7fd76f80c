"""Pydantic schemas for plans, subscriptions and usage reports."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from subplans.billing.models import (
    Currency,
    SubscriptionModel,
    SubscriptionState,
)
from subplans.billing.period import Interval
from subplans.billing.slugs import slugify


class PlanFeatureBase(BaseModel):
    """Base schema for plan feature."""

    name: str = Field(..., min_length=1, max_length=150)
    slug: str | None = Field(None, max_length=150)
    description: str | None = Field(None, max_length=500)
    value: int = Field(0, ge=-1, description="-1 for unlimited, 0 for disabled")
    resettable_period: int = Field(0, ge=0, description="0 means never reset")
    resettable_interval: Interval = Interval.MONTH
    sort_order: int = 0

    @model_validator(mode="after")
    def default_slug(self) -> "PlanFeatureBase":
        if not self.slug:
            self.slug = slugify(self.name)
        return self


class PlanFeatureCreate(PlanFeatureBase):
    """Schema for creating a plan feature."""


class PlanBase(BaseModel):
    """Base schema for plan."""

    name: str = Field(..., min_length=1, max_length=150)
    slug: str | None = Field(None, max_length=150)
    description: str | None = Field(None, max_length=500)
    price: Decimal = Field(Decimal("0.00"), ge=0)
    signup_fee: Decimal = Field(Decimal("0.00"), ge=0)
    currency: Currency = Currency.USD
    subscription_model: SubscriptionModel = SubscriptionModel.FIXED
    trial_period: int = Field(0, ge=0)
    trial_interval: Interval = Interval.DAY
    invoice_period: int = Field(1, ge=0)
    invoice_interval: Interval = Interval.MONTH
    grace_period: int = Field(0, ge=0)
    grace_interval: Interval = Interval.DAY
    active_subscribers_limit: int | None = Field(None, ge=0)
    sort_order: int = 0
    is_active: bool = True
    is_visible: bool = True

    @model_validator(mode="after")
    def default_slug(self) -> "PlanBase":
        if not self.slug:
            self.slug = slugify(self.name)
        return self


class PlanCreate(PlanBase):
    """Schema for creating a plan, optionally with its features and modules."""

    features: list[PlanFeatureCreate] = Field(default_factory=list)
    modules: list[str] = Field(default_factory=list)


class PlanResponse(PlanBase):
    """Schema for plan response."""

    id: UUID
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SubscriptionStatus(BaseModel):
    """Derived lifecycle view of a subscription at a given instant."""

    subscription_id: UUID
    state: SubscriptionState
    active: bool
    on_trial: bool
    canceled: bool
    ended: bool
    evaluated_at: datetime


class UsageSummary(BaseModel):
    """Usage of one feature under a subscription."""

    feature_slug: str
    used: int
    quota_limit: int
    additional_quantity: int = 0
    remaining: int = Field(..., description="Clamped at 0; -1 for unlimited")
    is_unlimited: bool
    can_use: bool
    reset_at: datetime | None = None
