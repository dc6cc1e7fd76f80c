"""Plan, feature, subscription and usage models."""

import enum
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from subplans.billing.period import Interval, Period
from subplans.billing.subscribers import SubscriberRef
from subplans.models.base import Base, SoftDeleteMixin, TimestampMixin, UTCDateTime


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [e.value for e in enum_cls]


class SubscriptionModel(str, enum.Enum):
    """How a plan is billed."""

    PAYG = "payg"
    FIXED = "fixed"


class Currency(str, enum.Enum):
    """Currency enum."""

    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    SAR = "SAR"


class SubscriptionState(str, enum.Enum):
    """Lifecycle state derived from a subscription's timestamps and flags."""

    TRIAL = "trial"
    ACTIVE = "active"
    CANCELED_PENDING = "canceled_pending"
    ENDED = "ended"
    INACTIVE = "inactive"
    DELETED = "deleted"


class Plan(Base, TimestampMixin, SoftDeleteMixin):
    """Billing plan with invoice, trial and grace cadences."""

    __tablename__ = "plans"

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    slug: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        default=Decimal("0.00"),
        nullable=False,
    )
    signup_fee: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        default=Decimal("0.00"),
        nullable=False,
    )
    currency: Mapped[Currency] = mapped_column(
        Enum(Currency, values_callable=_enum_values),
        default=Currency.USD,
        nullable=False,
    )
    subscription_model: Mapped[SubscriptionModel] = mapped_column(
        Enum(SubscriptionModel, values_callable=_enum_values),
        default=SubscriptionModel.FIXED,
        nullable=False,
    )
    trial_period: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    trial_interval: Mapped[Interval] = mapped_column(
        Enum(Interval, values_callable=_enum_values),
        default=Interval.DAY,
        nullable=False,
    )
    invoice_period: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    invoice_interval: Mapped[Interval] = mapped_column(
        Enum(Interval, values_callable=_enum_values),
        default=Interval.MONTH,
        nullable=False,
    )
    grace_period: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    grace_interval: Mapped[Interval] = mapped_column(
        Enum(Interval, values_callable=_enum_values),
        default=Interval.DAY,
        nullable=False,
    )
    active_subscribers_limit: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    sort_order: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        default=True,
        nullable=False,
    )
    is_visible: Mapped[bool] = mapped_column(
        default=True,
        nullable=False,
    )

    def is_free(self) -> bool:
        return (self.price or Decimal("0")) <= 0

    def has_trial(self) -> bool:
        return (self.trial_period or 0) > 0

    def has_grace(self) -> bool:
        return (self.grace_period or 0) > 0

    def has_same_cadence(self, other: "Plan") -> bool:
        """Check if both plans invoice on the same interval and period."""
        return (
            self.invoice_interval == other.invoice_interval
            and self.invoice_period == other.invoice_period
        )

    def trial(self, start: datetime) -> Period:
        return Period(self.trial_interval, self.trial_period, start)

    def billing_period(self, start: datetime) -> Period:
        return Period(self.invoice_interval, self.invoice_period, start)


class PlanFeature(Base, TimestampMixin):
    """Metered capability granted by a plan.

    ``value`` is the quota ceiling: -1 means unlimited, 0 means disabled.
    ``resettable_period`` of 0 means usage accumulates for the life of the
    subscription.
    """

    __tablename__ = "plan_features"
    __table_args__ = (
        UniqueConstraint("plan_id", "slug", name="uq_plan_features_plan_slug"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    plan_id: Mapped[UUID] = mapped_column(
        Uuid(),
        ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slug: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    value: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    resettable_period: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    resettable_interval: Mapped[Interval] = mapped_column(
        Enum(Interval, values_callable=_enum_values),
        default=Interval.MONTH,
        nullable=False,
    )
    sort_order: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    @property
    def is_unlimited(self) -> bool:
        return self.value == -1

    @property
    def is_disabled(self) -> bool:
        return self.value == 0

    @property
    def resets(self) -> bool:
        return bool(self.resettable_period)

    def get_reset_date(self, date_from: datetime) -> datetime:
        """End of one reset cycle starting at ``date_from``."""
        return Period(self.resettable_interval, self.resettable_period, date_from).end


class PlanModule(Base, TimestampMixin, SoftDeleteMixin):
    """Named application module unlocked by a plan."""

    __tablename__ = "plan_modules"
    __table_args__ = (
        Index("ix_plan_modules_plan_module", "plan_id", "module"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    plan_id: Mapped[UUID] = mapped_column(
        Uuid(),
        ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    module: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
        index=True,
    )


class PlanSubscription(Base, TimestampMixin, SoftDeleteMixin):
    """A subscriber's subscription to a plan.

    Lifecycle states are derived from the stored timestamps and flags, see
    ``state()``. At most one row per subscriber may be active and not
    soft-deleted; the partial unique index backs the service-level rule.
    """

    __tablename__ = "plan_subscriptions"
    __table_args__ = (
        Index(
            "ix_plan_subscriptions_subscriber",
            "subscriber_type",
            "subscriber_id",
        ),
        Index(
            "uq_plan_subscriptions_one_active",
            "subscriber_type",
            "subscriber_id",
            unique=True,
            postgresql_where=text("is_active AND deleted_at IS NULL"),
            sqlite_where=text("is_active = 1 AND deleted_at IS NULL"),
        ),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    subscriber_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    subscriber_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    plan_id: Mapped[UUID] = mapped_column(
        Uuid(),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    slug: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(150),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    subscription_type: Mapped[SubscriptionModel] = mapped_column(
        Enum(SubscriptionModel, values_callable=_enum_values),
        default=SubscriptionModel.FIXED,
        nullable=False,
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        index=True,
    )
    starts_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    ends_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        index=True,
    )
    cancels_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    canceled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    timezone: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        default=True,
        nullable=False,
        index=True,
    )
    is_paid: Mapped[bool] = mapped_column(
        default=False,
        nullable=False,
    )

    @property
    def subscriber_ref(self) -> SubscriberRef:
        return SubscriberRef(kind=self.subscriber_type, id=self.subscriber_id)

    def active(self) -> bool:
        """Active flag set and not soft-deleted."""
        return bool(self.is_active) and self.deleted_at is None

    def inactive(self) -> bool:
        return not self.active()

    def on_trial(self, now: datetime) -> bool:
        return self.trial_ends_at is not None and now < self.trial_ends_at

    def canceled(self, now: datetime) -> bool:
        return self.canceled_at is not None and now >= self.canceled_at

    def ended(self, now: datetime) -> bool:
        return self.ends_at is not None and now >= self.ends_at

    def state(self, now: datetime) -> SubscriptionState:
        """Derive the lifecycle state at ``now``."""
        if self.deleted_at is not None:
            return SubscriptionState.DELETED
        if self.ended(now):
            return SubscriptionState.ENDED
        if self.canceled(now):
            return SubscriptionState.CANCELED_PENDING
        if not self.is_active:
            return SubscriptionState.INACTIVE
        if self.on_trial(now):
            return SubscriptionState.TRIAL
        return SubscriptionState.ACTIVE


class PlanSubscriptionUsage(Base, TimestampMixin):
    """Consumed quantity of one feature under one subscription."""

    __tablename__ = "plan_subscription_usage"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "feature_id",
            name="uq_plan_subscription_usage_subscription_feature",
        ),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    subscription_id: Mapped[UUID] = mapped_column(
        Uuid(),
        ForeignKey("plan_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature_id: Mapped[UUID] = mapped_column(
        Uuid(),
        ForeignKey("plan_features.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    used: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    valid_until: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    def expired(self, now: datetime) -> bool:
        if self.valid_until is None:
            return False
        return now >= self.valid_until


class PlanSubscriptionFeature(Base, TimestampMixin):
    """Additional quantity of a feature purchased for a subscription."""

    __tablename__ = "plan_subscription_features"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "feature_id",
            name="uq_plan_subscription_features_subscription_feature",
        ),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    subscription_id: Mapped[UUID] = mapped_column(
        Uuid(),
        ForeignKey("plan_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature_id: Mapped[UUID] = mapped_column(
        Uuid(),
        ForeignKey("plan_features.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    quantity: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    source: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
