"""Plans, subscriptions and feature quota management."""

from subplans.billing.cache import SubscriptionCache
from subplans.billing.feature_manager import FeatureUsageConfig, FeatureUsageManager
from subplans.billing.locking import KeyedLocks
from subplans.billing.models import (
    Plan,
    PlanFeature,
    PlanModule,
    PlanSubscription,
    PlanSubscriptionFeature,
    PlanSubscriptionUsage,
    SubscriptionModel,
    SubscriptionState,
)
from subplans.billing.period import Interval, Period
from subplans.billing.plans import PlanService
from subplans.billing.quota_manager import QuotaManager
from subplans.billing.service import SubscriptionService
from subplans.billing.signals import SubscriptionEvent, SubscriptionSignals
from subplans.billing.subscribers import SubscriberCapable, SubscriberRef, SubscriberRegistry

__all__ = [
    "FeatureUsageConfig",
    "FeatureUsageManager",
    "Interval",
    "KeyedLocks",
    "Period",
    "Plan",
    "PlanFeature",
    "PlanModule",
    "PlanService",
    "PlanSubscription",
    "PlanSubscriptionFeature",
    "PlanSubscriptionUsage",
    "QuotaManager",
    "SubscriberCapable",
    "SubscriberRef",
    "SubscriberRegistry",
    "SubscriptionCache",
    "SubscriptionEvent",
    "SubscriptionModel",
    "SubscriptionService",
    "SubscriptionSignals",
    "SubscriptionState",
]
