"""Plan, feature and module management."""

from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subplans.billing.models import (
    Plan,
    PlanFeature,
    PlanModule,
    PlanSubscription,
    PlanSubscriptionFeature,
    PlanSubscriptionUsage,
)
from subplans.billing.schemas import PlanCreate, PlanFeatureCreate
from subplans.billing.signals import SubscriptionEvent, SubscriptionSignals
from subplans.core.clock import Clock, utc_now
from subplans.core.config import Settings, get_settings
from subplans.core.database import transaction
from subplans.core.exceptions import (
    DuplicateFeatureSlugError,
    FeatureNotFoundError,
    InvalidFeatureValueError,
    PlanNotFoundError,
    ValidationError,
)
from subplans.core.logging import LoggerMixin


class PlanService(LoggerMixin):
    """Service for managing plans, their feature definitions and modules."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock = utc_now,
        signals: SubscriptionSignals | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize plan service.

        Args:
            db: Database session
            clock: Current instant provider
            signals: Receives deletion events for subscriptions removed with a plan
            settings: Settings override (defaults to the cached settings)
        """
        self.db = db
        self.clock = clock
        self.signals = signals or SubscriptionSignals()
        self.settings = settings or get_settings()

    async def create_plan(self, plan_data: PlanCreate) -> Plan:
        """Create a plan together with any features in the payload.

        Args:
            plan_data: Plan creation data

        Returns:
            Created plan

        Raises:
            DuplicateFeatureSlugError: If two features share a slug
            InvalidFeatureValueError: If a feature value is not allowed
            ValidationError: If a module name is blank
        """
        async with transaction(self.db):
            plan = Plan(**plan_data.model_dump(exclude={"features", "modules"}))
            self.db.add(plan)
            await self.db.flush()

            for feature_data in plan_data.features:
                await self._add_feature(plan, feature_data)
            for module in dict.fromkeys(plan_data.modules):
                await self._add_module(plan, module)

        self.logger.info(
            "plan_created",
            plan_id=str(plan.id),
            slug=plan.slug,
            features=len(plan_data.features),
            modules=len(plan_data.modules),
        )
        return plan

    async def create_feature(
        self,
        plan: Plan,
        feature_data: PlanFeatureCreate,
    ) -> PlanFeature:
        """Add a feature definition to a plan.

        Raises:
            DuplicateFeatureSlugError: If the plan already defines the slug
            InvalidFeatureValueError: If unlimited values are disabled
        """
        async with transaction(self.db):
            feature = await self._add_feature(plan, feature_data)

        self.logger.info(
            "plan_feature_created",
            plan_id=str(plan.id),
            feature_id=str(feature.id),
            slug=feature.slug,
            value=feature.value,
        )
        return feature

    async def _add_feature(self, plan: Plan, feature_data: PlanFeatureCreate) -> PlanFeature:
        if feature_data.value == -1 and not self.settings.allow_unlimited:
            raise InvalidFeatureValueError(
                "Unlimited feature values are disabled",
                field="value",
                value=feature_data.value,
            )

        slug = feature_data.slug or ""
        existing = await self.find_feature(plan.id, slug)
        if existing is not None:
            raise DuplicateFeatureSlugError(
                details={"plan_id": str(plan.id), "slug": slug},
            )

        feature = PlanFeature(plan_id=plan.id, **feature_data.model_dump())
        self.db.add(feature)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise DuplicateFeatureSlugError(
                details={"plan_id": str(plan.id), "slug": slug},
            ) from exc
        return feature

    async def get_plan(self, plan_id: UUID) -> Plan:
        """Get a plan by ID.

        Raises:
            PlanNotFoundError: If plan not found or deleted
        """
        result = await self.db.execute(
            select(Plan).where(Plan.id == plan_id, Plan.deleted_at.is_(None)),
        )
        plan = result.scalar_one_or_none()

        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")

        return plan

    async def find_plan(self, identifier: UUID | str) -> Plan | None:
        """Find a plan by ID or slug."""
        plan_id: UUID | None
        if isinstance(identifier, UUID):
            plan_id = identifier
        else:
            try:
                plan_id = UUID(identifier)
            except ValueError:
                plan_id = None

        condition = Plan.id == plan_id if plan_id is not None else Plan.slug == identifier
        result = await self.db.execute(
            select(Plan).where(condition, Plan.deleted_at.is_(None)).limit(1),
        )
        return result.scalar_one_or_none()

    async def list_active_plans(self) -> list[Plan]:
        result = await self.db.execute(
            select(Plan)
            .where(Plan.is_active.is_(True), Plan.deleted_at.is_(None))
            .order_by(Plan.sort_order),
        )
        return list(result.scalars().all())

    async def list_visible_plans(self) -> list[Plan]:
        result = await self.db.execute(
            select(Plan)
            .where(
                Plan.is_active.is_(True),
                Plan.is_visible.is_(True),
                Plan.deleted_at.is_(None),
            )
            .order_by(Plan.sort_order),
        )
        return list(result.scalars().all())

    async def activate_plan(self, plan: Plan) -> Plan:
        async with transaction(self.db):
            plan.is_active = True
        self.logger.info("plan_activated", plan_id=str(plan.id))
        return plan

    async def deactivate_plan(self, plan: Plan) -> Plan:
        async with transaction(self.db):
            plan.is_active = False
        self.logger.info("plan_deactivated", plan_id=str(plan.id))
        return plan

    async def find_feature(self, plan_id: UUID, slug: str) -> PlanFeature | None:
        result = await self.db.execute(
            select(PlanFeature).where(
                PlanFeature.plan_id == plan_id,
                PlanFeature.slug == slug,
            ),
        )
        return result.scalar_one_or_none()

    async def get_feature(self, plan_id: UUID, slug: str) -> PlanFeature:
        """Get a plan's feature by slug.

        Raises:
            FeatureNotFoundError: If the plan does not define the slug
        """
        feature = await self.find_feature(plan_id, slug)
        if feature is None:
            raise FeatureNotFoundError(
                f"Feature {slug!r} is not defined on plan {plan_id}",
                resource_type="feature",
                resource_id=slug,
            )
        return feature

    async def list_features(self, plan_id: UUID) -> list[PlanFeature]:
        result = await self.db.execute(
            select(PlanFeature)
            .where(PlanFeature.plan_id == plan_id)
            .order_by(PlanFeature.sort_order, PlanFeature.slug),
        )
        return list(result.scalars().all())

    async def delete_feature(self, feature: PlanFeature) -> None:
        """Delete a feature and every usage entry recorded against it."""
        async with transaction(self.db):
            await self.db.execute(
                delete(PlanSubscriptionUsage).where(
                    PlanSubscriptionUsage.feature_id == feature.id,
                ),
            )
            await self.db.execute(
                delete(PlanSubscriptionFeature).where(
                    PlanSubscriptionFeature.feature_id == feature.id,
                ),
            )
            await self.db.delete(feature)

        self.logger.info(
            "plan_feature_deleted",
            plan_id=str(feature.plan_id),
            feature_id=str(feature.id),
            slug=feature.slug,
        )

    async def add_module(self, plan: Plan, module: str) -> PlanModule:
        """Unlock an application module on a plan.

        Adding a module the plan already has returns the existing row, and a
        previously removed module is restored. Subscriptions of the plan are
        announced with ``MODULES_CHANGED`` when the module set changes.

        Args:
            plan: Plan to extend
            module: Module name

        Returns:
            The plan's module row

        Raises:
            ValidationError: If the module name is blank
        """
        name = self._module_name(module)

        async with transaction(self.db):
            existing = await self._module_row(plan.id, name)
            changed = existing is None or existing.trashed
            plan_module = await self._add_module(plan, name)
            subscriptions = await self._plan_subscriptions(plan) if changed else []

        for subscription in subscriptions:
            await self.signals.send(SubscriptionEvent.MODULES_CHANGED, subscription)

        self.logger.info(
            "plan_module_added",
            plan_id=str(plan.id),
            module=plan_module.module,
            changed=changed,
        )
        return plan_module

    async def remove_module(self, plan: Plan, module: str) -> bool:
        """Soft-delete a module of a plan.

        Returns:
            False when the plan did not have the module
        """
        now = self.clock()

        async with transaction(self.db):
            result = await self.db.execute(
                update(PlanModule)
                .where(
                    PlanModule.plan_id == plan.id,
                    PlanModule.module == module,
                    PlanModule.deleted_at.is_(None),
                )
                .values(deleted_at=now, updated_at=now),
            )
            removed = result.rowcount > 0
            subscriptions = await self._plan_subscriptions(plan) if removed else []

        for subscription in subscriptions:
            await self.signals.send(SubscriptionEvent.MODULES_CHANGED, subscription)

        self.logger.info(
            "plan_module_removed",
            plan_id=str(plan.id),
            module=module,
            removed=removed,
        )
        return removed

    async def list_modules(self, plan_id: UUID) -> list[str]:
        result = await self.db.execute(
            select(PlanModule.module)
            .where(PlanModule.plan_id == plan_id, PlanModule.deleted_at.is_(None))
            .order_by(PlanModule.module),
        )
        return list(result.scalars().all())

    async def _add_module(self, plan: Plan, module: str) -> PlanModule:
        name = self._module_name(module)
        plan_module = await self._module_row(plan.id, name)
        if plan_module is None:
            plan_module = PlanModule(plan_id=plan.id, module=name)
            self.db.add(plan_module)
        elif plan_module.trashed:
            plan_module.deleted_at = None
            plan_module.updated_at = self.clock()
        await self.db.flush()
        return plan_module

    async def _module_row(self, plan_id: UUID, module: str) -> PlanModule | None:
        # Prefer the live row over soft-deleted ones
        result = await self.db.execute(
            select(PlanModule)
            .where(PlanModule.plan_id == plan_id, PlanModule.module == module)
            .order_by(PlanModule.deleted_at.is_not(None), PlanModule.created_at.desc())
            .limit(1),
        )
        return result.scalar_one_or_none()

    async def _plan_subscriptions(self, plan: Plan) -> list[PlanSubscription]:
        result = await self.db.execute(
            select(PlanSubscription).where(
                PlanSubscription.plan_id == plan.id,
                PlanSubscription.deleted_at.is_(None),
            ),
        )
        return list(result.scalars().all())

    async def delete_plan(self, plan: Plan) -> None:
        """Soft-delete a plan with its features, modules and subscriptions.

        Features are removed together with their usage; modules and the
        plan's subscriptions are soft-deleted, and the subscriptions are
        announced as deleted.
        """
        now = self.clock()

        async with transaction(self.db):
            for feature in await self.list_features(plan.id):
                await self.db.execute(
                    delete(PlanSubscriptionUsage).where(
                        PlanSubscriptionUsage.feature_id == feature.id,
                    ),
                )
                await self.db.execute(
                    delete(PlanSubscriptionFeature).where(
                        PlanSubscriptionFeature.feature_id == feature.id,
                    ),
                )
                await self.db.delete(feature)

            await self.db.execute(
                update(PlanModule)
                .where(PlanModule.plan_id == plan.id, PlanModule.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now),
            )

            subscriptions = await self._plan_subscriptions(plan)
            for subscription in subscriptions:
                subscription.deleted_at = now

            plan.deleted_at = now

        for subscription in subscriptions:
            await self.signals.send(SubscriptionEvent.DELETED, subscription)

        self.logger.info(
            "plan_deleted",
            plan_id=str(plan.id),
            subscriptions_deleted=len(subscriptions),
        )

    @staticmethod
    def _module_name(module: str) -> str:
        name = module.strip()
        if not name:
            raise ValidationError(
                "Module name must not be blank",
                field="module",
                value=module,
            )
        return name
