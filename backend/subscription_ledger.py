# subscription_ledger.py — Storage plan catalog and per-workspace subscriptions
import os
import logging
from datetime import timedelta
from typing import List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_control import require
from errors import AlreadyExists, InsufficientPayment, InvalidState, NotFound
from models import EventKind, StoragePlan, Subscription, WorkspaceRole, new_uuid
from substrate import ExecutionSubstrate
from treasury import PaymentForwarder, PaymentTransfer
from workspace_registry import WorkspaceQueries

logger = logging.getLogger("resource-registry.subscriptions")

SUBSCRIPTION_PERIOD = timedelta(days=int(os.getenv("SUBSCRIPTION_PERIOD_DAYS", "30")))

USAGE_REPORTER_ROLES = (WorkspaceRole.ADMIN, WorkspaceRole.EDITOR)


class PlatformDirectory(Protocol):
    """Answers whether an identity is a global (platform) administrator"""

    async def is_platform_admin(self, identity: str) -> bool: ...


class SubscriptionLedger:

    def __init__(
        self,
        substrate: ExecutionSubstrate,
        workspaces: WorkspaceQueries,
        treasury: PaymentForwarder,
        directory: PlatformDirectory,
    ):
        self.substrate = substrate
        self.session: AsyncSession = substrate.session
        self.workspaces = workspaces
        self.treasury = treasury
        self.directory = directory

    # ============================================================
    # QUERIES
    # ============================================================

    async def get_plan(self, plan_id: int) -> Optional[StoragePlan]:
        result = await self.session.execute(select(StoragePlan).where(StoragePlan.id == plan_id))
        return result.scalar_one_or_none()

    async def list_plans(self, include_inactive: bool = False) -> List[StoragePlan]:
        stmt = select(StoragePlan)
        if not include_inactive:
            stmt = stmt.where(StoragePlan.is_active == True)  # noqa: E712
        result = await self.session.execute(stmt.order_by(StoragePlan.id.asc()))
        return list(result.scalars().all())

    async def get_subscription(self, workspace_id: int) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.workspace_id == workspace_id)
        )
        return result.scalar_one_or_none()

    async def is_subscription_active(self, workspace_id: int) -> bool:
        subscription = await self.get_subscription(workspace_id)
        if subscription is None or not subscription.is_active:
            return False
        return subscription.expires_at > self.substrate.now()

    # ============================================================
    # PLAN CATALOG
    # ============================================================

    async def create_plan(
        self,
        caller_id: str,
        name: str,
        storage_limit_gb: int,
        price_per_month: int,
        price_per_gb: int,
    ) -> StoragePlan:
        async with self.substrate.mutation("create_plan", caller_id) as scope:
            await self._require_platform_admin(caller_id)
            existing = await self.session.execute(select(StoragePlan.id).where(StoragePlan.name == name))
            if existing.scalar_one_or_none() is not None:
                raise AlreadyExists(f"Storage plan '{name}' already exists")

            plan = StoragePlan(
                id=await self.substrate.next_id("plan"),
                name=name,
                storage_limit_gb=storage_limit_gb,
                price_per_month=price_per_month,
                price_per_gb=price_per_gb,
                is_active=True,
                created_at=scope.now,
            )
            self.session.add(plan)
            scope.emit(
                EventKind.PLAN_CREATED, "plan", plan.id,
                name=name, storage_limit_gb=storage_limit_gb,
                price_per_month=price_per_month, price_per_gb=price_per_gb,
            )
        return plan

    async def deactivate_plan(self, caller_id: str, plan_id: int) -> StoragePlan:
        async with self.substrate.mutation("deactivate_plan", caller_id) as scope:
            await self._require_platform_admin(caller_id)
            plan = await self._load_plan(plan_id)
            if not plan.is_active:
                raise InvalidState(f"Storage plan {plan_id} is already inactive")
            plan.is_active = False
            scope.emit(EventKind.PLAN_DEACTIVATED, "plan", plan.id)
        return plan

    # ============================================================
    # SUBSCRIPTIONS
    # ============================================================

    async def subscribe(self, caller_id: str, workspace_id: int, plan_id: int, payment: int) -> Subscription:
        async with self.substrate.mutation("subscribe", caller_id) as scope:
            if not await self.workspaces.exists(workspace_id):
                raise NotFound(f"Workspace {workspace_id} not found")
            plan = await self._load_plan(plan_id)
            if not plan.is_active:
                raise InvalidState(f"Storage plan {plan_id} is not available")
            self._require_payment(payment, plan)

            subscription = await self.get_subscription(workspace_id)
            if subscription is None:
                subscription = Subscription(workspace_id=workspace_id)
                self.session.add(subscription)
            subscription.plan_id = plan.id
            subscription.subscriber_id = caller_id
            subscription.started_at = scope.now
            subscription.expires_at = scope.now + SUBSCRIPTION_PERIOD
            subscription.renewed_at = None
            subscription.storage_used_gb = 0
            subscription.is_active = True

            receipt = await self._forward(scope, workspace_id, caller_id, payment, "subscribe")
            scope.emit(
                EventKind.SUBSCRIPTION_CREATED, "subscription", workspace_id, workspace_id,
                plan_id=plan.id, expires_at=subscription.expires_at, payment=payment, receipt=receipt,
            )
        return subscription

    async def renew_subscription(self, caller_id: str, workspace_id: int, payment: int) -> Subscription:
        async with self.substrate.mutation("renew_subscription", caller_id) as scope:
            subscription = await self.get_subscription(workspace_id)
            if subscription is None:
                raise NotFound(f"Workspace {workspace_id} has no subscription")
            if not subscription.is_active:
                raise InvalidState(f"Subscription of workspace {workspace_id} is not active")
            plan = await self._load_plan(subscription.plan_id)
            self._require_payment(payment, plan)

            # Extend from the stored expiry, never from now
            previous_expiry = subscription.expires_at
            subscription.expires_at = previous_expiry + SUBSCRIPTION_PERIOD
            subscription.renewed_at = scope.now

            receipt = await self._forward(scope, workspace_id, caller_id, payment, "renew")
            scope.emit(
                EventKind.SUBSCRIPTION_RENEWED, "subscription", workspace_id, workspace_id,
                plan_id=plan.id, previous_expires_at=previous_expiry,
                expires_at=subscription.expires_at, payment=payment, receipt=receipt,
            )
        return subscription

    async def cancel_subscription(self, caller_id: str, workspace_id: int) -> Subscription:
        async with self.substrate.mutation("cancel_subscription", caller_id) as scope:
            subscription = await self.get_subscription(workspace_id)
            if subscription is None:
                raise NotFound(f"Workspace {workspace_id} has no subscription")
            require(
                await self.workspaces.has_role(workspace_id, caller_id, WorkspaceRole.ADMIN),
                "Workspace admin role required to cancel a subscription",
                workspace_id=workspace_id,
            )
            if not subscription.is_active:
                raise InvalidState(f"Subscription of workspace {workspace_id} is already cancelled")
            subscription.is_active = False
            scope.emit(EventKind.SUBSCRIPTION_CANCELLED, "subscription", workspace_id, workspace_id)
        return subscription

    async def record_storage_usage(self, caller_id: str, workspace_id: int, used_gb: int) -> Subscription:
        async with self.substrate.mutation("record_storage_usage", caller_id) as scope:
            subscription = await self.get_subscription(workspace_id)
            if subscription is None:
                raise NotFound(f"Workspace {workspace_id} has no subscription")
            require(
                await self.workspaces.has_any_role(workspace_id, caller_id, USAGE_REPORTER_ROLES),
                "Only workspace admins and editors may report storage usage",
                workspace_id=workspace_id,
            )
            subscription.storage_used_gb = used_gb
            plan = await self._load_plan(subscription.plan_id)
            if used_gb > plan.storage_limit_gb:
                logger.warning(
                    f"Workspace {workspace_id} reports {used_gb} GB on plan "
                    f"'{plan.name}' limited to {plan.storage_limit_gb} GB"
                )
            scope.emit(
                EventKind.SUBSCRIPTION_USAGE_RECORDED, "subscription", workspace_id, workspace_id,
                storage_used_gb=used_gb, storage_limit_gb=plan.storage_limit_gb,
            )
        return subscription

    # ============================================================
    # INTERNAL HELPERS
    # ============================================================

    async def _load_plan(self, plan_id: int) -> StoragePlan:
        plan = await self.get_plan(plan_id)
        if plan is None:
            raise NotFound(f"Storage plan {plan_id} not found")
        return plan

    async def _require_platform_admin(self, caller_id: str) -> None:
        require(
            await self.directory.is_platform_admin(caller_id),
            "Platform administrator role required",
        )

    @staticmethod
    def _require_payment(payment: int, plan: StoragePlan) -> None:
        if payment < plan.price_per_month:
            raise InsufficientPayment(
                f"Plan '{plan.name}' costs {plan.price_per_month} per month",
                {"payment": payment, "price_per_month": plan.price_per_month},
            )

    async def _forward(self, scope, workspace_id: int, payer_id: str, amount: int, purpose: str) -> Optional[str]:
        if amount == 0:
            logger.info(f"Nothing to forward for {purpose} of workspace {workspace_id} (free plan)")
            return None
        transfer = PaymentTransfer(
            reference=f"ws{workspace_id}-{purpose}-{new_uuid()}",
            workspace_id=workspace_id,
            payer_id=payer_id,
            amount=amount,
            purpose=purpose,
            requested_at=scope.now,
        )
        return await self.treasury.forward(transfer)
