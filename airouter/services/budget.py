"""Per-organization budget ledger

The router reserves a request's estimated cost before dispatch and settles the
reservation with the actual cost afterwards. The reservation is a single conditional
UPDATE, so two concurrent requests can never both pass a check only one of them
should pass.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from airouter.core.models.routing import AIResponse, BudgetDecision
from airouter.storage.database import get_session
from airouter.storage.models import OrgAIConfigDB
from airouter.utils.logger import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@runtime_checkable
class BudgetLedger(Protocol):
    """Spend tracker consulted before dispatch and updated after a call"""

    async def check_budget(
        self, org_id: str, tier_key: str, estimated_usd: float
    ) -> BudgetDecision: ...

    async def record_usage(
        self, org_id: str, response: AIResponse, reserved_usd: float, reserved: bool = True
    ) -> None: ...

    async def release(self, org_id: str, reserved_usd: float) -> None: ...


class UnlimitedBudgetLedger:
    """Ledger that allows everything and records nothing"""

    async def check_budget(
        self, org_id: str, tier_key: str, estimated_usd: float
    ) -> BudgetDecision:
        return BudgetDecision(allowed=True)

    async def record_usage(
        self, org_id: str, response: AIResponse, reserved_usd: float, reserved: bool = True
    ) -> None:
        return None

    async def release(self, org_id: str, reserved_usd: float) -> None:
        return None


def _clamped_decrement(column, amount):
    """column - amount, never below zero"""
    return case((column - amount > 0, column - amount), else_=0)


class SQLBudgetLedger:
    """Budget ledger stored in org_ai_configs

    Organizations without a row, or with NULL limits, are unlimited. The daily
    request limit is enforced as a month-to-date allowance of
    ``daily_request_limit * day_of_month`` requests.
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        today: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.today = today

    async def check_budget(
        self, org_id: str, tier_key: str, estimated_usd: float
    ) -> BudgetDecision:
        """
        Atomically reserve a request's estimated cost

        Args:
            org_id: Organization making the request
            tier_key: Tier the request will be sent to
            estimated_usd: Estimated cost of the request

        Returns:
            Allowed decision with the reservation, or a denial with its reason
        """
        day_of_month = self.today().day
        config = OrgAIConfigDB

        async with self.session_factory() as session:
            result = await session.execute(
                update(config)
                .where(
                    config.org_id == org_id,
                    or_(
                        config.monthly_budget_usd.is_(None),
                        config.current_month_spend + config.reserved_usd + estimated_usd
                        <= config.monthly_budget_usd,
                    ),
                    or_(
                        config.daily_request_limit.is_(None),
                        config.requests_this_month + config.reserved_requests + 1
                        <= config.daily_request_limit * day_of_month,
                    ),
                )
                .values(
                    reserved_usd=config.reserved_usd + estimated_usd,
                    reserved_requests=config.reserved_requests + 1,
                    updated_at=datetime.utcnow(),
                )
            )
            if result.rowcount:
                logger.debug(f"Reserved ${estimated_usd:.4f} for org {org_id} on {tier_key}")
                return BudgetDecision(allowed=True, reserved_usd=estimated_usd, reserved=True)

            row = (
                await session.execute(select(config).where(config.org_id == org_id))
            ).scalar_one_or_none()

        if row is None:
            return BudgetDecision(allowed=True)

        if (
            row.monthly_budget_usd is not None
            and row.current_month_spend + row.reserved_usd + estimated_usd > row.monthly_budget_usd
        ):
            reason = f"Monthly budget of ${row.monthly_budget_usd:.2f} exceeded"
        else:
            reason = f"Daily request limit of {row.daily_request_limit} exceeded"

        logger.warning(f"Budget check failed for org {org_id} on {tier_key}: {reason}")
        return BudgetDecision(allowed=False, reason=reason)

    async def record_usage(
        self, org_id: str, response: AIResponse, reserved_usd: float, reserved: bool = True
    ) -> None:
        """
        Settle a reservation with the actual cost of a completed call

        Args:
            org_id: Organization that made the request
            response: Response carrying the actual cost
            reserved_usd: Amount reserved by check_budget
            reserved: Whether check_budget took a reservation
        """
        config = OrgAIConfigDB
        values = {
            "current_month_spend": config.current_month_spend + response.cost.usd,
            "requests_this_month": config.requests_this_month + 1,
            "updated_at": datetime.utcnow(),
        }
        if reserved:
            values["reserved_usd"] = _clamped_decrement(config.reserved_usd, reserved_usd)
            values["reserved_requests"] = _clamped_decrement(config.reserved_requests, 1)

        async with self.session_factory() as session:
            result = await session.execute(
                update(config).where(config.org_id == org_id).values(values)
            )

        if not result.rowcount:
            logger.debug(f"No AI config for org {org_id}; usage not tracked")

    async def release(self, org_id: str, reserved_usd: float) -> None:
        """Return a reservation whose request did not complete"""
        config = OrgAIConfigDB
        async with self.session_factory() as session:
            await session.execute(
                update(config)
                .where(config.org_id == org_id)
                .values(
                    reserved_usd=_clamped_decrement(config.reserved_usd, reserved_usd),
                    reserved_requests=_clamped_decrement(config.reserved_requests, 1),
                    updated_at=datetime.utcnow(),
                )
            )
        logger.debug(f"Released ${reserved_usd:.4f} reservation for org {org_id}")
