"""Per-organization AI settings: classification mode resolution and configuration"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from airouter.config import settings
from airouter.core.models.classification import ClassificationMode
from airouter.storage.database import get_session
from airouter.storage.models import OrgAIConfigDB
from airouter.utils.logger import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@runtime_checkable
class ClassificationModeResolver(Protocol):
    """Read-only source of an organization's classification mode"""

    async def get_classification_mode(self, org_id: str) -> ClassificationMode: ...


class StaticModeResolver:
    """Same mode for every organization"""

    def __init__(self, mode: ClassificationMode | str = ClassificationMode.HYBRID):
        self.mode = ClassificationMode(mode)

    async def get_classification_mode(self, org_id: str) -> ClassificationMode:
        return self.mode


class OrgSettingsService:
    """Organization AI configuration stored in org_ai_configs"""

    def __init__(self, session_factory: SessionFactory = get_session):
        self.session_factory = session_factory
        self.default_mode = ClassificationMode(settings.default_classification_mode)

    async def get_classification_mode(self, org_id: str) -> ClassificationMode:
        """Configured mode, or the default when unset or unreadable"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(OrgAIConfigDB.classification_mode).where(OrgAIConfigDB.org_id == org_id)
                )
                mode = result.scalar_one_or_none()
        except Exception as e:
            logger.warning(
                f"Could not read classification mode for org {org_id}: {e}. "
                f"Using {self.default_mode.value}"
            )
            return self.default_mode

        if mode is None:
            return self.default_mode

        try:
            return ClassificationMode(mode)
        except ValueError:
            logger.warning(f"Org {org_id} has invalid classification mode '{mode}', using default")
            return self.default_mode

    async def get_config(self, org_id: str) -> OrgAIConfigDB | None:
        async with self.session_factory() as session:
            return await session.get(OrgAIConfigDB, org_id)

    async def configure(
        self,
        org_id: str,
        classification_mode: ClassificationMode | str | None = None,
        monthly_budget_usd: float | None = None,
        daily_request_limit: int | None = None,
    ) -> OrgAIConfigDB:
        """Create or update an organization's AI configuration

        Only the arguments that are given are changed; counters are never touched.
        """
        async with self.session_factory() as session:
            config = await session.get(OrgAIConfigDB, org_id)
            if config is None:
                config = OrgAIConfigDB(
                    org_id=org_id,
                    classification_mode=self.default_mode.value,
                    current_month_spend=0.0,
                    requests_this_month=0,
                    reserved_usd=0.0,
                    reserved_requests=0,
                )
                session.add(config)

            if classification_mode is not None:
                config.classification_mode = ClassificationMode(classification_mode).value
            if monthly_budget_usd is not None:
                config.monthly_budget_usd = monthly_budget_usd
            if daily_request_limit is not None:
                config.daily_request_limit = daily_request_limit

            await session.flush()
            logger.info(f"Updated AI config for org {org_id}")
            return config
