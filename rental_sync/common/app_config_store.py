"""Key/value JSON store backed by the ``app_config`` table."""

from __future__ import annotations

from typing import Any, Mapping

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from rental_sync.common.db import session_scope, use_sqlite
from rental_sync.common.models import AppConfig

ONLINE_ORDERS_CONFIG_KEY = "online_orders_sync_config"
SNAPSHOT_KEY = "online_orders_last_snapshot"
OFFLINE_SYNC_CONFIG_PREFIX = "offline_order_sync_config_"


class AppConfigStore:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url

    async def get(self, key: str) -> Any | None:
        async with session_scope(self.database_url) as session:
            result = await session.execute(sa.select(AppConfig.value).where(AppConfig.key == key))
            return result.scalar_one_or_none()

    async def set(self, key: str, value: Any) -> None:
        insert_fn = sqlite_insert if use_sqlite(self.database_url) else pg_insert
        stmt = insert_fn(AppConfig).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(
            index_elements=[AppConfig.key],
            set_={"value": stmt.excluded.value, "updated_at": sa.func.now()},
        )
        async with session_scope(self.database_url) as session:
            await session.execute(stmt)
            await session.commit()

    async def merge(self, key: str, updates: Mapping[str, Any]) -> dict[str, Any]:
        """Shallow-merge ``updates`` into the stored mapping and return the result."""

        current = await self.get(key)
        merged = {**(current if isinstance(current, dict) else {}), **dict(updates)}
        await self.set(key, merged)
        return merged
