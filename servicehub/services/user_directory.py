"""User directory lookups (existence, admin discovery, identity materialization)."""

import logging
from typing import Dict, Iterable, Optional

from servicehub.database import Table
from servicehub.models.appointment import Role, UserSummary

logger = logging.getLogger(__name__)

USER_COLUMNS = 'id, username, email, phone, role'


class UserDirectory:
    """Read-only view over the users table."""

    def __init__(self, supabase):
        self.supabase = supabase

    async def get(self, user_id: str) -> Optional[UserSummary]:
        result = await self.supabase.table(Table.USERS)\
            .select(USER_COLUMNS)\
            .eq('id', user_id)\
            .limit(1)\
            .execute()
        if not result.data:
            return None
        return UserSummary.model_validate(result.data[0])

    async def exists(self, user_id: str) -> bool:
        return await self.get(user_id) is not None

    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, UserSummary]:
        """Fetch several users at once, keyed by id. Unknown ids are skipped."""
        ids = sorted({uid for uid in user_ids if uid})
        if not ids:
            return {}
        result = await self.supabase.table(Table.USERS)\
            .select(USER_COLUMNS)\
            .in_('id', ids)\
            .execute()
        return {row['id']: UserSummary.model_validate(row) for row in (result.data or [])}

    async def find_administrator(self) -> Optional[str]:
        """
        Pick one administrator deterministically.

        The oldest admin account wins, ties broken by id, so repeated calls
        return the same user regardless of table scan order.
        """
        result = await self.supabase.table(Table.USERS)\
            .select('id')\
            .eq('role', Role.ADMIN.value)\
            .order('created_at')\
            .order('id')\
            .limit(1)\
            .execute()
        if not result.data:
            return None
        return result.data[0]['id']
