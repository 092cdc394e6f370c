# directory.py — User lookups used to resolve notification recipients
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import User
from permissions import to_role


class UserDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def find_by_ids(self, user_ids: Iterable[str]) -> List[User]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        result = await self.db.execute(select(User).where(User.id.in_(ids)))
        by_id = {u.id: u for u in result.scalars().all()}
        # preserve caller order
        return [by_id[i] for i in ids if i in by_id]

    async def find_by_role_in(self, roles: Iterable) -> List[User]:
        wanted = [to_role(r) for r in roles]
        result = await self.db.execute(
            select(User)
            .where(User.role.in_(wanted), User.is_active == True)  # noqa: E712
            .order_by(User.created_at)
        )
        return list(result.scalars().all())
