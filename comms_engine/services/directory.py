"""Read-only lookups against the tenant/user directory."""

from dataclasses import dataclass
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import User


@dataclass
class Contact:
    """Where a user can be reached."""
    user_id: UUID
    tenant_id: UUID
    name: str
    email: str | None
    phone: str | None


class UserDirectory:
    """Resolves target sets and contact details for fan-out."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def active_user_ids(self, tenant_id: UUID) -> list[UUID]:
        result = await self._session.execute(
            select(User.id).where(User.tenant_id == tenant_id, User.is_active.is_(True))
        )
        return list(result.scalars().all())

    async def user_ids_with_roles(self, tenant_id: UUID, roles: Iterable[str]) -> list[UUID]:
        roles = list(roles)
        if not roles:
            return []
        result = await self._session.execute(
            select(User.id).where(
                User.tenant_id == tenant_id,
                User.role.in_(roles),
                User.is_active.is_(True),
            )
        )
        return list(result.scalars().all())

    async def get_contact(self, user_id: UUID) -> Contact | None:
        user = await self._session.get(User, user_id)
        if user is None:
            return None
        return Contact(
            user_id=user.id,
            tenant_id=user.tenant_id,
            name=user.name,
            email=user.email,
            phone=user.phone,
        )

    async def tenant_of(self, user_id: UUID) -> UUID | None:
        result = await self._session.execute(select(User.tenant_id).where(User.id == user_id))
        return result.scalar_one_or_none()
