"""
Directory lookups and company (tenant) scoping.

A security company is the multi-tenant boundary: admins belong to it through
``CompanyUser``, guards through ``CompanyGuard`` and clients through
``CompanyClient``. SUPER_ADMIN is never scoped.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, or_

from guardtrack.errors import NotFoundError, UnauthorizedError
from guardtrack.models.user import (
    User, UserRole, Guard, Client, CompanyUser, CompanyGuard, CompanyClient
)

async def resolve_guard(db: AsyncSession, guard_ref: str) -> Guard:
    """Accept either a guard id or the id of the guard's user"""
    result = await db.execute(
        select(Guard).where(or_(Guard.id == guard_ref, Guard.user_id == guard_ref))
    )
    guard = result.scalars().first()

    if guard is None:
        raise NotFoundError("Guard not found")

    return guard

async def get_guard_for_user(db: AsyncSession, user_id: str) -> Optional[Guard]:
    result = await db.execute(select(Guard).where(Guard.user_id == user_id))
    return result.scalars().first()

async def get_guard_company_id(db: AsyncSession, guard_id: str) -> Optional[str]:
    result = await db.execute(
        select(CompanyGuard.security_company_id).where(
            CompanyGuard.guard_id == guard_id,
            CompanyGuard.is_active == True
        )
    )
    return result.scalars().first()

async def guard_belongs_to_company(db: AsyncSession, guard_id: str, company_id: str) -> bool:
    result = await db.execute(
        select(CompanyGuard.id).where(
            CompanyGuard.guard_id == guard_id,
            CompanyGuard.security_company_id == company_id,
            CompanyGuard.is_active == True
        )
    )
    return result.scalars().first() is not None

async def get_user_company_id(db: AsyncSession, user: User) -> Optional[str]:
    if user.role == UserRole.SUPER_ADMIN:
        return None

    if user.role == UserRole.ADMIN:
        result = await db.execute(
            select(CompanyUser.security_company_id).where(
                CompanyUser.user_id == user.id,
                CompanyUser.is_active == True
            )
        )
        return result.scalars().first()

    if user.role == UserRole.CLIENT:
        result = await db.execute(
            select(CompanyClient.security_company_id)
            .join(Client, Client.id == CompanyClient.client_id)
            .where(
                Client.user_id == user.id,
                CompanyClient.is_active == True
            )
        )
        return result.scalars().first()

    guard = await get_guard_for_user(db, user.id)
    if guard is None:
        return None
    return await get_guard_company_id(db, guard.id)

async def ensure_guard_access(db: AsyncSession, user: User, guard_ref: str) -> Guard:
    """
    Resolve the guard and check the caller may see its data.

    Guards only see themselves; admins and clients only see guards of their
    own company.
    """
    guard = await resolve_guard(db, guard_ref)

    if user.role == UserRole.SUPER_ADMIN:
        return guard

    if user.role == UserRole.GUARD:
        if guard.user_id != user.id:
            raise UnauthorizedError("Guards can only access their own data")
        return guard

    company_id = await get_user_company_id(db, user)
    if company_id is None or not await guard_belongs_to_company(db, guard.id, company_id):
        raise UnauthorizedError("Guard does not belong to your company")

    return guard

async def get_company_scope(db: AsyncSession, user: User) -> Optional[str]:
    """Company filter for list queries; None means unscoped (SUPER_ADMIN)"""
    if user.role == UserRole.SUPER_ADMIN:
        return None

    company_id = await get_user_company_id(db, user)
    if company_id is None:
        raise UnauthorizedError("User is not linked to a security company")

    return company_id
