"""
Account Service — Owners, vendor credentials and monitored listings.
Plain data access: upserts and lookups, plus the two validity transitions
(re-submission sets valid, the poller sets invalid).
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from review_responder.connectors.base import ReviewConnector, VendorCredentials
from review_responder.crypto import get_cipher
from review_responder.models import (
    ACCOUNT_TYPE_FOR_KIND,
    DEFAULT_PREFERENCES,
    Account,
    AccountType,
    Owner,
    OwnerPreferences,
    Resource,
    Review,
)
from review_responder.utils import utcnow

logger = logging.getLogger(__name__)


# ── Owners ────────────────────────────────────────────────────────────

async def get_or_create_owner(
    db: AsyncSession,
    telegram_id: int,
    telegram_username: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> Owner:
    result = await db.execute(select(Owner).where(Owner.telegram_id == telegram_id))
    owner = result.scalar_one_or_none()
    if owner:
        owner.telegram_username = telegram_username or owner.telegram_username
        owner.first_name = first_name or owner.first_name
        owner.last_name = last_name or owner.last_name
        await db.flush()
        return owner

    owner = Owner(
        telegram_id=telegram_id,
        telegram_username=telegram_username,
        first_name=first_name,
        last_name=last_name,
    )
    db.add(owner)
    await db.flush()
    db.add(OwnerPreferences(owner_id=owner.id, preferences=dict(DEFAULT_PREFERENCES)))
    await db.flush()
    logger.info(f"Registered owner {owner.id} (telegram {telegram_id})")
    return owner


async def get_owner(db: AsyncSession, owner_id: uuid.UUID) -> Optional[Owner]:
    result = await db.execute(select(Owner).where(Owner.id == owner_id))
    return result.scalar_one_or_none()


async def get_owner_by_telegram_id(db: AsyncSession, telegram_id: int) -> Optional[Owner]:
    result = await db.execute(select(Owner).where(Owner.telegram_id == telegram_id))
    return result.scalar_one_or_none()


async def get_preferences(db: AsyncSession, owner_id: uuid.UUID) -> dict:
    result = await db.execute(select(OwnerPreferences).where(OwnerPreferences.owner_id == owner_id))
    prefs = result.scalar_one_or_none()
    return {**DEFAULT_PREFERENCES, **(prefs.preferences if prefs else {})}


async def update_preferences(db: AsyncSession, owner_id: uuid.UUID, changes: dict) -> dict:
    result = await db.execute(select(OwnerPreferences).where(OwnerPreferences.owner_id == owner_id))
    prefs = result.scalar_one_or_none()
    merged = {**DEFAULT_PREFERENCES, **(prefs.preferences if prefs else {}), **changes}
    if prefs is None:
        db.add(OwnerPreferences(owner_id=owner_id, preferences=merged))
    else:
        # Reassign so the JSON column is marked dirty
        prefs.preferences = merged
    await db.flush()
    return merged


# ── Accounts ──────────────────────────────────────────────────────────

async def store_account_credential(
    db: AsyncSession,
    owner_id: uuid.UUID,
    account_type: str,
    name: str,
    credential_data: str,
    key_id: Optional[str] = None,
    issuer_id: Optional[str] = None,
    account_id: Optional[uuid.UUID] = None,
) -> Account:
    """
    Explicit credential (re-)submission. The only path that writes credential_data.
    With account_id, or for an App Store key id the owner already submitted, replaces
    that account's credential and marks it valid again.
    """
    if account_type not in {t.value for t in AccountType}:
        raise ValueError(f"Unknown account type: {account_type}")

    now = utcnow()
    if account_id is None and key_id:
        existing = await db.scalar(
            select(Account).where(
                Account.owner_id == owner_id,
                Account.account_type == account_type,
                Account.key_id == key_id,
            )
        )
        account_id = existing.id if existing else None

    if account_id is not None:
        account = await get_account(db, account_id)
        if account is None or account.owner_id != owner_id:
            raise LookupError("Account not found")
        account.name = name
        account.credential_data = get_cipher().encrypt(credential_data)
        account.key_id = key_id
        account.issuer_id = issuer_id
        account.is_valid = True
        account.validation_error = None
        account.last_validated_at = now
        await db.flush()
        logger.info(f"Credentials re-submitted for account {account.id}; marked valid")
        return account

    account = Account(
        owner_id=owner_id,
        account_type=account_type,
        name=name,
        credential_data=get_cipher().encrypt(credential_data),
        key_id=key_id,
        issuer_id=issuer_id,
        is_valid=True,
        last_validated_at=now,
    )
    db.add(account)
    await db.flush()
    logger.info(f"Stored {account_type} account {account.id} for owner {owner_id}")
    return account


async def get_account(db: AsyncSession, account_id: uuid.UUID) -> Optional[Account]:
    result = await db.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one_or_none()


async def list_accounts(db: AsyncSession, owner_id: uuid.UUID) -> list[Account]:
    result = await db.execute(
        select(Account).where(Account.owner_id == owner_id).order_by(Account.created_at.desc())
    )
    return list(result.scalars().all())


async def invalidate_account(db: AsyncSession, account_id: uuid.UUID, error: str) -> bool:
    """
    Mark an account invalid and keep the raw vendor error.
    Conditional on is_valid so only the first caller for a failure wins; returns
    True when this call performed the transition.
    """
    result = await db.execute(
        update(Account)
        .where(Account.id == account_id, Account.is_valid.is_(True))
        .values(is_valid=False, validation_error=error, last_validated_at=utcnow(), updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    flipped = (result.rowcount or 0) > 0
    if flipped:
        logger.warning(f"Account {account_id} invalidated: {error}")
    return flipped


async def delete_account(db: AsyncSession, account_id: uuid.UUID) -> None:
    # Cascade runs in the ORM, so the whole tree is loaded up front
    result = await db.execute(
        select(Account)
        .options(
            selectinload(Account.resources)
            .selectinload(Resource.reviews)
            .selectinload(Review.responses)
        )
        .where(Account.id == account_id)
    )
    account = result.scalar_one_or_none()
    if account:
        await db.delete(account)
        await db.flush()
        logger.info(f"Deleted account {account_id} and its resources")


def credentials_for(account: Account) -> VendorCredentials:
    return VendorCredentials(
        credential_data=get_cipher().decrypt(account.credential_data),
        key_id=account.key_id,
        issuer_id=account.issuer_id,
    )


# ── Resources ─────────────────────────────────────────────────────────

async def upsert_resource(
    db: AsyncSession,
    owner_id: uuid.UUID,
    account: Account,
    store_id: str,
    name: str,
    bundle_id: Optional[str] = None,
    is_auto_discovered: bool = False,
) -> Resource:
    """Insert or refresh the listing keyed by (account, store_id)."""
    result = await db.execute(
        select(Resource).where(Resource.account_id == account.id, Resource.store_id == store_id)
    )
    resource = result.scalar_one_or_none()
    if resource:
        resource.name = name
        resource.bundle_id = bundle_id or resource.bundle_id
        await db.flush()
        return resource

    resource = Resource(
        owner_id=owner_id,
        account_id=account.id,
        store_id=store_id,
        store=account.vendor_kind,
        name=name,
        bundle_id=bundle_id,
        is_auto_discovered=is_auto_discovered,
    )
    db.add(resource)
    await db.flush()
    logger.debug(f"Added resource {name} ({store_id}) to account {account.id}")
    return resource


async def get_resource(db: AsyncSession, resource_id: uuid.UUID) -> Optional[Resource]:
    result = await db.execute(
        select(Resource).options(selectinload(Resource.account)).where(Resource.id == resource_id)
    )
    return result.scalar_one_or_none()


async def set_resource_active(db: AsyncSession, resource_id: uuid.UUID, is_active: bool) -> Optional[Resource]:
    resource = await get_resource(db, resource_id)
    if resource:
        resource.is_active = is_active
        await db.flush()
    return resource


async def list_active_resources_with_valid_accounts(db: AsyncSession) -> list[Resource]:
    result = await db.execute(
        select(Resource)
        .join(Account, Resource.account_id == Account.id)
        .options(selectinload(Resource.account), selectinload(Resource.owner))
        .where(Resource.is_active.is_(True), Account.is_valid.is_(True))
        .order_by(Resource.created_at)
    )
    return list(result.scalars().all())


async def list_owner_resources(db: AsyncSession, owner_id: uuid.UUID, active_only: bool = True) -> list[Resource]:
    query = (
        select(Resource)
        .options(selectinload(Resource.account))
        .where(Resource.owner_id == owner_id)
        .order_by(Resource.created_at)
    )
    if active_only:
        query = query.where(Resource.is_active.is_(True))
    result = await db.execute(query)
    return list(result.scalars().all())


async def advance_cursor(db: AsyncSession, resource: Resource, now: Optional[datetime] = None) -> datetime:
    """Move last_poll_at forward to `now`; never backwards."""
    now = now or utcnow()
    if resource.last_poll_at is None or now > resource.last_poll_at:
        resource.last_poll_at = now
        await db.flush()
    return resource.last_poll_at


async def discover_resources(db: AsyncSession, account: Account, connector: ReviewConnector) -> list[Resource]:
    """Pull the account's app list from the vendor and upsert each as auto-discovered."""
    if ACCOUNT_TYPE_FOR_KIND[connector.kind] != account.account_type:
        raise ValueError("Connector does not match account type")
    discovered = await connector.discover_resources(credentials_for(account))
    resources = []
    for app in discovered:
        resources.append(await upsert_resource(
            db,
            owner_id=account.owner_id,
            account=account,
            store_id=app.store_id,
            name=app.name,
            bundle_id=app.bundle_id,
            is_auto_discovered=True,
        ))
    logger.info(f"Discovered {len(resources)} apps for account {account.id}")
    return resources
