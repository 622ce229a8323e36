"""
Accounts Router — Vendor credentials and the listings monitored under them.
Submitting credentials again for an existing account is the only way to make
an invalidated account valid.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from review_responder.connectors.base import FailureKind, ReviewConnector, VendorError
from review_responder.database import get_db
from review_responder.dependencies import get_connectors
from review_responder.models import Account, AccountType, Resource
from review_responder.routers.owners import get_owner_or_404
from review_responder.services import account_service
from review_responder.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────
class AccountSubmit(BaseModel):
    owner_id: str
    account_type: AccountType
    name: str
    credential_data: str  # .p8 private key or service-account JSON
    key_id: Optional[str] = None
    issuer_id: Optional[str] = None


class CredentialResubmit(BaseModel):
    name: Optional[str] = None
    credential_data: str
    key_id: Optional[str] = None
    issuer_id: Optional[str] = None


class ResourceCreate(BaseModel):
    store_id: str
    name: str
    bundle_id: Optional[str] = None


class ResourceUpdate(BaseModel):
    is_active: bool


# ── Helpers ───────────────────────────────────────────────────────────
def _account_to_dict(account: Account) -> dict:
    """Never includes credential material."""
    return {
        "id": str(account.id),
        "owner_id": str(account.owner_id),
        "account_type": account.account_type,
        "store": account.vendor_kind,
        "name": account.name,
        "key_id": account.key_id,
        "issuer_id": account.issuer_id,
        "is_valid": account.is_valid,
        "validation_error": account.validation_error,
        "last_validated_at": account.last_validated_at.isoformat() if account.last_validated_at else None,
    }


def _resource_to_dict(resource: Resource) -> dict:
    return {
        "id": str(resource.id),
        "account_id": str(resource.account_id) if resource.account_id else None,
        "name": resource.name,
        "store": resource.store,
        "store_id": resource.store_id,
        "bundle_id": resource.bundle_id,
        "is_active": resource.is_active,
        "is_auto_discovered": resource.is_auto_discovered,
        "last_poll_at": resource.last_poll_at.isoformat() if resource.last_poll_at else None,
    }


async def _get_account(db: AsyncSession, account_id: str) -> Account:
    account = await account_service.get_account(db, parse_uuid(account_id, "account_id"))
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


def _require_key_metadata(account_type: str, key_id: Optional[str], issuer_id: Optional[str]) -> None:
    if account_type == AccountType.APP_STORE_CONNECT.value and (not key_id or not issuer_id):
        raise HTTPException(status_code=400, detail="App Store Connect accounts need key_id and issuer_id.")


# ── Accounts ──────────────────────────────────────────────────────────
@router.post("")
async def submit_account(payload: AccountSubmit, db: AsyncSession = Depends(get_db)):
    owner = await get_owner_or_404(db, payload.owner_id)
    _require_key_metadata(payload.account_type.value, payload.key_id, payload.issuer_id)
    account = await account_service.store_account_credential(
        db,
        owner_id=owner.id,
        account_type=payload.account_type.value,
        name=payload.name,
        credential_data=payload.credential_data,
        key_id=payload.key_id,
        issuer_id=payload.issuer_id,
    )
    return _account_to_dict(account)


@router.put("/{account_id}/credentials")
async def resubmit_credentials(account_id: str, payload: CredentialResubmit, db: AsyncSession = Depends(get_db)):
    account = await _get_account(db, account_id)
    key_id = payload.key_id or account.key_id
    issuer_id = payload.issuer_id or account.issuer_id
    _require_key_metadata(account.account_type, key_id, issuer_id)
    account = await account_service.store_account_credential(
        db,
        owner_id=account.owner_id,
        account_type=account.account_type,
        name=payload.name or account.name,
        credential_data=payload.credential_data,
        key_id=key_id,
        issuer_id=issuer_id,
        account_id=account.id,
    )
    return _account_to_dict(account)


@router.get("")
async def list_accounts(owner_id: str = Query(...), db: AsyncSession = Depends(get_db)):
    owner = await get_owner_or_404(db, owner_id)
    return [_account_to_dict(a) for a in await account_service.list_accounts(db, owner.id)]


@router.delete("/{account_id}")
async def delete_account(account_id: str, db: AsyncSession = Depends(get_db)):
    account = await _get_account(db, account_id)
    await account_service.delete_account(db, account.id)
    return {"status": "deleted", "id": account_id}


@router.post("/{account_id}/discover")
async def discover_resources(
    account_id: str,
    db: AsyncSession = Depends(get_db),
    connectors: dict[str, ReviewConnector] = Depends(get_connectors),
):
    """Import every app visible to the account's API key."""
    account = await _get_account(db, account_id)
    if not account.is_valid:
        raise HTTPException(status_code=409, detail="Account credentials are invalid. Re-submit them first.")
    connector = connectors.get(account.vendor_kind)
    if connector is None or not connector.supports_discovery:
        raise HTTPException(status_code=400, detail=f"App discovery is not supported for {account.vendor_kind}")
    try:
        resources = await account_service.discover_resources(db, account, connector)
    except VendorError as e:
        logger.error(f"Discovery failed for account {account.id}: {e}")
        if connector.classify_failure(e) == FailureKind.AUTH:
            await account_service.invalidate_account(db, account.id, str(e))
            await db.commit()  # get_db rolls back on the raised HTTPException
            raise HTTPException(status_code=401, detail=f"Credentials rejected by {account.vendor_kind}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return [_resource_to_dict(r) for r in resources]


# ── Resources ─────────────────────────────────────────────────────────
@router.post("/{account_id}/resources")
async def add_resource(account_id: str, payload: ResourceCreate, db: AsyncSession = Depends(get_db)):
    account = await _get_account(db, account_id)
    resource = await account_service.upsert_resource(
        db,
        owner_id=account.owner_id,
        account=account,
        store_id=payload.store_id,
        name=payload.name,
        bundle_id=payload.bundle_id,
    )
    return _resource_to_dict(resource)


@router.get("/resources")
async def list_resources(
    owner_id: str = Query(...),
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    owner = await get_owner_or_404(db, owner_id)
    resources = await account_service.list_owner_resources(db, owner.id, active_only=not include_inactive)
    return [_resource_to_dict(r) for r in resources]


@router.patch("/resources/{resource_id}")
async def update_resource(resource_id: str, payload: ResourceUpdate, db: AsyncSession = Depends(get_db)):
    resource = await account_service.set_resource_active(db, parse_uuid(resource_id, "resource_id"), payload.is_active)
    if not resource:
        raise HTTPException(status_code=404, detail="Resource not found")
    return _resource_to_dict(resource)
