"""
Owners Router — Register owners by Telegram id and manage their preferences.
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from review_responder.database import get_db
from review_responder.models import Owner
from review_responder.services import account_service
from review_responder.utils import parse_uuid

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────
class OwnerCreate(BaseModel):
    telegram_id: int
    telegram_username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class PreferencesUpdate(BaseModel):
    auto_approve_positive: Optional[bool] = None
    notification_enabled: Optional[bool] = None
    custom_instructions: Optional[str] = None


def _owner_to_dict(owner: Owner) -> dict:
    return {
        "id": str(owner.id),
        "telegram_id": owner.telegram_id,
        "telegram_username": owner.telegram_username,
        "first_name": owner.first_name,
        "last_name": owner.last_name,
        "is_active": owner.is_active,
    }


async def get_owner_or_404(db: AsyncSession, owner_id: str) -> Owner:
    owner = await account_service.get_owner(db, parse_uuid(owner_id, "owner_id"))
    if not owner:
        raise HTTPException(status_code=404, detail="Owner not found")
    return owner


# ── Endpoints ────────────────────────────────────────────────────────
@router.post("")
async def register_owner(payload: OwnerCreate, db: AsyncSession = Depends(get_db)):
    owner = await account_service.get_or_create_owner(
        db,
        telegram_id=payload.telegram_id,
        telegram_username=payload.telegram_username,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    return _owner_to_dict(owner)


@router.get("/{owner_id}")
async def get_owner(owner_id: str, db: AsyncSession = Depends(get_db)):
    return _owner_to_dict(await get_owner_or_404(db, owner_id))


@router.get("/{owner_id}/preferences")
async def get_preferences(owner_id: str, db: AsyncSession = Depends(get_db)):
    owner = await get_owner_or_404(db, owner_id)
    return await account_service.get_preferences(db, owner.id)


@router.put("/{owner_id}/preferences")
async def update_preferences(owner_id: str, payload: PreferencesUpdate, db: AsyncSession = Depends(get_db)):
    owner = await get_owner_or_404(db, owner_id)
    changes = payload.model_dump(exclude_none=True)
    return await account_service.update_preferences(db, owner.id, changes)
