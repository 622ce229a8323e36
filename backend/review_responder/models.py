"""
Review Responder — Database Models
Owners, their vendor accounts, monitored store listings, ingested reviews and drafted replies.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Integer, BigInteger, Boolean, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID
from review_responder.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class VendorKind(str, enum.Enum):
    APP_STORE = "app_store"
    PLAY_STORE = "play_store"


class AccountType(str, enum.Enum):
    APP_STORE_CONNECT = "app_store_connect"
    GOOGLE_PLAY = "google_play"


ACCOUNT_TYPE_FOR_KIND = {
    VendorKind.APP_STORE.value: AccountType.APP_STORE_CONNECT.value,
    VendorKind.PLAY_STORE.value: AccountType.GOOGLE_PLAY.value,
}


class ReviewStatus(str, enum.Enum):
    PENDING = "pending"
    NOTIFIED = "notified"
    APPROVED = "approved"
    RESPONDED = "responded"
    REJECTED = "rejected"
    FAILED = "failed"


DEFAULT_PREFERENCES = {
    "auto_approve_positive": False,
    "notification_enabled": True,
    "custom_instructions": "",
}


# ══════════════════════════════════════════════════════════════════════
#  OWNERS
# ══════════════════════════════════════════════════════════════════════

class Owner(Base):
    """End user on whose behalf listings are monitored. Reached via a Telegram chat id."""
    __tablename__ = "owners"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    telegram_username: Mapped[str] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    preferences: Mapped["OwnerPreferences"] = relationship("OwnerPreferences", back_populates="owner", uselist=False, cascade="all, delete-orphan")
    accounts: Mapped[list["Account"]] = relationship("Account", back_populates="owner", cascade="all, delete-orphan")
    resources: Mapped[list["Resource"]] = relationship("Resource", back_populates="owner", cascade="all, delete-orphan")


class OwnerPreferences(Base):
    """Per-owner settings (notifications, drafting instructions)."""
    __tablename__ = "owner_preferences"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False, unique=True)
    preferences: Mapped[dict] = mapped_column(JSON, nullable=False, default=lambda: dict(DEFAULT_PREFERENCES))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    owner: Mapped["Owner"] = relationship("Owner", back_populates="preferences")


# ══════════════════════════════════════════════════════════════════════
#  ACCOUNTS — Vendor developer credentials
# ══════════════════════════════════════════════════════════════════════

class Account(Base):
    """
    App Store Connect API key (.p8) or Google Play service account JSON.
    credential_data is only rewritten by an explicit re-submission, which also
    resets is_valid. The poller only ever flips is_valid to False.
    """
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False)
    account_type: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    credential_data: Mapped[str] = mapped_column(Text, nullable=False)  # Fernet-encrypted
    # App Store Connect metadata (not sensitive)
    key_id: Mapped[str] = mapped_column(String(255), nullable=True)
    issuer_id: Mapped[str] = mapped_column(String(255), nullable=True)
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True)
    last_validated_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    validation_error: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    owner: Mapped["Owner"] = relationship("Owner", back_populates="accounts")
    resources: Mapped[list["Resource"]] = relationship("Resource", back_populates="account", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("account_type IN ('app_store_connect', 'google_play')", name="ck_accounts_account_type"),
        Index("ix_accounts_owner_id", "owner_id"),
        Index("ix_accounts_owner_type", "owner_id", "account_type"),
    )

    @property
    def vendor_kind(self) -> str:
        if self.account_type == AccountType.APP_STORE_CONNECT.value:
            return VendorKind.APP_STORE.value
        return VendorKind.PLAY_STORE.value


# ══════════════════════════════════════════════════════════════════════
#  RESOURCES — Monitored store listings
# ══════════════════════════════════════════════════════════════════════

class Resource(Base):
    """An app listing whose reviews are polled. last_poll_at is the fetch cursor."""
    __tablename__ = "resources"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    bundle_id: Mapped[str] = mapped_column(String(255), nullable=True)  # iOS bundle id / Android package
    store_id: Mapped[str] = mapped_column(String(255), nullable=False)  # Apple app id / Play package name
    store: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_auto_discovered: Mapped[bool] = mapped_column(Boolean, default=False)
    last_poll_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    owner: Mapped["Owner"] = relationship("Owner", back_populates="resources")
    account: Mapped["Account"] = relationship("Account", back_populates="resources")
    reviews: Mapped[list["Review"]] = relationship("Review", back_populates="resource", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("account_id", "store_id", name="uq_resource_per_account"),
        CheckConstraint("store IN ('app_store', 'play_store')", name="ck_resources_store"),
        Index("ix_resources_owner_id", "owner_id"),
        Index("ix_resources_account_id", "account_id"),
        Index("ix_resources_owner_active", "owner_id", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  REVIEWS — Ingested vendor reviews
# ══════════════════════════════════════════════════════════════════════

class Review(Base):
    """One row per (store, external_review_id), whichever resource found it first."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    resource_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("resources.id", ondelete="CASCADE"), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("owners.id", ondelete="CASCADE"), nullable=False)
    store: Mapped[str] = mapped_column(String(20), nullable=False)
    external_review_id: Mapped[str] = mapped_column(String(255), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    reviewer_name: Mapped[str] = mapped_column(String(255), nullable=True)
    review_date: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    territory: Mapped[str] = mapped_column(String(20), nullable=True)  # Country (Apple) or language (Google)
    app_version: Mapped[str] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ReviewStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    resource: Mapped["Resource"] = relationship("Resource", back_populates="reviews")
    responses: Mapped[list["Response"]] = relationship("Response", back_populates="review", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("store", "external_review_id", name="uq_review_per_store"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_reviews_rating"),
        Index("ix_reviews_resource_id", "resource_id"),
        Index("ix_reviews_status", "status"),
        Index("ix_reviews_owner_created", "owner_id", "created_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RESPONSES — AI drafts and posted replies
# ══════════════════════════════════════════════════════════════════════

class Response(Base):
    """A drafted reply. The newest row for a review is the one that gets posted."""
    __tablename__ = "responses"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    review_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False)
    ai_generated_text: Mapped[str] = mapped_column(Text, nullable=False)
    final_text: Mapped[str] = mapped_column(Text, nullable=True)  # What was actually posted (may be edited)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    approved_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    posted_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    post_error: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    review: Mapped["Review"] = relationship("Review", back_populates="responses")

    __table_args__ = (
        Index("ix_responses_review_id", "review_id"),
    )
