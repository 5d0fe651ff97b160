"""ORM model definitions describing the ad inventory schema."""

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, Date, DateTime, Enum, JSON, Text,
    ForeignKey, Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone
import enum
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC, including on SQLite."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _values(enum_cls):
    return [member.value for member in enum_cls]


class PlacementType(str, enum.Enum):
    """Ad slot position within an episode."""
    PRE_ROLL = 'pre-roll'
    MID_ROLL = 'mid-roll'
    POST_ROLL = 'post-roll'


class ReservationStatus(str, enum.Enum):
    RESERVED = 'reserved'
    CONFIRMED = 'confirmed'
    RELEASED = 'released'
    EXPIRED = 'expired'


class ApprovalStatus(str, enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class HoldType(str, enum.Enum):
    SOFT = 'soft'
    HARD = 'hard'


class ExclusivityLevel(str, enum.Enum):
    EPISODE = 'episode'
    SHOW = 'show'
    NETWORK = 'network'


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, values_callable=_values, native_enum=False, length=16)


def _iso(value):
    return value.isoformat() if value is not None else None


class Show(Base):
    __tablename__ = 'shows'

    id = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    category = Column(String)
    default_episode_length = Column(Integer, nullable=False, default=30)
    # [{"minLength", "maxLength", "preRoll", "midRoll", "postRoll"}]; NULL means house defaults
    spot_thresholds = Column(JSON)
    created_at = Column(UTCDateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('idx_shows_org', 'organization_id'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "default_episode_length": self.default_episode_length,
            "spot_thresholds": self.spot_thresholds,
        }


class Episode(Base):
    __tablename__ = 'episodes'

    id = Column(String, primary_key=True, default=lambda: new_id('ep'))
    organization_id = Column(String, nullable=False)
    show_id = Column(String, ForeignKey('shows.id', ondelete='CASCADE'), nullable=False)
    air_date = Column(Date, nullable=False)
    title = Column(String)
    length_minutes = Column(Integer, nullable=False, default=30)
    created_at = Column(UTCDateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint('show_id', 'air_date', name='uq_episodes_show_air_date'),
        Index('idx_episodes_org', 'organization_id'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "show_id": self.show_id,
            "air_date": _iso(self.air_date),
            "title": self.title,
            "length_minutes": self.length_minutes,
        }


class SlotLedgerEntry(Base):
    __tablename__ = 'slot_ledger'

    episode_id = Column(String, ForeignKey('episodes.id', ondelete='CASCADE'), primary_key=True)
    placement_type = Column(_enum(PlacementType, 'placement_type_enum'), primary_key=True)
    organization_id = Column(String, nullable=False)

    total_slots = Column(Integer, nullable=False)
    available = Column(Integer, nullable=False)
    reserved = Column(Integer, nullable=False, default=0)
    booked = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('available >= 0 AND reserved >= 0 AND booked >= 0',
                        name='ck_slot_ledger_non_negative'),
        CheckConstraint('total_slots = available + reserved + booked',
                        name='ck_slot_ledger_balanced'),
        Index('idx_slot_ledger_org', 'organization_id'),
    )

    def snapshot(self):
        return {
            "total_slots": self.total_slots,
            "available": self.available,
            "reserved": self.reserved,
            "booked": self.booked,
        }

    def to_dict(self):
        return {
            "episode_id": self.episode_id,
            "placement_type": self.placement_type.value,
            **self.snapshot(),
        }


class Reservation(Base):
    __tablename__ = 'reservations'

    id = Column(String, primary_key=True, default=lambda: new_id('res'))
    organization_id = Column(String, nullable=False)
    episode_id = Column(String, ForeignKey('episodes.id', ondelete='CASCADE'), nullable=False)
    show_id = Column(String, nullable=False)
    placement_type = Column(_enum(PlacementType, 'placement_type_enum'), nullable=False)
    slot_number = Column(Integer)
    slot_count = Column(Integer, nullable=False, default=1)

    schedule_id = Column(String)
    order_id = Column(String)
    campaign_id = Column(String)
    advertiser_id = Column(String)
    category = Column(String)
    unit_price = Column(Float)

    status = Column(_enum(ReservationStatus, 'reservation_status_enum'),
                    default=ReservationStatus.RESERVED, nullable=False)
    hold_type = Column(_enum(HoldType, 'hold_type_enum'), default=HoldType.SOFT, nullable=False)
    reserved_by = Column(String, nullable=False)
    reserved_at = Column(UTCDateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime(timezone=True), nullable=False)
    released_at = Column(UTCDateTime(timezone=True))

    approval_status = Column(_enum(ApprovalStatus, 'approval_status_enum'),
                             default=ApprovalStatus.PENDING, nullable=False)
    approved_by = Column(String)
    approved_at = Column(UTCDateTime(timezone=True))
    rejection_reason = Column(Text)

    __table_args__ = (
        Index('idx_reservations_order', 'order_id'),
        Index('idx_reservations_episode', 'episode_id'),
        Index('idx_reservations_expiry', 'status', 'expires_at'),
        Index('idx_reservations_org', 'organization_id'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "episode_id": self.episode_id,
            "show_id": self.show_id,
            "placement_type": self.placement_type.value,
            "slot_number": self.slot_number,
            "slot_count": self.slot_count,
            "schedule_id": self.schedule_id,
            "order_id": self.order_id,
            "campaign_id": self.campaign_id,
            "advertiser_id": self.advertiser_id,
            "category": self.category,
            "unit_price": self.unit_price,
            "status": self.status.value,
            "hold_type": self.hold_type.value,
            "reserved_by": self.reserved_by,
            "reserved_at": _iso(self.reserved_at),
            "expires_at": _iso(self.expires_at),
            "released_at": _iso(self.released_at),
            "approval_status": self.approval_status.value,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "rejection_reason": self.rejection_reason,
        }


class ExclusivityRule(Base):
    __tablename__ = 'exclusivity_rules'

    id = Column(String, primary_key=True, default=lambda: new_id('excl'))
    organization_id = Column(String, nullable=False)
    show_id = Column(String, nullable=False)
    category = Column(String, nullable=False)
    level = Column(_enum(ExclusivityLevel, 'exclusivity_level_enum'), nullable=False)
    advertiser_id = Column(String)
    campaign_id = Column(String)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String, nullable=False)
    created_at = Column(UTCDateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint('start_date <= end_date', name='ck_exclusivity_window'),
        Index('idx_exclusivity_lookup', 'organization_id', 'show_id', 'category', 'level'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "show_id": self.show_id,
            "category": self.category,
            "level": self.level.value,
            "advertiser_id": self.advertiser_id,
            "campaign_id": self.campaign_id,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "is_active": self.is_active,
            "created_by": self.created_by,
        }


class InventoryChange(Base):
    """Append-only audit row for every ledger-affecting transition."""
    __tablename__ = 'inventory_change_log'

    id = Column(String, primary_key=True, default=lambda: new_id('icl'))
    organization_id = Column(String, nullable=False)
    episode_id = Column(String, nullable=False)
    change_type = Column(String, nullable=False)
    previous_value = Column(JSON)
    new_value = Column(JSON)
    affected_orders = Column(JSON)
    changed_by = Column(String, nullable=False)
    changed_at = Column(UTCDateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_change_log_episode', 'episode_id'),
        Index('idx_change_log_changed_at', 'changed_at'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "episode_id": self.episode_id,
            "change_type": self.change_type,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "affected_orders": self.affected_orders or [],
            "changed_by": self.changed_by,
            "changed_at": _iso(self.changed_at),
        }
