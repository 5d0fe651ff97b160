"""Turns a sales schedule into holds, one line item at a time.

Binding is best-effort: a line that cannot be held is reported in ``errors`` and the rest of the
schedule still goes through, so the caller can retry only the failed lines.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional
import logging

from context import RequestContext
from errors import InvalidRequest, ReservationError
from models import ExclusivityLevel, HoldType, PlacementType, Reservation
from reservation_manager import ExclusivityTag, OwnerRefs, ReservationManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduleLineItem:
    show_id: str
    air_date: date
    placement_type: PlacementType
    price: Optional[float] = None
    episode_length: Optional[int] = None
    slot_count: int = 1


@dataclass(frozen=True)
class ScheduleRequest:
    items: List[ScheduleLineItem]
    schedule_id: Optional[str] = None
    order_id: Optional[str] = None
    campaign_id: Optional[str] = None
    advertiser_id: Optional[str] = None
    category: Optional[str] = None
    exclusivity_level: ExclusivityLevel = ExclusivityLevel.SHOW
    hold_type: HoldType = HoldType.SOFT
    ttl_seconds: Optional[int] = None


@dataclass(frozen=True)
class BindError:
    index: int
    show_id: str
    air_date: date
    placement_type: str
    code: str
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "index": self.index,
            "show_id": self.show_id,
            "air_date": self.air_date.isoformat(),
            "placement_type": self.placement_type,
            "code": self.code,
            "error": self.message,
            "details": self.details,
        }


@dataclass
class BindResult:
    created: List[Reservation] = field(default_factory=list)
    errors: List[BindError] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.errors

    def to_dict(self):
        return {
            "created": [reservation.to_dict() for reservation in self.created],
            "errors": [error.to_dict() for error in self.errors],
        }


class ScheduleBinder:

    def __init__(self, manager: ReservationManager):
        self.manager = manager
        self.catalog = manager.catalog

    def _resolve_episode(self, ctx: RequestContext, item: ScheduleLineItem):
        return self.manager.db.run_in_transaction(
            lambda session: self.catalog.resolve_episode(
                session, ctx.organization_id, item.show_id, item.air_date, item.episode_length,
            ),
            label="resolve_episode",
        )

    def bind(self, ctx: RequestContext, request: ScheduleRequest) -> BindResult:
        owner = OwnerRefs(
            schedule_id=request.schedule_id,
            order_id=request.order_id,
            campaign_id=request.campaign_id,
            advertiser_id=request.advertiser_id,
        )
        exclusivity = None
        if request.category:
            exclusivity = ExclusivityTag(category=request.category, level=request.exclusivity_level)

        result = BindResult()
        for index, item in enumerate(request.items):
            placement_value = getattr(item.placement_type, "value", item.placement_type)
            try:
                if item.price is not None and item.price < 0:
                    raise InvalidRequest("price must not be negative", details={"price": item.price})
                episode = self._resolve_episode(ctx, item)
                reservation = self.manager.create_hold(
                    ctx,
                    episode.id,
                    item.placement_type,
                    item.slot_count,
                    owner,
                    request.hold_type,
                    request.ttl_seconds,
                    exclusivity=exclusivity,
                    unit_price=item.price,
                )
            except ReservationError as e:
                logger.warning(f"Schedule line {index} not bound ({item.show_id} {item.air_date} "
                               f"{placement_value}): {e.code}")
                result.errors.append(BindError(
                    index=index,
                    show_id=item.show_id,
                    air_date=item.air_date,
                    placement_type=str(placement_value),
                    code=e.code,
                    message=e.message,
                    details=e.details,
                ))
                continue
            result.created.append(reservation)

        logger.info(f"Schedule {request.schedule_id or '-'} bound: "
                    f"{len(result.created)} created, {len(result.errors)} failed")
        return result
