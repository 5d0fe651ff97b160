"""Hold lifecycle orchestration over the slot ledger and reservation store.

State machine::

    reserved --approve--> confirmed
    reserved --reject---> released
    reserved --sweep----> expired

Each transition runs in one transaction: the reservation row is moved with a check-and-set on
its current status, then the ledger counters are moved with a guarded update. Events are
published only after commit, so no lock is held while collaborators are notified.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union
import logging

import change_log
from catalog import InventoryCatalog
from context import APPROVE_HOLDS, MANAGE_INVENTORY, SYSTEM_ACTOR, VIEW_ALL_HOLDS, RequestContext
from database_manager import DatabaseManager
from errors import InvalidRequest, InvalidTransition, ReservationError
from events import (
    EventBus, HoldApproved, HoldCreated, HoldExpired, HoldRejected, OrderFullyApproved,
)
from exclusivity import ExclusivityChecker
from models import (
    ApprovalStatus, ExclusivityLevel, HoldType, PlacementType, Reservation, ReservationStatus, utcnow,
)
from reservation_store import ReservationStore
from slot_ledger import LedgerBucket, SlotLedger

logger = logging.getLogger(__name__)

DEFAULT_HOLD_TTL = timedelta(hours=24)
DEFAULT_REJECTION_REASON = "Rejected by approver"


@dataclass(frozen=True)
class OwnerRefs:
    """Sale artifacts that own a hold; opaque to the engine."""
    schedule_id: Optional[str] = None
    order_id: Optional[str] = None
    campaign_id: Optional[str] = None
    advertiser_id: Optional[str] = None


@dataclass(frozen=True)
class ExclusivityTag:
    """Category metadata checked against active exclusivity rules before a hold is placed.

    Without explicit dates the candidate window is the episode's air date.
    """
    category: str
    level: ExclusivityLevel = ExclusivityLevel.SHOW
    start_date: Optional[date] = None
    end_date: Optional[date] = None


def _coerce(enum_cls, value, field_name):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidRequest(f"invalid {field_name}", details={
            field_name: value,
            "allowed": [member.value for member in enum_cls],
        })


class ReservationManager:

    def __init__(
        self,
        db: DatabaseManager,
        *,
        ledger: Optional[SlotLedger] = None,
        store: Optional[ReservationStore] = None,
        checker: Optional[ExclusivityChecker] = None,
        catalog: Optional[InventoryCatalog] = None,
        bus: Optional[EventBus] = None,
        default_ttl: timedelta = DEFAULT_HOLD_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.ledger = ledger or SlotLedger()
        self.store = store or ReservationStore()
        self.checker = checker or ExclusivityChecker()
        self.catalog = catalog or InventoryCatalog(self.ledger)
        self.bus = bus or EventBus()
        self.default_ttl = default_ttl
        self.clock = clock

    def _ttl(self, ttl: Union[None, int, float, timedelta]) -> timedelta:
        if ttl is None:
            return self.default_ttl
        if not isinstance(ttl, timedelta):
            ttl = timedelta(seconds=ttl)
        if ttl.total_seconds() <= 0:
            raise InvalidRequest("hold ttl must be positive", details={"ttl_seconds": ttl.total_seconds()})
        return ttl

    def create_hold(
        self,
        ctx: RequestContext,
        episode_id: str,
        placement_type: PlacementType,
        count: int = 1,
        owner: Optional[OwnerRefs] = None,
        hold_type: HoldType = HoldType.SOFT,
        ttl: Union[None, int, float, timedelta] = None,
        *,
        exclusivity: Optional[ExclusivityTag] = None,
        slot_number: Optional[int] = None,
        unit_price: Optional[float] = None,
    ) -> Reservation:
        """Reserve ``count`` slots on an episode, pending approval until ``now + ttl``."""
        placement_type = _coerce(PlacementType, placement_type, "placement_type")
        hold_type = _coerce(HoldType, hold_type, "hold_type")
        ttl = self._ttl(ttl)
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            raise InvalidRequest("count must be a positive integer", details={"count": count})
        owner = owner or OwnerRefs()
        if exclusivity is not None:
            level = _coerce(ExclusivityLevel, exclusivity.level, "exclusivity_level")

        def work(session):
            episode = self.catalog.get_episode(session, ctx.organization_id, episode_id)
            self.ledger.ensure_entry(session, episode, placement_type)

            if exclusivity is not None:
                start = exclusivity.start_date or episode.air_date
                end = exclusivity.end_date or start
                self.checker.check_conflict(
                    session, ctx.organization_id, episode.show_id, exclusivity.category,
                    (start, end), level, advertiser_id=owner.advertiser_id,
                )

            change = self.ledger.try_reserve(session, episode.id, placement_type, count)

            now = self.clock()
            reservation = Reservation(
                organization_id=ctx.organization_id,
                episode_id=episode.id,
                show_id=episode.show_id,
                placement_type=placement_type,
                slot_number=slot_number,
                slot_count=count,
                schedule_id=owner.schedule_id,
                order_id=owner.order_id,
                campaign_id=owner.campaign_id,
                advertiser_id=owner.advertiser_id,
                category=exclusivity.category if exclusivity else None,
                unit_price=unit_price,
                status=ReservationStatus.RESERVED,
                hold_type=hold_type,
                reserved_by=ctx.actor_id,
                reserved_at=now,
                expires_at=now + ttl,
                approval_status=ApprovalStatus.PENDING,
            )
            self.store.add(session, reservation)
            change_log.record_change(
                session,
                organization_id=ctx.organization_id,
                episode_id=episode.id,
                change_type=change_log.HOLD_CREATED,
                changed_by=ctx.actor_id,
                previous_value={"placement_type": placement_type.value, **change.before},
                new_value={"placement_type": placement_type.value, "reservation_id": reservation.id, **change.after},
                order_id=owner.order_id,
            )
            return reservation

        reservation = self.db.run_in_transaction(work, label="create_hold")
        logger.info(f"Hold created: {reservation.id} episode={reservation.episode_id} "
                    f"{placement_type.value} x{count} by {ctx.actor_id}")
        self.bus.publish([HoldCreated(
            organization_id=ctx.organization_id,
            reservation_id=reservation.id,
            episode_id=reservation.episode_id,
            show_id=reservation.show_id,
            actor_id=ctx.actor_id,
            placement_type=placement_type.value,
            order_id=reservation.order_id,
            expires_at=reservation.expires_at,
        )])
        return reservation

    @staticmethod
    def _require_pending(reservation: Reservation, action: str) -> None:
        if (reservation.status != ReservationStatus.RESERVED
                or reservation.approval_status != ApprovalStatus.PENDING):
            raise InvalidTransition(
                f"cannot {action} a hold that is {reservation.status.value}/{reservation.approval_status.value}",
                details={
                    "reservation_id": reservation.id,
                    "status": reservation.status.value,
                    "approval_status": reservation.approval_status.value,
                },
            )

    def _decide(self, session, ctx: RequestContext, reservation_id: str, action: str, values: dict) -> Reservation:
        """Load, guard and check-and-set a pending hold; returns the row as it was before the update."""
        reservation = self.store.get(session, ctx.organization_id, reservation_id)
        self._require_pending(reservation, action)
        moved = self.store.transition(
            session,
            reservation_id,
            expected_status=ReservationStatus.RESERVED,
            expected_approval=ApprovalStatus.PENDING,
            values=values,
        )
        if not moved:
            # Another actor or the sweeper resolved it first
            self._require_pending(self.store.get(session, ctx.organization_id, reservation_id), action)
            raise InvalidTransition(f"cannot {action} hold {reservation_id}",
                                    details={"reservation_id": reservation_id})
        return reservation

    def approve(self, ctx: RequestContext, reservation_id: str) -> Reservation:
        """Move a pending hold to booked capacity."""
        ctx.require(APPROVE_HOLDS)

        def work(session) -> Tuple[Reservation, bool]:
            now = self.clock()
            held = self._decide(session, ctx, reservation_id, "approve", {
                Reservation.status: ReservationStatus.CONFIRMED,
                Reservation.approval_status: ApprovalStatus.APPROVED,
                Reservation.approved_by: ctx.actor_id,
                Reservation.approved_at: now,
            })
            change = self.ledger.confirm(session, held.episode_id, held.placement_type, held.slot_count)
            change_log.record_change(
                session,
                organization_id=ctx.organization_id,
                episode_id=held.episode_id,
                change_type=change_log.HOLD_APPROVED,
                changed_by=ctx.actor_id,
                previous_value={"reservation_id": held.id, "status": ReservationStatus.RESERVED.value,
                                "placement_type": held.placement_type.value, **change.before},
                new_value={"reservation_id": held.id, "status": ReservationStatus.CONFIRMED.value,
                           "placement_type": held.placement_type.value, **change.after},
                order_id=held.order_id,
            )
            order_complete = bool(held.order_id) and self.store.count_pending_for_order(
                session, ctx.organization_id, held.order_id) == 0
            return self.store.get(session, ctx.organization_id, reservation_id), order_complete

        reservation, order_complete = self.db.run_in_transaction(work, label="approve_hold")
        logger.info(f"Hold approved: {reservation.id} by {ctx.actor_id}")

        events = [HoldApproved(
            organization_id=ctx.organization_id,
            reservation_id=reservation.id,
            episode_id=reservation.episode_id,
            show_id=reservation.show_id,
            actor_id=ctx.actor_id,
            order_id=reservation.order_id,
        )]
        if order_complete:
            logger.info(f"Order fully approved: {reservation.order_id}")
            events.append(OrderFullyApproved(
                organization_id=ctx.organization_id,
                reservation_id=reservation.id,
                episode_id=reservation.episode_id,
                show_id=reservation.show_id,
                actor_id=ctx.actor_id,
                order_id=reservation.order_id,
            ))
        self.bus.publish(events)
        return reservation

    def reject(self, ctx: RequestContext, reservation_id: str, reason: Optional[str] = None) -> Reservation:
        """Release a pending hold back to available capacity."""
        ctx.require(APPROVE_HOLDS)
        reason = (reason or "").strip() or DEFAULT_REJECTION_REASON

        def work(session) -> Reservation:
            now = self.clock()
            held = self._decide(session, ctx, reservation_id, "reject", {
                Reservation.status: ReservationStatus.RELEASED,
                Reservation.approval_status: ApprovalStatus.REJECTED,
                Reservation.approved_by: ctx.actor_id,
                Reservation.approved_at: now,
                Reservation.released_at: now,
                Reservation.rejection_reason: reason,
            })
            change = self.ledger.release(session, held.episode_id, held.placement_type,
                                         held.slot_count, LedgerBucket.RESERVED)
            change_log.record_change(
                session,
                organization_id=ctx.organization_id,
                episode_id=held.episode_id,
                change_type=change_log.HOLD_REJECTED,
                changed_by=ctx.actor_id,
                previous_value={"reservation_id": held.id, "status": ReservationStatus.RESERVED.value,
                                "placement_type": held.placement_type.value, **change.before},
                new_value={"reservation_id": held.id, "status": ReservationStatus.RELEASED.value,
                           "placement_type": held.placement_type.value, "reason": reason, **change.after},
                order_id=held.order_id,
            )
            return self.store.get(session, ctx.organization_id, reservation_id)

        reservation = self.db.run_in_transaction(work, label="reject_hold")
        logger.info(f"Hold rejected: {reservation.id} by {ctx.actor_id} ({reason})")
        self.bus.publish([HoldRejected(
            organization_id=ctx.organization_id,
            reservation_id=reservation.id,
            episode_id=reservation.episode_id,
            show_id=reservation.show_id,
            actor_id=ctx.actor_id,
            order_id=reservation.order_id,
            reason=reason,
        )])
        return reservation

    def _expire_one(self, session, organization_id: str, reservation_id: str, now: datetime) -> Optional[HoldExpired]:
        held = self.store.get(session, organization_id, reservation_id)
        moved = self.store.transition(
            session,
            reservation_id,
            expected_status=ReservationStatus.RESERVED,
            expires_before=now,
            values={
                Reservation.status: ReservationStatus.EXPIRED,
                Reservation.released_at: now,
            },
        )
        if not moved:
            return None

        change = self.ledger.release(session, held.episode_id, held.placement_type,
                                     held.slot_count, LedgerBucket.RESERVED)
        change_log.record_change(
            session,
            organization_id=organization_id,
            episode_id=held.episode_id,
            change_type=change_log.HOLD_EXPIRED,
            changed_by=SYSTEM_ACTOR,
            previous_value={"reservation_id": held.id, "status": ReservationStatus.RESERVED.value,
                            "placement_type": held.placement_type.value, **change.before},
            new_value={"reservation_id": held.id, "status": ReservationStatus.EXPIRED.value,
                       "placement_type": held.placement_type.value, **change.after},
            order_id=held.order_id,
        )
        return HoldExpired(
            organization_id=organization_id,
            reservation_id=held.id,
            episode_id=held.episode_id,
            show_id=held.show_id,
            actor_id=SYSTEM_ACTOR,
            order_id=held.order_id,
        )

    def sweep_expired(self, now: Optional[datetime] = None, organization_id: Optional[str] = None) -> int:
        """Expire every hold past its deadline; returns how many this call released.

        Each hold is expired in its own transaction and re-checked there, so concurrent or
        repeated sweeps release a given hold at most once.
        """
        now = now or self.clock()
        candidates = self.db.run_in_transaction(
            lambda session: [
                (reservation.organization_id, reservation.id)
                for reservation in self.store.find_expired(session, now, organization_id)
            ],
            label="find_expired",
        )

        expired: List[HoldExpired] = []
        for org_id, reservation_id in candidates:
            try:
                event = self.db.run_in_transaction(
                    lambda session: self._expire_one(session, org_id, reservation_id, now),
                    label="expire_hold",
                )
            except ReservationError as e:
                # Left in reserved; the next sweep picks it up again
                logger.error(f"Failed to expire hold {reservation_id}: {e}")
                continue
            if event is not None:
                expired.append(event)

        if expired:
            logger.info(f"Expired {len(expired)} hold(s)")
        self.bus.publish(expired)
        return len(expired)

    def get_hold(self, ctx: RequestContext, reservation_id: str) -> Reservation:
        return self.db.run_in_transaction(
            lambda session: self.store.get(session, ctx.organization_id, reservation_id),
            label="get_hold",
        )

    def list_holds(
        self,
        ctx: RequestContext,
        *,
        order_id: Optional[str] = None,
        episode_id: Optional[str] = None,
        schedule_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Reservation]:
        """Holds matching the filters; callers without holds:view_all only see their own."""
        status = _coerce(ReservationStatus, status, "status") if status else None
        reserved_by = None if ctx.can(VIEW_ALL_HOLDS) else ctx.actor_id
        return self.db.run_in_transaction(
            lambda session: self.store.find(
                session,
                ctx.organization_id,
                order_id=order_id,
                episode_id=episode_id,
                schedule_id=schedule_id,
                status=status,
                reserved_by=reserved_by,
            ),
            label="list_holds",
        )

    def episode_inventory(self, ctx: RequestContext, episode_id: str):
        def work(session):
            episode = self.catalog.get_episode(session, ctx.organization_id, episode_id)
            return episode, self.ledger.list_entries(session, ctx.organization_id, episode.id)

        return self.db.run_in_transaction(work, label="episode_inventory")

    def episode_changes(self, ctx: RequestContext, episode_id: str):
        def work(session):
            episode = self.catalog.get_episode(session, ctx.organization_id, episode_id)
            return change_log.list_changes(session, ctx.organization_id, episode.id)

        return self.db.run_in_transaction(work, label="episode_changes")

    def audit(self, ctx: RequestContext):
        """Ledger rows inconsistent with the invariant or with live reservations."""
        ctx.require(VIEW_ALL_HOLDS)
        return self.db.run_in_transaction(
            lambda session: self.ledger.find_mismatches(session, ctx.organization_id),
            label="inventory_audit",
        )

    def repair_ledger(self, ctx: RequestContext, *, dry_run: bool = True) -> List[dict]:
        """Resync audited ledger rows to live reservations; a dry run only reports the diffs."""
        ctx.require(MANAGE_INVENTORY)

        def work(session):
            repairs = self.ledger.repair_mismatches(session, ctx.organization_id, dry_run=dry_run)
            for repair in repairs:
                if not repair["applied"]:
                    continue
                change_log.record_change(
                    session,
                    organization_id=ctx.organization_id,
                    episode_id=repair["episode_id"],
                    change_type=change_log.LEDGER_REPAIRED,
                    changed_by=ctx.actor_id,
                    previous_value={"placement_type": repair["placement_type"], **repair["before"]},
                    new_value={"placement_type": repair["placement_type"], **repair["after"]},
                )
            return repairs

        repairs = self.db.run_in_transaction(work, label="repair_ledger")
        applied = sum(1 for repair in repairs if repair["applied"])
        logger.info(f"Ledger repair ({'dry run' if dry_run else 'applied'}) by {ctx.actor_id}: "
                    f"{len(repairs)} mismatched, {applied} repaired")
        return repairs
