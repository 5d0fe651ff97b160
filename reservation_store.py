"""Persistence for individual holds and bookings. No business rules live here."""

from datetime import datetime
from typing import Dict, List, Optional

from errors import NotFound
from models import ApprovalStatus, Reservation, ReservationStatus


class ReservationStore:

    def add(self, session, reservation: Reservation) -> Reservation:
        session.add(reservation)
        session.flush()
        return reservation

    def get(self, session, organization_id: str, reservation_id: str) -> Reservation:
        reservation = session.query(Reservation).populate_existing().filter(
            Reservation.id == reservation_id,
            Reservation.organization_id == organization_id,
        ).first()
        if reservation is None:
            raise NotFound("reservation not found", details={"reservation_id": reservation_id})
        return reservation

    def find_by_order(self, session, organization_id: str, order_id: str) -> List[Reservation]:
        return self.find(session, organization_id, order_id=order_id)

    def find_by_episode(self, session, organization_id: str, episode_id: str) -> List[Reservation]:
        return self.find(session, organization_id, episode_id=episode_id)

    def find(
        self,
        session,
        organization_id: str,
        *,
        order_id: Optional[str] = None,
        episode_id: Optional[str] = None,
        schedule_id: Optional[str] = None,
        status: Optional[ReservationStatus] = None,
        reserved_by: Optional[str] = None,
    ) -> List[Reservation]:
        query = session.query(Reservation).filter(Reservation.organization_id == organization_id)
        if order_id:
            query = query.filter(Reservation.order_id == order_id)
        if episode_id:
            query = query.filter(Reservation.episode_id == episode_id)
        if schedule_id:
            query = query.filter(Reservation.schedule_id == schedule_id)
        if status:
            query = query.filter(Reservation.status == ReservationStatus(status))
        if reserved_by:
            query = query.filter(Reservation.reserved_by == reserved_by)
        return query.order_by(Reservation.reserved_at.desc(), Reservation.id).all()

    def find_expired(self, session, now: datetime, organization_id: Optional[str] = None) -> List[Reservation]:
        """Holds still in ``reserved`` whose deadline has passed."""
        query = session.query(Reservation).filter(
            Reservation.status == ReservationStatus.RESERVED,
            Reservation.expires_at < now,
        )
        if organization_id:
            query = query.filter(Reservation.organization_id == organization_id)
        return query.order_by(Reservation.expires_at).all()

    def count_pending_for_order(self, session, organization_id: str, order_id: str) -> int:
        """Lines still awaiting a decision. Expired holds stay pending, so they keep the order open."""
        return session.query(Reservation).filter(
            Reservation.organization_id == organization_id,
            Reservation.order_id == order_id,
            Reservation.approval_status == ApprovalStatus.PENDING,
        ).count()

    def transition(
        self,
        session,
        reservation_id: str,
        *,
        expected_status: ReservationStatus,
        expected_approval: Optional[ApprovalStatus] = None,
        values: Dict,
        expires_before: Optional[datetime] = None,
    ) -> bool:
        """Check-and-set update; False when the row is no longer in the expected state."""
        query = session.query(Reservation).filter(
            Reservation.id == reservation_id,
            Reservation.status == expected_status,
        )
        if expected_approval is not None:
            query = query.filter(Reservation.approval_status == expected_approval)
        if expires_before is not None:
            query = query.filter(Reservation.expires_at < expires_before)
        return query.update(values, synchronize_session=False) == 1
