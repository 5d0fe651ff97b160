"""Per-(episode, placement) slot counters: the single source of truth for ad capacity.

Every counter mutation is one conditional UPDATE that moves ``count`` slots from a source bucket
to a target bucket, guarded by ``source >= count``. A zero row count means the guard failed and
nothing changed, so concurrent bookers can never drive a counter negative or oversell an episode.
"""

from collections import namedtuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from typing import Dict, List, Optional
import enum
import logging

from errors import InsufficientCapacity, InvalidRequest, LedgerIntegrityError, NotFound
from models import Episode, PlacementType, Reservation, ReservationStatus, Show, SlotLedgerEntry

logger = logging.getLogger(__name__)

# Episode length (minutes, inclusive bounds) -> slot counts, used when a show has none of its own
DEFAULT_SPOT_THRESHOLDS = [
    {"minLength": 0, "maxLength": 15, "preRoll": 1, "midRoll": 0, "postRoll": 0},
    {"minLength": 15, "maxLength": 30, "preRoll": 1, "midRoll": 1, "postRoll": 1},
    {"minLength": 30, "maxLength": 60, "preRoll": 1, "midRoll": 2, "postRoll": 1},
    {"minLength": 60, "maxLength": 120, "preRoll": 2, "midRoll": 3, "postRoll": 1},
]

FALLBACK_SPOTS = {
    PlacementType.PRE_ROLL: 1,
    PlacementType.MID_ROLL: 2,
    PlacementType.POST_ROLL: 1,
}

_THRESHOLD_KEYS = {
    PlacementType.PRE_ROLL: "preRoll",
    PlacementType.MID_ROLL: "midRoll",
    PlacementType.POST_ROLL: "postRoll",
}


class LedgerBucket(str, enum.Enum):
    AVAILABLE = 'available'
    RESERVED = 'reserved'
    BOOKED = 'booked'


_BUCKET_COLUMNS = {
    LedgerBucket.AVAILABLE: SlotLedgerEntry.available,
    LedgerBucket.RESERVED: SlotLedgerEntry.reserved,
    LedgerBucket.BOOKED: SlotLedgerEntry.booked,
}

LedgerChange = namedtuple("LedgerChange", ["before", "after"])


def calculate_episode_spots(length_minutes: int, thresholds: Optional[List[Dict]] = None) -> Dict[PlacementType, int]:
    """Slot counts for an episode of the given length, first matching threshold wins."""
    for threshold in thresholds or DEFAULT_SPOT_THRESHOLDS:
        if threshold["minLength"] <= length_minutes <= threshold["maxLength"]:
            return {
                placement: int(threshold.get(key, 0))
                for placement, key in _THRESHOLD_KEYS.items()
            }
    return dict(FALLBACK_SPOTS)


def validate_thresholds(thresholds: List[Dict]) -> None:
    """Reject malformed or overlapping length ranges."""
    ranges = []
    for index, threshold in enumerate(thresholds):
        try:
            low, high = int(threshold["minLength"]), int(threshold["maxLength"])
            counts = [int(threshold.get(key, 0)) for key in _THRESHOLD_KEYS.values()]
        except (KeyError, TypeError, ValueError):
            raise InvalidRequest("spot threshold is malformed", details={"index": index})
        if low > high or any(count < 0 for count in counts):
            raise InvalidRequest("spot threshold range or counts are invalid", details={"index": index})
        ranges.append((low, high, index))

    ranges.sort()
    for (_, prev_high, _), (low, _, index) in zip(ranges, ranges[1:]):
        # Adjacent ranges may share a boundary minute; the earlier one claims it
        if low < prev_high:
            raise InvalidRequest("spot threshold overlaps an existing range", details={"index": index})


class SlotLedger:
    """Counter operations; callers supply the session so each runs inside their transaction."""

    def derive_capacity(self, session, episode: Episode) -> Dict[PlacementType, int]:
        show = session.get(Show, episode.show_id)
        thresholds = show.spot_thresholds if show is not None else None
        length = episode.length_minutes
        if length is None:
            length = show.default_episode_length if show is not None else 30
        return calculate_episode_spots(length, thresholds)

    def ensure_entry(self, session, episode: Episode, placement_type: PlacementType,
                     total_slots: Optional[int] = None) -> SlotLedgerEntry:
        """Return the counter row, creating it from the show's spot configuration if missing."""
        placement_type = PlacementType(placement_type)
        key = (episode.id, placement_type)
        entry = session.get(SlotLedgerEntry, key)
        if entry is not None:
            return entry

        if total_slots is None:
            total_slots = self.derive_capacity(session, episode)[placement_type]
        if total_slots < 0:
            raise InvalidRequest("total_slots must not be negative")

        entry = SlotLedgerEntry(
            episode_id=episode.id,
            placement_type=placement_type,
            organization_id=episode.organization_id,
            total_slots=total_slots,
            available=total_slots,
            reserved=0,
            booked=0,
        )
        try:
            with session.begin_nested():
                session.add(entry)
        except IntegrityError:
            # Another worker created the row first
            entry = session.get(SlotLedgerEntry, key, populate_existing=True)
        else:
            logger.info(f"Ledger created: episode={episode.id} {placement_type.value} total={total_slots}")
        return entry

    def ensure_entries(self, session, episode: Episode) -> List[SlotLedgerEntry]:
        capacity = self.derive_capacity(session, episode)
        return [
            self.ensure_entry(session, episode, placement, capacity[placement])
            for placement in PlacementType
        ]

    def get_entry(self, session, organization_id: str, episode_id: str,
                  placement_type: PlacementType) -> SlotLedgerEntry:
        entry = session.get(SlotLedgerEntry, (episode_id, PlacementType(placement_type)))
        if entry is None or entry.organization_id != organization_id:
            raise NotFound("ledger entry not found", details={
                "episode_id": episode_id,
                "placement_type": PlacementType(placement_type).value,
            })
        return entry

    def list_entries(self, session, organization_id: str, episode_id: str) -> List[SlotLedgerEntry]:
        return session.query(SlotLedgerEntry).filter(
            SlotLedgerEntry.organization_id == organization_id,
            SlotLedgerEntry.episode_id == episode_id,
        ).order_by(SlotLedgerEntry.placement_type).all()

    def _move(self, session, episode_id: str, placement_type: PlacementType,
              source: LedgerBucket, target: LedgerBucket, count: int) -> Optional[LedgerChange]:
        """Atomically shift ``count`` slots between buckets; None when the guard fails."""
        if count < 1:
            raise InvalidRequest("count must be a positive integer", details={"count": count})

        placement_type = PlacementType(placement_type)
        source_col = _BUCKET_COLUMNS[source]
        target_col = _BUCKET_COLUMNS[target]

        updated = session.query(SlotLedgerEntry).filter(
            SlotLedgerEntry.episode_id == episode_id,
            SlotLedgerEntry.placement_type == placement_type,
            source_col >= count,
        ).update(
            {
                source_col: source_col - count,
                target_col: target_col + count,
            },
            synchronize_session=False,
        )
        if updated == 0:
            return None

        entry = session.get(SlotLedgerEntry, (episode_id, placement_type), populate_existing=True)
        after = entry.snapshot()
        before = dict(after)
        before[source.value] += count
        before[target.value] -= count
        return LedgerChange(before, after)

    def _missing(self, session, episode_id: str, placement_type: PlacementType) -> bool:
        return session.get(SlotLedgerEntry, (episode_id, PlacementType(placement_type))) is None

    def try_reserve(self, session, episode_id: str, placement_type: PlacementType, count: int) -> LedgerChange:
        """available -> reserved, or InsufficientCapacity with the ledger untouched."""
        change = self._move(session, episode_id, placement_type,
                            LedgerBucket.AVAILABLE, LedgerBucket.RESERVED, count)
        if change is not None:
            return change

        entry = session.get(SlotLedgerEntry, (episode_id, PlacementType(placement_type)), populate_existing=True)
        if entry is None:
            raise NotFound("ledger entry not found", details={
                "episode_id": episode_id,
                "placement_type": PlacementType(placement_type).value,
            })
        raise InsufficientCapacity("not enough slots available", details={
            "episode_id": episode_id,
            "placement_type": entry.placement_type.value,
            "requested": count,
            "available": entry.available,
        })

    def confirm(self, session, episode_id: str, placement_type: PlacementType, count: int) -> LedgerChange:
        """reserved -> booked."""
        change = self._move(session, episode_id, placement_type,
                            LedgerBucket.RESERVED, LedgerBucket.BOOKED, count)
        if change is None:
            raise self._integrity_error(session, "confirm", episode_id, placement_type, count)
        return change

    def release(self, session, episode_id: str, placement_type: PlacementType, count: int,
                from_state: LedgerBucket = LedgerBucket.RESERVED) -> LedgerChange:
        """reserved -> available (rejection, expiry) or booked -> available (post-approval cancellation)."""
        from_state = LedgerBucket(from_state)
        if from_state is LedgerBucket.AVAILABLE:
            raise InvalidRequest("slots can only be released from reserved or booked")
        change = self._move(session, episode_id, placement_type,
                            from_state, LedgerBucket.AVAILABLE, count)
        if change is None:
            raise self._integrity_error(session, f"release from {from_state.value}",
                                        episode_id, placement_type, count)
        return change

    def _integrity_error(self, session, operation, episode_id, placement_type, count):
        if self._missing(session, episode_id, placement_type):
            return NotFound("ledger entry not found", details={
                "episode_id": episode_id,
                "placement_type": PlacementType(placement_type).value,
            })
        message = (f"ledger {operation} of {count} slot(s) would go negative for "
                   f"episode={episode_id} {PlacementType(placement_type).value}")
        logger.error(message)
        return LedgerIntegrityError(message)

    def find_mismatches(self, session, organization_id: str) -> List[Dict]:
        """Ledger rows that are unbalanced or disagree with the live reservations against them."""
        live = session.query(
            Reservation.episode_id,
            Reservation.placement_type,
            Reservation.status,
            func.sum(Reservation.slot_count),
        ).filter(
            Reservation.organization_id == organization_id,
            Reservation.status.in_([ReservationStatus.RESERVED, ReservationStatus.CONFIRMED]),
        ).group_by(
            Reservation.episode_id, Reservation.placement_type, Reservation.status,
        ).all()

        held = {}
        for episode_id, placement_type, status, total in live:
            held[(episode_id, placement_type, status)] = int(total or 0)

        mismatches = []
        entries = session.query(SlotLedgerEntry).filter(
            SlotLedgerEntry.organization_id == organization_id
        ).all()
        for entry in entries:
            key = (entry.episode_id, entry.placement_type)
            expected_reserved = held.get(key + (ReservationStatus.RESERVED,), 0)
            expected_booked = held.get(key + (ReservationStatus.CONFIRMED,), 0)

            problems = []
            if entry.total_slots != entry.available + entry.reserved + entry.booked:
                problems.append("unbalanced")
            if entry.reserved != expected_reserved:
                problems.append("reserved_mismatch")
            if entry.booked != expected_booked:
                problems.append("booked_mismatch")
            if problems:
                mismatches.append({
                    **entry.to_dict(),
                    "problems": problems,
                    "expected_reserved": expected_reserved,
                    "expected_booked": expected_booked,
                })
        return mismatches

    def repair_mismatches(self, session, organization_id: str, *, dry_run: bool = True) -> List[Dict]:
        """Resync mismatched rows to the live reservations against them.

        Each repair keeps ``total_slots`` and rebuilds ``reserved``/``booked`` from live holds, with
        ``available`` taking the remainder. Rows whose live holds exceed capacity are reported and
        left alone. With ``dry_run`` nothing is written; the returned diffs show what would change.
        """
        repairs = []
        for mismatch in self.find_mismatches(session, organization_id):
            placement_type = PlacementType(mismatch["placement_type"])
            before = {key: mismatch[key] for key in ("total_slots", "available", "reserved", "booked")}
            after = {
                "total_slots": before["total_slots"],
                "available": before["total_slots"] - mismatch["expected_reserved"] - mismatch["expected_booked"],
                "reserved": mismatch["expected_reserved"],
                "booked": mismatch["expected_booked"],
            }
            repair = {
                "episode_id": mismatch["episode_id"],
                "placement_type": placement_type.value,
                "problems": mismatch["problems"],
                "before": before,
                "after": after,
                "applied": False,
            }
            if after["available"] < 0:
                repair["skipped"] = "live reservations exceed total_slots"
                logger.warning(f"Ledger repair skipped: episode={mismatch['episode_id']} "
                               f"{placement_type.value} is over-committed")
            elif not dry_run:
                # Only overwrite the counters we audited; a concurrent move means re-audit first
                updated = session.query(SlotLedgerEntry).filter(
                    SlotLedgerEntry.episode_id == mismatch["episode_id"],
                    SlotLedgerEntry.placement_type == placement_type,
                    SlotLedgerEntry.available == before["available"],
                    SlotLedgerEntry.reserved == before["reserved"],
                    SlotLedgerEntry.booked == before["booked"],
                ).update(
                    {
                        SlotLedgerEntry.available: after["available"],
                        SlotLedgerEntry.reserved: after["reserved"],
                        SlotLedgerEntry.booked: after["booked"],
                    },
                    synchronize_session=False,
                )
                repair["applied"] = updated == 1
            repairs.append(repair)
        return repairs
