"""Append-only inventory change log keyed by episode."""

from typing import Dict, List, Optional

from models import InventoryChange

HOLD_CREATED = "hold_created"
HOLD_APPROVED = "hold_approved"
HOLD_REJECTED = "hold_rejected"
HOLD_EXPIRED = "hold_expired"
LEDGER_REPAIRED = "ledger_repaired"


def record_change(
    session,
    *,
    organization_id: str,
    episode_id: str,
    change_type: str,
    changed_by: str,
    previous_value: Optional[Dict] = None,
    new_value: Optional[Dict] = None,
    order_id: Optional[str] = None,
) -> InventoryChange:
    change = InventoryChange(
        organization_id=organization_id,
        episode_id=episode_id,
        change_type=change_type,
        previous_value=previous_value,
        new_value=new_value,
        affected_orders=[order_id] if order_id else [],
        changed_by=changed_by,
    )
    session.add(change)
    return change


def list_changes(session, organization_id: str, episode_id: str) -> List[InventoryChange]:
    return session.query(InventoryChange).filter(
        InventoryChange.organization_id == organization_id,
        InventoryChange.episode_id == episode_id,
    ).order_by(InventoryChange.changed_at, InventoryChange.id).all()
