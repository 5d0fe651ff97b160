"""Show registry and on-demand episode creation with their ledger rows."""

from datetime import date
from sqlalchemy.exc import IntegrityError
from typing import Dict, List, Optional
import logging

from context import MANAGE_INVENTORY, RequestContext
from errors import InvalidRequest, NotFound
from models import Episode, Show
from slot_ledger import SlotLedger, validate_thresholds

logger = logging.getLogger(__name__)


class InventoryCatalog:

    def __init__(self, ledger: Optional[SlotLedger] = None):
        self.ledger = ledger or SlotLedger()

    def register_show(
        self,
        session,
        ctx: RequestContext,
        show_id: str,
        *,
        name: str,
        category: Optional[str] = None,
        default_episode_length: int = 30,
        spot_thresholds: Optional[List[Dict]] = None,
    ) -> Show:
        """Create or update show metadata. Existing ledger rows keep their capacity."""
        ctx.require(MANAGE_INVENTORY)
        if default_episode_length <= 0:
            raise InvalidRequest("default_episode_length must be positive")
        if spot_thresholds is not None:
            validate_thresholds(spot_thresholds)

        show = session.get(Show, show_id)
        if show is not None and show.organization_id != ctx.organization_id:
            raise NotFound("show not found", details={"show_id": show_id})
        if show is None:
            show = Show(id=show_id, organization_id=ctx.organization_id)
            session.add(show)
        show.name = name
        show.category = category
        show.default_episode_length = default_episode_length
        show.spot_thresholds = spot_thresholds
        session.flush()
        return show

    def get_show(self, session, organization_id: str, show_id: str) -> Show:
        show = session.get(Show, show_id)
        if show is None or show.organization_id != organization_id:
            raise NotFound("show not found", details={"show_id": show_id})
        return show

    def get_episode(self, session, organization_id: str, episode_id: str) -> Episode:
        episode = session.get(Episode, episode_id)
        if episode is None or episode.organization_id != organization_id:
            raise NotFound("episode not found", details={"episode_id": episode_id})
        return episode

    def find_episode(self, session, organization_id: str, show_id: str, air_date: date) -> Optional[Episode]:
        return session.query(Episode).filter(
            Episode.organization_id == organization_id,
            Episode.show_id == show_id,
            Episode.air_date == air_date,
        ).first()

    def resolve_episode(self, session, organization_id: str, show_id: str, air_date: date,
                        length_minutes: Optional[int] = None) -> Episode:
        """Find the show's episode for ``air_date``, creating it and its ledger rows if absent."""
        show = self.get_show(session, organization_id, show_id)
        episode = self.find_episode(session, organization_id, show_id, air_date)
        if episode is not None:
            self.ledger.ensure_entries(session, episode)
            return episode

        episode = Episode(
            organization_id=organization_id,
            show_id=show.id,
            air_date=air_date,
            title=f"{show.name} - {air_date.isoformat()}",
            length_minutes=length_minutes or show.default_episode_length,
        )
        try:
            with session.begin_nested():
                session.add(episode)
        except IntegrityError:
            episode = self.find_episode(session, organization_id, show_id, air_date)
        else:
            logger.info(f"Episode created on demand: {episode.id} show={show_id} air_date={air_date}")

        self.ledger.ensure_entries(session, episode)
        return episode
