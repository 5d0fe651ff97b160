"""Category-exclusivity rules and the overlap check that vetoes competing holds."""

from collections import namedtuple
from datetime import date
from typing import List, Optional
import logging

from context import MANAGE_EXCLUSIVITY, RequestContext
from errors import ExclusivityConflict, InvalidRequest, NotFound
from models import ExclusivityLevel, ExclusivityRule

logger = logging.getLogger(__name__)

DateRange = namedtuple("DateRange", ["start", "end"])


def _as_range(candidate_range) -> DateRange:
    start, end = candidate_range
    if start > end:
        raise InvalidRequest("date range start must not be after its end", details={
            "start": start.isoformat(), "end": end.isoformat(),
        })
    return DateRange(start, end)


class ExclusivityChecker:

    def overlapping_rules(
        self,
        session,
        organization_id: str,
        show_id: str,
        category: str,
        candidate_range,
        level: ExclusivityLevel,
        exclude_rule_id: Optional[str] = None,
    ) -> List[ExclusivityRule]:
        candidate = _as_range(candidate_range)
        query = session.query(ExclusivityRule).filter(
            ExclusivityRule.organization_id == organization_id,
            ExclusivityRule.show_id == show_id,
            ExclusivityRule.category == category,
            ExclusivityRule.level == ExclusivityLevel(level),
            ExclusivityRule.is_active.is_(True),
            ExclusivityRule.start_date <= candidate.end,
            ExclusivityRule.end_date >= candidate.start,
        )
        if exclude_rule_id:
            query = query.filter(ExclusivityRule.id != exclude_rule_id)
        return query.order_by(ExclusivityRule.start_date).all()

    def check_conflict(
        self,
        session,
        organization_id: str,
        show_id: str,
        category: str,
        candidate_range,
        level: ExclusivityLevel,
        *,
        advertiser_id: Optional[str] = None,
        exclude_rule_id: Optional[str] = None,
    ) -> None:
        """Raise ExclusivityConflict if an active rule covers this show/category/level and window.

        When ``advertiser_id`` is given, rules held by that same advertiser do not count: the
        exclusivity exists to protect them, not to block them.
        """
        rules = self.overlapping_rules(session, organization_id, show_id, category,
                                       candidate_range, level, exclude_rule_id)
        if advertiser_id:
            rules = [rule for rule in rules if rule.advertiser_id != advertiser_id]
        if not rules:
            return

        rule = rules[0]
        raise ExclusivityConflict(
            f"category '{category}' is exclusive on show {show_id} from {rule.start_date} to {rule.end_date}",
            details={
                "rule_id": rule.id,
                "show_id": show_id,
                "category": category,
                "level": rule.level.value,
                "start_date": rule.start_date.isoformat(),
                "end_date": rule.end_date.isoformat(),
                "advertiser_id": rule.advertiser_id,
            },
        )

    def create(
        self,
        session,
        ctx: RequestContext,
        *,
        show_id: str,
        category: str,
        level: ExclusivityLevel,
        start_date: date,
        end_date: date,
        advertiser_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        is_active: bool = True,
    ) -> ExclusivityRule:
        ctx.require(MANAGE_EXCLUSIVITY)
        level = ExclusivityLevel(level)
        _as_range((start_date, end_date))
        if is_active:
            self.check_conflict(session, ctx.organization_id, show_id, category,
                                (start_date, end_date), level)

        rule = ExclusivityRule(
            organization_id=ctx.organization_id,
            show_id=show_id,
            category=category,
            level=level,
            advertiser_id=advertiser_id,
            campaign_id=campaign_id,
            start_date=start_date,
            end_date=end_date,
            is_active=is_active,
            created_by=ctx.actor_id,
        )
        session.add(rule)
        session.flush()
        logger.info(f"Exclusivity rule created: {rule.id} show={show_id} category={category} level={level.value}")
        return rule

    def set_active(self, session, ctx: RequestContext, rule_id: str, is_active: bool) -> ExclusivityRule:
        """Toggle a rule; re-activation must not overlap another active rule."""
        ctx.require(MANAGE_EXCLUSIVITY)
        rule = session.query(ExclusivityRule).filter(
            ExclusivityRule.id == rule_id,
            ExclusivityRule.organization_id == ctx.organization_id,
        ).first()
        if rule is None:
            raise NotFound("exclusivity rule not found", details={"rule_id": rule_id})

        if is_active and not rule.is_active:
            self.check_conflict(session, ctx.organization_id, rule.show_id, rule.category,
                                (rule.start_date, rule.end_date), rule.level,
                                exclude_rule_id=rule.id)
        rule.is_active = is_active
        session.flush()
        return rule

    def list_rules(self, session, organization_id: str, show_id: Optional[str] = None,
                   active_only: bool = False) -> List[ExclusivityRule]:
        query = session.query(ExclusivityRule).filter(ExclusivityRule.organization_id == organization_id)
        if show_id:
            query = query.filter(ExclusivityRule.show_id == show_id)
        if active_only:
            query = query.filter(ExclusivityRule.is_active.is_(True))
        return query.order_by(ExclusivityRule.show_id, ExclusivityRule.start_date).all()
