"""HTTP entrypoint for the ad inventory reservation engine."""

from flask import Flask, request, jsonify, g
from flask_cors import CORS
import logging
from datetime import date, timedelta
import signal
import atexit
from typing import Any, Dict, List, Optional

from config import Settings
from context import APPROVE_HOLDS, RequestContext
from database_manager import DatabaseManager
from errors import InvalidRequest, ReservationError
from events import EventBus, log_event
from expiration_sweeper import ExpirationSweeper
from reservation_manager import ExclusivityTag, OwnerRefs, ReservationManager
from schedule_binder import ScheduleBinder, ScheduleLineItem, ScheduleRequest

logger = logging.getLogger(__name__)


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message, "code": InvalidRequest.code}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def require_json_object() -> Dict[str, Any]:
    """Ensure the request body is a JSON object before proceeding."""
    if not request.is_json:
        raise InvalidRequest("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRequest("request body must be a JSON object")

    return data


def optional_string(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{key} must be a non-empty string")
    return value.strip()


def required_string(data: Dict[str, Any], key: str) -> str:
    value = optional_string(data, key)
    if value is None:
        raise InvalidRequest(f"{key} is required")
    return value


def parse_date(value: Any, key: str) -> date:
    if not isinstance(value, str):
        raise InvalidRequest(f"{key} must be an ISO date (YYYY-MM-DD)")
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        raise InvalidRequest(f"{key} must be an ISO date (YYYY-MM-DD)", details={key: value})


def optional_date(data: Dict[str, Any], key: str) -> Optional[date]:
    value = data.get(key)
    return None if value is None else parse_date(value, key)


def positive_int(data: Dict[str, Any], key: str, default: Optional[int] = None) -> Optional[int]:
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool):  # Reject boolean masquerading as int
        raise InvalidRequest(f"{key} must be a positive integer")
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if not isinstance(value, int) or value < 1:
        raise InvalidRequest(f"{key} must be a positive integer", details={key: value})
    return value


def optional_number(data: Dict[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRequest(f"{key} must be a number")
    return float(value)


def owner_refs(data: Dict[str, Any]) -> OwnerRefs:
    return OwnerRefs(
        schedule_id=optional_string(data, "schedule_id"),
        order_id=optional_string(data, "order_id"),
        campaign_id=optional_string(data, "campaign_id"),
        advertiser_id=optional_string(data, "advertiser_id"),
    )


def exclusivity_tag(data: Dict[str, Any]) -> Optional[ExclusivityTag]:
    category = optional_string(data, "category")
    if category is None:
        return None
    return ExclusivityTag(
        category=category,
        level=data.get("exclusivity_level") or "show",
        start_date=optional_date(data, "exclusivity_start"),
        end_date=optional_date(data, "exclusivity_end"),
    )


def schedule_request(data: Dict[str, Any], settings: Settings) -> ScheduleRequest:
    raw_items = data.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise InvalidRequest("items must be a non-empty JSON array")

    items: List[ScheduleLineItem] = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise InvalidRequest("each schedule item must be an object", details={"index": index})
        try:
            items.append(ScheduleLineItem(
                show_id=required_string(raw, "show_id"),
                air_date=parse_date(raw.get("air_date"), "air_date"),
                placement_type=required_string(raw, "placement_type"),
                price=optional_number(raw, "price"),
                episode_length=positive_int(raw, "episode_length"),
                slot_count=positive_int(raw, "slot_count", 1),
            ))
        except InvalidRequest as e:
            e.details = {**e.details, "index": index}
            raise

    ttl = positive_int(data, "ttl_seconds")
    return ScheduleRequest(
        items=items,
        schedule_id=optional_string(data, "schedule_id"),
        order_id=optional_string(data, "order_id"),
        campaign_id=optional_string(data, "campaign_id"),
        advertiser_id=optional_string(data, "advertiser_id"),
        category=optional_string(data, "category"),
        exclusivity_level=data.get("exclusivity_level") or "show",
        hold_type=data.get("hold_type") or "soft",
        ttl_seconds=settings.clamp_ttl(ttl) if ttl is not None else None,
    )


def create_app(settings: Optional[Settings] = None, *, start_sweeper: Optional[bool] = None) -> Flask:
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    CORS(app)

    db = DatabaseManager(
        settings.database_url,
        retries=settings.transaction_retries,
        retry_backoff=settings.retry_backoff_seconds,
    )
    bus = EventBus()
    bus.subscribe_all(log_event)
    manager = ReservationManager(db, bus=bus, default_ttl=timedelta(seconds=settings.hold_ttl_seconds))
    binder = ScheduleBinder(manager)
    checker = manager.checker
    sweeper = ExpirationSweeper(manager, settings.sweep_interval_seconds)

    app.extensions["inventory"] = {
        "settings": settings,
        "db": db,
        "bus": bus,
        "manager": manager,
        "binder": binder,
        "sweeper": sweeper,
    }

    @app.errorhandler(ReservationError)
    def handle_reservation_error(error: ReservationError):
        if error.http_status >= 500:
            logger.error(f"{request.method} {request.path} failed: {error.message} {error.details}")
        return jsonify(error.to_dict()), error.http_status

    @app.before_request
    def load_context():
        if request.endpoint in (None, "health_check") or request.method == "OPTIONS":
            return None
        organization_id = request.headers.get("X-Organization-Id", "").strip()
        actor_id = request.headers.get("X-Actor-Id", "").strip()
        if not organization_id or not actor_id:
            return jsonify({"error": "missing caller identity", "code": "unauthenticated"}), 401
        g.ctx = RequestContext.build(
            organization_id, actor_id, request.headers.get("X-Permissions", "").split(","),
        )
        return None

    # API Endpoints

    @app.route('/shows/<show_id>', methods=['POST'])
    def register_show(show_id):
        """Create or update a show and its spot configuration."""
        data = require_json_object()
        thresholds = data.get("spot_thresholds")
        if thresholds is not None and not isinstance(thresholds, list):
            return bad_request("spot_thresholds must be a JSON array")

        show = db.run_in_transaction(
            lambda session: manager.catalog.register_show(
                session,
                g.ctx,
                show_id,
                name=required_string(data, "name"),
                category=optional_string(data, "category"),
                default_episode_length=positive_int(data, "default_episode_length", 30),
                spot_thresholds=thresholds,
            ),
            label="register_show",
        )
        logger.info(f"Show registered: {show_id}")
        return jsonify(show.to_dict()), 201

    @app.route('/episodes/<episode_id>/inventory', methods=['GET'])
    def episode_inventory(episode_id):
        """Return the live slot ledger for an episode."""
        episode, entries = manager.episode_inventory(g.ctx, episode_id)
        return jsonify({
            "episode": episode.to_dict(),
            "inventory": [entry.to_dict() for entry in entries],
        })

    @app.route('/episodes/<episode_id>/changes', methods=['GET'])
    def episode_changes(episode_id):
        changes = manager.episode_changes(g.ctx, episode_id)
        return jsonify({"changes": [change.to_dict() for change in changes]})

    @app.route('/holds', methods=['POST'])
    def create_hold():
        """Place a hold on episode inventory pending approval."""
        data = require_json_object()
        ttl = positive_int(data, "ttl_seconds")
        reservation = manager.create_hold(
            g.ctx,
            required_string(data, "episode_id"),
            required_string(data, "placement_type"),
            positive_int(data, "count", 1),
            owner_refs(data),
            data.get("hold_type") or "soft",
            settings.clamp_ttl(ttl) if ttl is not None else None,
            exclusivity=exclusivity_tag(data),
            slot_number=positive_int(data, "slot_number"),
            unit_price=optional_number(data, "unit_price"),
        )
        return jsonify(reservation.to_dict()), 201

    @app.route('/holds', methods=['GET'])
    def list_holds():
        holds = manager.list_holds(
            g.ctx,
            order_id=request.args.get("order_id"),
            episode_id=request.args.get("episode_id"),
            schedule_id=request.args.get("schedule_id"),
            status=request.args.get("status"),
        )
        return jsonify({"holds": [hold.to_dict() for hold in holds]})

    @app.route('/holds/<reservation_id>/approve', methods=['POST'])
    def approve_hold(reservation_id):
        reservation = manager.approve(g.ctx, reservation_id)
        return jsonify(reservation.to_dict()), 200

    @app.route('/holds/<reservation_id>/reject', methods=['POST'])
    def reject_hold(reservation_id):
        data = require_json_object() if request.data else {}
        reason = data.get("reason")
        if reason is not None and not isinstance(reason, str):
            return bad_request("reason must be a string")
        reservation = manager.reject(g.ctx, reservation_id, reason)
        return jsonify(reservation.to_dict()), 200

    @app.route('/schedules/bind', methods=['POST'])
    def bind_schedule():
        """Turn a sales schedule into holds; failed lines are reported, not fatal."""
        data = require_json_object()
        result = binder.bind(g.ctx, schedule_request(data, settings))
        return jsonify(result.to_dict()), 201 if result.complete else 207

    @app.route('/exclusivity-rules', methods=['POST'])
    def create_exclusivity_rule():
        data = require_json_object()
        is_active = data.get("is_active", True)
        if not isinstance(is_active, bool):
            return bad_request("is_active must be a boolean")
        rule = db.run_in_transaction(
            lambda session: checker.create(
                session,
                g.ctx,
                show_id=required_string(data, "show_id"),
                category=required_string(data, "category"),
                level=required_string(data, "level"),
                start_date=parse_date(data.get("start_date"), "start_date"),
                end_date=parse_date(data.get("end_date"), "end_date"),
                advertiser_id=optional_string(data, "advertiser_id"),
                campaign_id=optional_string(data, "campaign_id"),
                is_active=is_active,
            ),
            label="create_exclusivity_rule",
        )
        return jsonify(rule.to_dict()), 201

    @app.route('/exclusivity-rules', methods=['GET'])
    def list_exclusivity_rules():
        active_only = request.args.get("active", "").lower() in ("1", "true", "yes")
        rules = db.run_in_transaction(
            lambda session: checker.list_rules(
                session, g.ctx.organization_id, request.args.get("show_id"), active_only,
            ),
            label="list_exclusivity_rules",
        )
        return jsonify({"rules": [rule.to_dict() for rule in rules]})

    @app.route('/exclusivity-rules/<rule_id>/active', methods=['POST'])
    def toggle_exclusivity_rule(rule_id):
        data = require_json_object()
        is_active = data.get("is_active")
        if not isinstance(is_active, bool):
            return bad_request("is_active must be a boolean")
        rule = db.run_in_transaction(
            lambda session: checker.set_active(session, g.ctx, rule_id, is_active),
            label="toggle_exclusivity_rule",
        )
        return jsonify(rule.to_dict()), 200

    @app.route('/sweep', methods=['POST'])
    def sweep_expired():
        """Administrative trigger for the expiration sweep in the caller's organization."""
        g.ctx.require(APPROVE_HOLDS)
        released = manager.sweep_expired(organization_id=g.ctx.organization_id)
        return jsonify({"released": released}), 200

    @app.route('/inventory/audit', methods=['GET'])
    def inventory_audit():
        mismatches = manager.audit(g.ctx)
        return jsonify({"mismatches": mismatches, "count": len(mismatches)})

    @app.route('/inventory/repair', methods=['POST'])
    def inventory_repair():
        """Resync mismatched ledger rows; defaults to a dry run that only reports diffs."""
        data = require_json_object() if request.data else {}
        dry_run = data.get("dry_run", True)
        if not isinstance(dry_run, bool):
            return bad_request("dry_run must be a boolean")
        repairs = manager.repair_ledger(g.ctx, dry_run=dry_run)
        return jsonify({
            "dry_run": dry_run,
            "repairs": repairs,
            "applied": sum(1 for repair in repairs if repair["applied"]),
        })

    @app.route('/health', methods=['GET'])
    def health_check():
        """Expose the database connectivity and row counts."""
        return jsonify(db.health_check())

    if start_sweeper if start_sweeper is not None else settings.enable_sweeper:
        # Dedicated daemon so sweeping never blocks HTTP traffic
        sweeper.start()
        atexit.register(sweeper.stop)

    return app


if __name__ == '__main__':
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    app = create_app(settings)
    sweeper = app.extensions["inventory"]["sweeper"]

    # Register signal handlers for production (Gunicorn, Docker, etc.)
    signal.signal(signal.SIGTERM, sweeper.stop)
    signal.signal(signal.SIGINT, sweeper.stop)

    logger.info(f"""
    ================================
    AD INVENTORY RESERVATION ENGINE
    ================================
    Database: {settings.database_url.split('://', 1)[0]}
    Hold TTL: {settings.hold_ttl_seconds}s, sweep every {settings.sweep_interval_seconds}s
    Concurrency: guarded conditional updates per ledger row
    ================================
    """)

    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)
