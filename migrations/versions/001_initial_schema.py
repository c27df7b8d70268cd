"""Initial schema: requests, promo codes, dispatch offers and the event outbox.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

REQUEST_TYPES = ("ride", "food", "grocery", "pharmacy")
REQUEST_STATUSES = (
    "created", "confirmed", "assigned", "in_progress",
    "arrived_dropoff", "completed",
    "preparing", "ready", "picked_up", "on_the_way", "delivered",
    "cancelled",
)
VEHICLE_CLASSES = ("motorcycle", "car", "van", "delivery", "happy_move", "airport")
DISCOUNT_TYPES = ("percentage", "fixed", "free-delivery")
PROMO_SCOPES = ("ride", "food", "grocery", "all")
OFFER_OUTCOMES = ("pending", "accepted", "declined", "expired")


def _ts(name: str, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kw)


def upgrade() -> None:
    # ── promo_codes ───────────────────────────────────────────────────
    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(32), unique=True, nullable=False),
        sa.Column("title", sa.String(120), nullable=False, server_default=""),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("discount_type", sa.Enum(*DISCOUNT_TYPES, name="discount_type"), nullable=False),
        sa.Column("value", sa.Numeric(10, 2), nullable=False),
        sa.Column(
            "scope",
            sa.Enum(*PROMO_SCOPES, name="promo_scope"),
            nullable=False,
            server_default="all",
        ),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("valid_from", nullable=False),
        _ts("valid_until", nullable=False),
        sa.Column("min_order_value", sa.Numeric(10, 2), nullable=True),
        sa.Column("max_discount", sa.Numeric(10, 2), nullable=True),
        sa.Column("usage_cap", sa.Integer, nullable=True),
        sa.Column("per_user_cap", sa.Integer, nullable=True),
        sa.Column("new_user_only", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("usage_count", sa.Integer, nullable=False, server_default="0"),
        _ts("created_at", server_default=sa.func.now()),
    )

    # ── trip_requests ─────────────────────────────────────────────────
    op.create_table(
        "trip_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("request_type", sa.Enum(*REQUEST_TYPES, name="request_type"), nullable=False),
        sa.Column("requester_id", sa.String(64), nullable=False),
        sa.Column("vehicle_class", sa.Enum(*VEHICLE_CLASSES, name="vehicle_class"), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=False),
        sa.Column("merchant_id", sa.String(64), nullable=True),
        sa.Column("origin_address", sa.String(255), nullable=True),
        sa.Column("origin_lat", sa.Float, nullable=True),
        sa.Column("origin_lng", sa.Float, nullable=True),
        sa.Column("destination_address", sa.String(255), nullable=True),
        sa.Column("destination_lat", sa.Float, nullable=True),
        sa.Column("destination_lng", sa.Float, nullable=True),
        sa.Column("distance_meters", sa.Float, nullable=False, server_default="0"),
        sa.Column("duration_seconds", sa.Float, nullable=False, server_default="0"),
        sa.Column("surge_multiplier", sa.Numeric(6, 3), nullable=False, server_default="1"),
        sa.Column(
            "status",
            sa.Enum(*REQUEST_STATUSES, name="request_status"),
            nullable=False,
            server_default="created",
        ),
        sa.Column("fulfiller_id", sa.String(64), nullable=True),
        sa.Column("promo_id", sa.Integer, sa.ForeignKey("promo_codes.id"), nullable=True),
        sa.Column("promo_code", sa.String(32), nullable=True),
        sa.Column("fare_base", sa.Numeric(10, 2), nullable=False),
        sa.Column("fare_distance", sa.Numeric(10, 2), nullable=False),
        sa.Column("fare_time", sa.Numeric(10, 2), nullable=False),
        sa.Column("fare_surge", sa.Numeric(10, 2), nullable=False),
        sa.Column("fare_discount", sa.Numeric(10, 2), nullable=False),
        sa.Column("fare_total", sa.Numeric(10, 2), nullable=False),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancelled_by_role", sa.String(16), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column(
            "post_assignment_cancellation",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("dispatch_attempts", sa.Integer, nullable=False, server_default="0"),
        _ts("last_dispatch_at", nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
        _ts("confirmed_at", nullable=True),
        _ts("assigned_at", nullable=True),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        _ts("cancelled_at", nullable=True),
    )
    op.create_index("idx_trip_requests_status", "trip_requests", ["status"])
    op.create_index("idx_trip_requests_requester", "trip_requests", ["requester_id"])
    op.create_index("idx_trip_requests_idempotency", "trip_requests", ["idempotency_key"])

    # ── promo_redemptions ─────────────────────────────────────────────
    op.create_table(
        "promo_redemptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("promo_id", sa.Integer, sa.ForeignKey("promo_codes.id"), nullable=False),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("trip_requests.id"), nullable=False),
        sa.Column("requester_id", sa.String(64), nullable=False),
        _ts("redeemed_at", nullable=False),
        sa.UniqueConstraint("promo_id", "request_id", name="uq_promo_redemption"),
    )
    op.create_index(
        "idx_promo_redemptions_user", "promo_redemptions", ["promo_id", "requester_id"]
    )

    # ── dispatch_offers ───────────────────────────────────────────────
    op.create_table(
        "dispatch_offers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("trip_requests.id"), nullable=False),
        sa.Column("candidate_id", sa.String(64), nullable=False),
        _ts("offered_at", nullable=False),
        _ts("expires_at", nullable=False),
        sa.Column(
            "outcome",
            sa.Enum(*OFFER_OUTCOMES, name="offer_outcome"),
            nullable=False,
            server_default="pending",
        ),
        _ts("responded_at", nullable=True),
    )
    op.create_index("idx_dispatch_offers_request", "dispatch_offers", ["request_id"])
    # At most one pending offer per request
    op.create_index(
        "uq_dispatch_offers_one_pending",
        "dispatch_offers",
        ["request_id"],
        unique=True,
        postgresql_where=sa.text("outcome = 'pending'"),
    )

    # ── outbox_events ─────────────────────────────────────────────────
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.Integer, nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("dedup_key", sa.String(120), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        _ts("occurred_at", nullable=False),
        _ts("published_at", nullable=True),
    )
    op.create_index(
        "idx_outbox_unpublished", "outbox_events", ["published_at", "occurred_at"]
    )
    op.create_index("idx_outbox_request", "outbox_events", ["request_id"])


def downgrade() -> None:
    op.drop_table("outbox_events")
    op.drop_table("dispatch_offers")
    op.drop_table("promo_redemptions")
    op.drop_table("trip_requests")
    op.drop_table("promo_codes")
    for enum_name in (
        "offer_outcome",
        "request_status",
        "vehicle_class",
        "request_type",
        "promo_scope",
        "discount_type",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
