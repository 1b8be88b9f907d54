"""reservation_core_tables

Revision ID: 5b1e0c2a9f01
Revises:
Create Date: 2026-10-18 09:12:41.318207

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5b1e0c2a9f01"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = True, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kw)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("rating_average", sa.Numeric(4, 2), nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("buyer_rating_average", sa.Numeric(4, 2), nullable=False, server_default="0"),
        sa.Column("buyer_rating_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("seller_rating_average", sa.Numeric(4, 2), nullable=False, server_default="0"),
        sa.Column("seller_rating_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("updated_at"),
    )

    op.create_table(
        "listings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "seller_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="DRAFT"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("price_per_unit", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity_total", sa.Integer(), nullable=False),
        sa.Column("quantity_available", sa.Integer(), nullable=False),
        sa.Column("min_per_buyer", sa.Integer(), nullable=True),
        sa.Column("max_per_buyer", sa.Integer(), nullable=True),
        sa.Column("pickup_address", sa.Text(), nullable=False, server_default=""),
        sa.Column("pickup_instructions", sa.Text(), nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("updated_at"),
        # 可用量永远落在 [0, total]
        sa.CheckConstraint("quantity_available >= 0", name="ck_listings_available_non_negative"),
        sa.CheckConstraint(
            "quantity_available <= quantity_total", name="ck_listings_available_le_total"
        ),
    )
    op.create_index("ix_listings_seller_id", "listings", ["seller_id"])
    op.create_index("ix_listings_status", "listings", ["status"])

    op.create_table(
        "reservations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "listing_id",
            sa.String(length=36),
            sa.ForeignKey("listings.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "buyer_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("quantity_reserved", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="cad"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("cancel_reason", sa.String(length=64), nullable=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("qr_code_hash", sa.String(length=128), nullable=False),
        sa.Column("verification_code", sa.String(length=6), nullable=False),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("expires_at", nullable=False),
        _ts("confirmed_at"),
        _ts("pickup_deadline"),
        _ts("completed_at"),
        _ts("cancelled_at"),
        sa.CheckConstraint("quantity_reserved >= 1", name="ck_reservations_qty_positive"),
        sa.UniqueConstraint("qr_code_hash", name="uq_reservations_qr_code_hash"),
        sa.UniqueConstraint("verification_code", name="uq_reservations_verification_code"),
    )
    op.create_index("ix_reservations_listing_id", "reservations", ["listing_id"])
    op.create_index("ix_reservations_buyer_id", "reservations", ["buyer_id"])
    op.create_index("ix_reservations_status_expires", "reservations", ["status", "expires_at"])
    op.create_index("ix_reservations_status_pickup", "reservations", ["status", "pickup_deadline"])
    op.create_index("ix_reservations_payment_reference", "reservations", ["payment_reference"])

    # 库存提交幂等表：一张预约最多扣一次
    op.create_table(
        "inventory_commits",
        sa.Column(
            "reservation_id",
            sa.String(length=36),
            sa.ForeignKey("reservations.id", ondelete="RESTRICT"),
            primary_key=True,
        ),
        sa.Column(
            "listing_id",
            sa.String(length=36),
            sa.ForeignKey("listings.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("qty", sa.Integer(), nullable=False),
        _ts("committed_at", nullable=False),
        _ts("restored_at"),
    )
    op.create_index("ix_inventory_commits_listing_id", "inventory_commits", ["listing_id"])

    # 支付回调去重表
    op.create_table(
        "payment_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("reservation_id", sa.String(length=36), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=False, server_default="RECEIVED"),
        _ts("received_at", nullable=False),
    )
    op.create_index("ix_payment_events_reference", "payment_events", ["payment_reference"])

    op.create_table(
        "ratings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "reservation_id",
            sa.String(length=36),
            sa.ForeignKey("reservations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "rater_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "ratee_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("rating_type", sa.String(length=16), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("reservation_id", "rater_id", name="uq_ratings_reservation_rater"),
        sa.CheckConstraint("score >= 1 AND score <= 5", name="ck_ratings_score_range"),
    )
    op.create_index("ix_ratings_ratee", "ratings", ["ratee_id", "rating_type"])

    op.create_table(
        "audit_events",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("ref", sa.String(length=255), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_audit_events_ref", "audit_events", ["ref"])
    op.create_index("ix_audit_events_trace_id", "audit_events", ["trace_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_trace_id", table_name="audit_events")
    op.drop_index("ix_audit_events_ref", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("ix_ratings_ratee", table_name="ratings")
    op.drop_table("ratings")

    op.drop_index("ix_payment_events_reference", table_name="payment_events")
    op.drop_table("payment_events")

    op.drop_index("ix_inventory_commits_listing_id", table_name="inventory_commits")
    op.drop_table("inventory_commits")

    op.drop_index("ix_reservations_payment_reference", table_name="reservations")
    op.drop_index("ix_reservations_status_pickup", table_name="reservations")
    op.drop_index("ix_reservations_status_expires", table_name="reservations")
    op.drop_index("ix_reservations_buyer_id", table_name="reservations")
    op.drop_index("ix_reservations_listing_id", table_name="reservations")
    op.drop_table("reservations")

    op.drop_index("ix_listings_status", table_name="listings")
    op.drop_index("ix_listings_seller_id", table_name="listings")
    op.drop_table("listings")

    op.drop_table("users")
