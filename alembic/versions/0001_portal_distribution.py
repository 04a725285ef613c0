from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_portal_distribution"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb(default: str):
    return dict(
        type_=postgresql.JSONB(astext_type=sa.Text()),
        nullable=False,
        server_default=sa.text(f"'{default}'::jsonb"),
    )


def _audit_columns():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
    ]


def upgrade():
    op.create_table(
        "listings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("reference", sa.String(length=80), nullable=True),
        sa.Column("slug", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("purpose", sa.String(length=10), nullable=False, server_default="sale"),
        sa.Column("type", sa.String(length=40), nullable=False, server_default="casa"),
        sa.Column("profile", sa.String(length=40), nullable=False, server_default="residencial"),
        sa.Column("category_id", sa.String(), nullable=True),
        sa.Column("bedrooms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("suites", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bathrooms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("garages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("area", sa.Float(), nullable=False, server_default="0"),
        sa.Column("built_area", sa.Float(), nullable=True),
        sa.Column("condo_fee", sa.Float(), nullable=True),
        sa.Column("condo_exempt", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("iptu", sa.Float(), nullable=True),
        sa.Column("street", sa.String(length=200), nullable=True),
        sa.Column("number", sa.String(length=20), nullable=True),
        sa.Column("neighborhood", sa.String(length=120), nullable=True),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("state", sa.String(length=40), nullable=True),
        sa.Column("zipcode", sa.String(length=20), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("features", **_jsonb("[]")),
        sa.Column("amenities", **_jsonb("[]")),
        sa.Column("photos", **_jsonb("[]")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("featured", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sync_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "portals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("slug", sa.String(length=80), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("method", sa.String(length=20), nullable=False, server_default="feed"),
        sa.Column("feed_format", sa.String(length=10), nullable=False, server_default="xml"),
        sa.Column("feed_token", sa.String(length=200), nullable=True),
        sa.Column("adapter_type", sa.String(length=40), nullable=False, server_default="manual"),
        sa.Column("config", **_jsonb("{}")),
        *_audit_columns(),
        sa.UniqueConstraint("slug", name="uq_portal_slug"),
    )

    op.create_table(
        "portal_publications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("portal_id", sa.String(), sa.ForeignKey("portals.id"), nullable=False),
        sa.Column("listing_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="not_published"),
        sa.Column("external_id", sa.String(length=200), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_audit_columns(),
        sa.UniqueConstraint("portal_id", "listing_id", name="uq_publication_portal_listing"),
    )

    op.create_table(
        "portal_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("portal_id", sa.String(), sa.ForeignKey("portals.id"), nullable=False),
        sa.Column("listing_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=80), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_portal_jobs_status_next_run", "portal_jobs", ["status", "next_run_at"])
    op.create_index("ix_portal_jobs_portal_listing", "portal_jobs", ["portal_id", "listing_id"])

    op.create_table(
        "portal_sync_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("portal_id", sa.String(), sa.ForeignKey("portals.id"), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False, server_default="feed"),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("detail", **_jsonb("{}")),
        sa.Column("feed_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_portal_sync_logs_portal_created", "portal_sync_logs", ["portal_id", "created_at"])


def downgrade():
    op.drop_index("ix_portal_sync_logs_portal_created", table_name="portal_sync_logs")
    op.drop_table("portal_sync_logs")
    op.drop_index("ix_portal_jobs_portal_listing", table_name="portal_jobs")
    op.drop_index("ix_portal_jobs_status_next_run", table_name="portal_jobs")
    op.drop_table("portal_jobs")
    op.drop_table("portal_publications")
    op.drop_table("portals")
    op.drop_table("listings")
