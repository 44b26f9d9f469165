from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

metadata = sa.MetaData()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_database(url: str) -> Database:
    """
    Build the record store handle. Works with PostgreSQL or SQLite.

    The caller owns the returned object: connect() it at startup and
    disconnect() it during shutdown.
    """
    return Database(url)


def is_postgresql(database: Database) -> bool:
    return str(database.url).startswith("postgresql")


# Media assets are created by the upload path outside this worker. The worker
# only reads the identity/type/visibility/source columns and writes the
# status, error and derived metadata columns.
#
# INVARIANT: status = 'ready' <=> output_key, poster_key, duration_sec > 0,
# width > 0 and height > 0 are all set. Both sides are written in one
# transaction (see worker/job_records.py).
media_assets = sa.Table(
    "media_assets",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column(
        "type",
        sa.String(10),
        sa.CheckConstraint("type IN ('video', 'image')", name="ck_media_assets_type"),
        nullable=False,
    ),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('uploaded', 'processing', 'ready', 'failed')",
            name="ck_media_assets_status"
        ),
        default="uploaded",
        nullable=False,
    ),
    sa.Column(
        "visibility",
        sa.String(10),
        sa.CheckConstraint("visibility IN ('public', 'private')", name="ck_media_assets_visibility"),
        default="private",
        nullable=False,
    ),
    sa.Column("source_key", sa.String(1024), nullable=False),
    sa.Column("output_key", sa.String(1024), nullable=True),  # master manifest
    sa.Column("poster_key", sa.String(1024), nullable=True),
    # Probe-derived metadata, set only on success
    sa.Column("duration_sec", sa.Float, nullable=True),
    sa.Column("width", sa.Integer, nullable=True),
    sa.Column("height", sa.Integer, nullable=True),
    sa.Column("codec", sa.String(64), nullable=True),
    sa.Column("bitrate", sa.Integer, nullable=True),  # kbps
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=utcnow, onupdate=utcnow),
    sa.Index("ix_media_assets_status", "status"),
)

# One row per (media asset, domain attempt).
#
# STATE TRANSITIONS:
# -----------------
# queued (inserted by the enqueue tooling) -> processing (worker claim, sets
# started_at) -> done (sets finished_at + logs) | failed (sets finished_at +
# error text in logs). A queue redelivery of the same attempt reuses the row
# and moves it back to processing. Rows are never deleted by the worker.
#
# logs holds a JSON document: probe metadata, per-variant segment/byte counts
# and total bytes on success; error message, step and traceback on failure.
transcode_jobs = sa.Table(
    "transcode_jobs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column(
        "media_asset_id",
        sa.String(64),
        sa.ForeignKey("media_assets.id", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column("attempt", sa.Integer, nullable=False, default=1),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'done', 'failed')",
            name="ck_transcode_jobs_status"
        ),
        default="queued",
        nullable=False,
    ),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("logs", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=utcnow, onupdate=utcnow),
    sa.UniqueConstraint("media_asset_id", "attempt", name="uq_transcode_jobs_asset_attempt"),
    sa.Index("ix_transcode_jobs_media_asset_id", "media_asset_id"),
)
