from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class RateLimitBucket(db.Model):
    """
    Fixed-window request counter (default RATE_LIMIT_STORAGE).

    Best-effort abuse mitigation; rows are transient and may be purged at
    any time (see `flask store purge-rate-limits`).
    """
    __tablename__ = "rate_limit_buckets"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(255), nullable=False, unique=True)
    count = db.Column(db.Integer, nullable=False, default=0)
    window_reset_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "count": self.count,
            "window_reset_at": to_utc_z(self.window_reset_at),
        }
