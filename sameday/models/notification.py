from datetime import datetime
import json

from sameday.extensions import db


class Notification(db.Model):
    """Outbox row for one user-facing message.

    In-app rows are visible as soon as they are written; sms rows stay
    `queued` until the dispatcher hands them to a messaging provider.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    event_type = db.Column(db.String(48), nullable=False, default="generic", index=True)
    channel = db.Column(db.String(32), nullable=False, default="in_app")  # in_app | sms
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False)
    link = db.Column(db.String(255), nullable=True)
    to_address = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(24), nullable=False, default="queued", index=True)  # queued | sent | failed
    provider = db.Column(db.String(64), nullable=True)
    provider_ref = db.Column(db.String(120), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    sent_at = db.Column(db.DateTime, nullable=True)
    read_at = db.Column(db.DateTime, nullable=True)

    meta = db.Column(db.Text, nullable=True)  # JSON string

    def meta_dict(self) -> dict:
        raw = (self.meta or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def mark_read(self, read_at: datetime | None = None) -> datetime:
        stamped = read_at or datetime.utcnow()
        if self.read_at is None:
            self.read_at = stamped
        return self.read_at

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type or "generic",
            "channel": self.channel or "in_app",
            "title": self.title or "",
            "message": self.message or "",
            "link": self.link or "",
            "status": self.status or "queued",
            "provider": self.provider or "",
            "attempts": int(self.attempts or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "is_read": self.read_at is not None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "meta": self.meta_dict(),
        }
