from datetime import datetime

from werkzeug.security import generate_password_hash, check_password_hash

from sameday.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    password_hash = db.Column(db.String(255), nullable=False, default="")

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str) -> bool:
        return check_password_hash(self.password_hash, raw_password)

    def active_roles(self) -> set[str]:
        rows = UserRole.query.filter_by(user_id=int(self.id), is_active=True).all()
        return {r.role for r in rows if r.is_granted()}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "roles": sorted(self.active_roles()),
        }


class UserRole(db.Model):
    """Role grant for a user.

    Sellers and riders go through an approval step; their grant only counts
    once `status` is APPROVED. `is_online` is only meaningful for riders.
    """

    __tablename__ = "user_roles"
    __table_args__ = (
        db.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    role = db.Column(db.String(16), nullable=False, index=True)  # buyer | seller | rider | admin
    status = db.Column(db.String(16), nullable=False, default="APPROVED")  # PENDING | APPROVED | REJECTED
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_online = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def is_granted(self) -> bool:
        if not self.is_active:
            return False
        if (self.role or "") in ("seller", "rider"):
            return (self.status or "").upper() == "APPROVED"
        return True

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "role": self.role or "",
            "status": self.status or "",
            "is_active": bool(self.is_active),
            "is_online": bool(self.is_online),
        }
