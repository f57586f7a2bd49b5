"""
Auth Models — tenants and users.

Users are the concrete approvers behind organizational roles. Credentials,
sessions and SSO live in the identity collaborator; the engine keeps only
what routing needs: who the user is, which tenant they belong to and
whether they may still receive approval work.
"""

from datetime import datetime, timezone

from app.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════
# 1. TENANTS
# ═══════════════════════════════════════════════════════════════
class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    users = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def __repr__(self):
        return f"<Tenant {self.slug}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"
    # Same email may exist in different tenants
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        db.Index("ix_users_tenant_id", "tenant_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200))
    # Only active users are returned as role holders
    status = db.Column(db.String(20), default="active")
    created_at = db.Column(db.DateTime, default=_utcnow)

    tenant = db.relationship("Tenant", back_populates="users")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "full_name": self.full_name,
            "status": self.status,
        }

    def __repr__(self):
        return f"<User {self.id} {self.email}>"
