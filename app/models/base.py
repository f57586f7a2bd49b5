"""
TenantModel — Abstract base class for tenant-scoped models.

Organizations, roles, assignments, matrices and flows all belong to exactly
one tenant. Inheriting from TenantModel adds:
  - tenant_id FK column with index
  - query_for_tenant(tenant_id) classmethod
"""

from app.models import db


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)
