"""
Organization Hierarchy Models

Organization (L1-L4 tree), OrganizationRole, RoleAssignment (direct or
inherited role slot), OrganizationMembership (user holds role at org).

Tree representation: parent pointer + integer level. Children are looked up
by parent_id on demand; there are no ORM back-references between nodes.
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel


__all__ = [
    "Organization",
    "OrganizationRole",
    "RoleAssignment",
    "OrganizationMembership",
    "ORG_LEVEL_LABELS",
    "DEFAULT_MAX_DEPTH",
    "DEFAULT_ROLE_MAPPING",
]


# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_MAX_DEPTH = 4

ORG_LEVEL_LABELS = {
    1: "Church",
    2: "Committee",
    3: "Parish",
    4: "Department",
}

# Leadership roles typically held at each level. Used by seeding tooling.
DEFAULT_ROLE_MAPPING = {
    1: ["Senior Pastor", "Associate Pastor", "Evangelist"],
    2: ["Committee Chair", "President", "Director"],
    3: ["Parish Head", "Group Leader", "Department Head"],
    4: ["Section Head", "Deputy Head", "Accountant"],
}


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Organization — self-referential L1-L4 tree
# ═════════════════════════════════════════════════════════════════════════════

class Organization(TenantModel):
    """
    Node of the per-tenant organization tree.

    Invariants (enforced by organization_service, never by the ORM):
      - level 1 ⇔ parent_id IS NULL
      - parent.level == level - 1
      - no cycles
    Nodes are soft-deactivated, never hard-deleted, because historical
    approval steps reference them.
    """

    __tablename__ = "organizations"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_org_tenant_code"),
        db.Index("ix_org_tenant_parent", "tenant_id", "parent_id"),
        db.Index("ix_org_tenant_level", "tenant_id", "level"),
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, comment="Unique within tenant")
    name = db.Column(db.String(200), nullable=False)
    level = db.Column(db.Integer, nullable=False, comment="1=root … N=deepest")
    parent_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=True, comment="NULL for L1 roots",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "code": self.code,
            "name": self.name,
            "level": self.level,
            "level_label": ORG_LEVEL_LABELS.get(self.level),
            "parent_id": self.parent_id,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Organization L{self.level} {self.code}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. OrganizationRole — tenant-scoped role catalogue
# ═════════════════════════════════════════════════════════════════════════════

class OrganizationRole(TenantModel):
    """A named position (e.g. "Department Head"). Not tied to one organization."""

    __tablename__ = "organization_roles"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_org_role_tenant_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    rank = db.Column(db.Integer, nullable=False, default=0, comment="Higher = more senior")
    is_leadership = db.Column(db.Boolean, nullable=False, default=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "rank": self.rank,
            "is_leadership": self.is_leadership,
            "description": self.description,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<OrganizationRole {self.name} rank={self.rank}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. RoleAssignment — one (organization, role) slot
# ═════════════════════════════════════════════════════════════════════════════

class RoleAssignment(TenantModel):
    """
    Role slot at an organization.

    One row per (organization_id, role_id); reactivation and direct/inherited
    switches update that row in place, so at most one active assignment can
    exist for the pair.

    inherited_from_organization_id is set iff is_inherited.
    """

    __tablename__ = "role_assignments"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "role_id", name="uq_role_assignment_org_role"),
        db.Index("ix_role_assignment_role_active", "role_id", "is_active"),
        db.Index("ix_role_assignment_source", "inherited_from_organization_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("organization_roles.id", ondelete="CASCADE"), nullable=False,
    )
    is_inherited = db.Column(db.Boolean, nullable=False, default=False)
    inherited_from_organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True,
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    role = db.relationship("OrganizationRole", lazy="joined")

    @property
    def slot_state(self):
        """UNASSIGNED | DIRECT | INHERITED."""
        if not self.is_active:
            return "UNASSIGNED"
        return "INHERITED" if self.is_inherited else "DIRECT"

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "role_id": self.role_id,
            "role_name": self.role.name if self.role else None,
            "is_inherited": self.is_inherited,
            "inherited_from_organization_id": self.inherited_from_organization_id,
            "is_active": self.is_active,
            "state": self.slot_state,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<RoleAssignment org={self.organization_id} role={self.role_id} {self.slot_state}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. OrganizationMembership — user holds role at organization
# ═════════════════════════════════════════════════════════════════════════════

class OrganizationMembership(TenantModel):
    """A concrete person occupying a role at an organization."""

    __tablename__ = "organization_memberships"
    __table_args__ = (
        db.UniqueConstraint(
            "organization_id", "user_id", "role_id", name="uq_membership_org_user_role",
        ),
        db.Index("ix_membership_org_role", "organization_id", "role_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("organization_roles.id", ondelete="CASCADE"), nullable=False,
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "role_id": self.role_id,
            "is_active": self.is_active,
        }
