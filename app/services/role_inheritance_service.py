"""
Role inheritance service.

A RoleAssignment is the (organization, role) slot. Its state is one of

    UNASSIGNED  no active row
    DIRECT      active, is_inherited=False
    INHERITED   active, is_inherited=True, inherited_from_organization_id set

Allowed moves: UNASSIGNED→DIRECT, UNASSIGNED→INHERITED, INHERITED→DIRECT,
DIRECT→UNASSIGNED. A DIRECT slot is never overwritten by a cascade.

Cascades resolve overlapping sources by distance: an inherited slot keeps
its current source only while that source is an ancestor strictly closer
than the cascading organization. Reorganizations re-point inherited slots
whose source is no longer an ancestor (repair_inherited_slots).

Every public mutation commits exactly once and rolls back on failure, so a
reader never observes half of a cascade.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.auth import User
from app.models.organization import (
    Organization,
    OrganizationMembership,
    OrganizationRole,
    RoleAssignment,
)
from app.services.organization_service import (
    _children_index,
    _subtree,
    get_ancestors,
    require_organization,
)

logger = logging.getLogger(__name__)


# ── Private helpers ───────────────────────────────────────────────────────────


def _require_role(tenant_id: int, role_id: int) -> OrganizationRole:
    role = db.session.execute(
        select(OrganizationRole).where(
            OrganizationRole.id == role_id,
            OrganizationRole.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if role is None:
        raise NotFoundError(resource="OrganizationRole", resource_id=role_id, tenant_id=tenant_id)
    return role


def _role_by_name(tenant_id: int, name: str) -> OrganizationRole | None:
    return db.session.execute(
        select(OrganizationRole).where(
            OrganizationRole.tenant_id == tenant_id,
            OrganizationRole.name == name,
            OrganizationRole.is_active.is_(True),
        )
    ).scalar_one_or_none()


def _assignment(org_id: int, role_id: int) -> RoleAssignment | None:
    return db.session.execute(
        select(RoleAssignment).where(
            RoleAssignment.organization_id == org_id,
            RoleAssignment.role_id == role_id,
        )
    ).scalar_one_or_none()


def _assignments_by_org(tenant_id: int, role_id: int) -> dict[int, RoleAssignment]:
    rows = db.session.execute(
        select(RoleAssignment).where(
            RoleAssignment.tenant_id == tenant_id,
            RoleAssignment.role_id == role_id,
        )
    ).scalars().all()
    return {row.organization_id: row for row in rows}


def _set_inherited(
    tenant_id: int,
    rows: dict[int, RoleAssignment],
    org_id: int,
    role_id: int,
    source_id: int,
) -> RoleAssignment:
    """Make (org, role) INHERITED from source, reusing the slot row if present."""
    row = rows.get(org_id)
    if row is None:
        row = RoleAssignment(
            tenant_id=tenant_id,
            organization_id=org_id,
            role_id=role_id,
        )
        db.session.add(row)
        rows[org_id] = row
    row.is_inherited = True
    row.inherited_from_organization_id = source_id
    row.is_active = True
    return row


def _cascade(tenant_id: int, source: Organization, role_id: int, index=None) -> int:
    """Propagate an inherited copy of role_id from source to its descendants.

    An inherited slot keeps its current source only when that source lies
    strictly between source and the node. Any other source is replaced.

    Returns the number of slots created or re-pointed at source.
    """
    index = index if index is not None else _children_index(tenant_id)
    parents = {org.id: org.parent_id for children in index.values() for org in children}
    rows = _assignments_by_org(tenant_id, role_id)

    touched = 0
    for node in _subtree(index, source)[1:]:
        row = rows.get(node.id)
        if row is not None and row.is_active:
            if not row.is_inherited:
                continue
            current_source = row.inherited_from_organization_id
            if current_source == source.id:
                continue
            if current_source in _path_below(parents, node.id, source.id):
                continue
        _set_inherited(tenant_id, rows, node.id, role_id, source.id)
        touched += 1
    return touched


def _path_below(parents: dict, node_id: int, top_id: int) -> set[int]:
    """Ancestors of node_id strictly below top_id."""
    path = set()
    cursor = parents.get(node_id)
    while cursor is not None and cursor != top_id and cursor not in path:
        path.add(cursor)
        cursor = parents.get(cursor)
    return path


def _nearest_holder_source(tenant_id: int, org_id: int,
                           rows: dict[int, RoleAssignment]) -> int | None:
    """Organization the nearest ancestor holding the role gets it from.

    A direct holder is its own source; an inherited holder passes on its source.
    """
    for ancestor in get_ancestors(tenant_id, org_id):
        row = rows.get(ancestor.id)
        if row is None or not row.is_active:
            continue
        if not row.is_inherited:
            return ancestor.id
        if row.inherited_from_organization_id is not None:
            return row.inherited_from_organization_id
    return None


def repair_inherited_slots(tenant_id: int, nodes: list[Organization]) -> int:
    """Re-point inherited slots whose source is no longer an ancestor.

    nodes must be ordered parents before children. A stale slot falls back to
    the nearest ancestor still holding the role, or is deactivated when none
    does. Flushes but does not commit; returns the number of slots changed.
    """
    order = {node.id: pos for pos, node in enumerate(nodes)}
    stale = db.session.execute(
        select(RoleAssignment).where(
            RoleAssignment.tenant_id == tenant_id,
            RoleAssignment.organization_id.in_(list(order)),
            RoleAssignment.is_active.is_(True),
            RoleAssignment.is_inherited.is_(True),
        )
    ).scalars().all()
    stale = sorted(stale, key=lambda slot: order[slot.organization_id])

    rows_by_role: dict[int, dict[int, RoleAssignment]] = {}
    changed = 0
    for slot in stale:
        ancestor_ids = {a.id for a in get_ancestors(tenant_id, slot.organization_id)}
        if slot.inherited_from_organization_id in ancestor_ids:
            continue
        rows = rows_by_role.get(slot.role_id)
        if rows is None:
            rows = rows_by_role[slot.role_id] = _assignments_by_org(tenant_id, slot.role_id)
        source_id = _nearest_holder_source(tenant_id, slot.organization_id, rows)
        if source_id is None:
            slot.is_active = False
        else:
            slot.inherited_from_organization_id = source_id
        changed += 1
    db.session.flush()
    return changed


def _commit_or_rollback():
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


# ── Role catalogue & memberships ──────────────────────────────────────────────


def create_role(tenant_id: int, data: dict) -> dict:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    existing = db.session.execute(
        select(OrganizationRole.id).where(
            OrganizationRole.tenant_id == tenant_id,
            OrganizationRole.name == name,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError(resource="OrganizationRole", field="name", value=name)
    try:
        rank = int(data.get("rank") or 0)
    except (TypeError, ValueError):
        raise ValidationError("rank must be an integer", details={"rank": data.get("rank")})

    role = OrganizationRole(
        tenant_id=tenant_id,
        name=name,
        rank=rank,
        is_leadership=bool(data.get("is_leadership", False)),
        description=data.get("description"),
    )
    db.session.add(role)
    db.session.commit()
    logger.info("Role created tenant_id=%s role=%s", tenant_id, name,
                extra={"tenant_id": tenant_id})
    return role.to_dict()


def list_roles(tenant_id: int) -> list[dict]:
    rows = db.session.execute(
        select(OrganizationRole)
        .where(OrganizationRole.tenant_id == tenant_id, OrganizationRole.is_active.is_(True))
        .order_by(OrganizationRole.rank.desc(), OrganizationRole.name)
    ).scalars().all()
    return [r.to_dict() for r in rows]


def add_membership(tenant_id: int, organization_id: int, user_id: int, role_id: int) -> dict:
    """Record that a user holds a role at an organization (idempotent)."""
    require_organization(tenant_id, organization_id)
    _require_role(tenant_id, role_id)
    user = db.session.get(User, user_id)
    if user is None or user.tenant_id != tenant_id:
        raise NotFoundError(resource="User", resource_id=user_id, tenant_id=tenant_id)

    membership = db.session.execute(
        select(OrganizationMembership).where(
            OrganizationMembership.organization_id == organization_id,
            OrganizationMembership.user_id == user_id,
            OrganizationMembership.role_id == role_id,
        )
    ).scalar_one_or_none()
    if membership is None:
        membership = OrganizationMembership(
            tenant_id=tenant_id,
            organization_id=organization_id,
            user_id=user_id,
            role_id=role_id,
        )
        db.session.add(membership)
    membership.is_active = True
    db.session.commit()
    logger.info(
        "Membership added organization_id=%s user_id=%s role_id=%s",
        organization_id, user_id, role_id,
        extra={"tenant_id": tenant_id, "organization_id": organization_id, "user_id": user_id},
    )
    return membership.to_dict()


def remove_membership(tenant_id: int, organization_id: int, user_id: int, role_id: int) -> dict:
    membership = db.session.execute(
        select(OrganizationMembership).where(
            OrganizationMembership.tenant_id == tenant_id,
            OrganizationMembership.organization_id == organization_id,
            OrganizationMembership.user_id == user_id,
            OrganizationMembership.role_id == role_id,
            OrganizationMembership.is_active.is_(True),
        )
    ).scalar_one_or_none()
    if membership is None:
        raise NotFoundError(resource="OrganizationMembership", tenant_id=tenant_id)
    membership.is_active = False
    db.session.commit()
    logger.info(
        "Membership removed organization_id=%s user_id=%s role_id=%s",
        organization_id, user_id, role_id,
        extra={"tenant_id": tenant_id, "organization_id": organization_id, "user_id": user_id},
    )
    return membership.to_dict()


# ── Assignment & cascade ──────────────────────────────────────────────────────


def _assign(tenant_id: int, org: Organization, role_id: int, cascade: bool, index=None) -> dict:
    row = _assignment(org.id, role_id)
    previous = row.slot_state if row is not None else "UNASSIGNED"
    if row is None:
        row = RoleAssignment(tenant_id=tenant_id, organization_id=org.id, role_id=role_id)
        db.session.add(row)
    row.is_inherited = False
    row.inherited_from_organization_id = None
    row.is_active = True
    db.session.flush()

    cascaded = _cascade(tenant_id, org, role_id, index) if cascade else 0
    return {"assignment_id": row.id, "previous_state": previous, "cascaded": cascaded}


def assign_role(tenant_id: int, organization_id: int, role_id: int, cascade: bool = True) -> dict:
    """Give an organization a direct assignment, optionally cascading it down.

    Returns:
        {"assignment": dict, "previous_state": str, "cascaded": int}
    """
    org = require_organization(tenant_id, organization_id)
    _require_role(tenant_id, role_id)
    try:
        result = _assign(tenant_id, org, role_id, cascade)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    row = db.session.get(RoleAssignment, result["assignment_id"])
    logger.info(
        "Role assigned organization_id=%s role_id=%s %s→DIRECT cascaded=%s",
        organization_id, role_id, result["previous_state"], result["cascaded"],
        extra={"tenant_id": tenant_id, "organization_id": organization_id},
    )
    return {
        "assignment": row.to_dict(),
        "previous_state": result["previous_state"],
        "cascaded": result["cascaded"],
    }


def _unassign(tenant_id: int, org: Organization, role_id: int, remove_inherited: bool) -> dict:
    row = _assignment(org.id, role_id)
    if row is None or not row.is_active or row.is_inherited:
        raise NotFoundError(resource="RoleAssignment", resource_id=role_id, tenant_id=tenant_id)
    row.is_active = False

    removed = 0
    recascaded = 0
    if remove_inherited:
        index = _children_index(tenant_id)
        rows = _assignments_by_org(tenant_id, role_id)
        affected = [org]
        for node in _subtree(index, org)[1:]:
            slot = rows.get(node.id)
            if (slot is not None and slot.is_active and slot.is_inherited
                    and slot.inherited_from_organization_id == org.id):
                slot.is_active = False
                removed += 1
                affected.append(node)

        # Re-cover affected nodes from the nearest ancestor that still holds the role
        for node in affected:
            source_id = _nearest_holder_source(tenant_id, node.id, rows)
            if source_id is not None:
                _set_inherited(tenant_id, rows, node.id, role_id, source_id)
                recascaded += 1
    db.session.flush()
    return {"removed_inherited": removed, "recascaded": recascaded}


def unassign_role(
    tenant_id: int,
    organization_id: int,
    role_id: int,
    remove_inherited: bool = True,
) -> dict:
    """Remove a direct assignment and, optionally, the copies it cascaded.

    Direct assignments in the subtree are never touched. Nodes whose copy is
    removed fall back to the nearest ancestor still holding the role,
    directly or by inheritance.

    Raises:
        NotFoundError: The organization has no active direct assignment of the role.
    """
    org = require_organization(tenant_id, organization_id)
    _require_role(tenant_id, role_id)
    try:
        result = _unassign(tenant_id, org, role_id, remove_inherited)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    logger.info(
        "Role unassigned organization_id=%s role_id=%s removed_inherited=%s recascaded=%s",
        organization_id, role_id, result["removed_inherited"], result["recascaded"],
        extra={"tenant_id": tenant_id, "organization_id": organization_id},
    )
    return result


def bulk_assign(
    tenant_id: int,
    organization_id: int,
    role_ids: list[int],
    replace_existing: bool = False,
    cascade: bool = True,
) -> dict:
    """Assign several roles at once in a single transaction.

    With replace_existing, direct assignments of roles not in role_ids are
    removed first (together with their cascaded copies when cascade is set).
    """
    if not role_ids:
        raise ValidationError("role_ids must not be empty", details={"role_ids": role_ids})
    org = require_organization(tenant_id, organization_id)
    try:
        role_ids = list(dict.fromkeys(int(r) for r in role_ids))
    except (TypeError, ValueError):
        raise ValidationError("role_ids must be integers", details={"role_ids": role_ids})
    for role_id in role_ids:
        _require_role(tenant_id, role_id)

    removed = []
    assigned = []
    try:
        if replace_existing:
            current = db.session.execute(
                select(RoleAssignment).where(
                    RoleAssignment.organization_id == org.id,
                    RoleAssignment.is_active.is_(True),
                    RoleAssignment.is_inherited.is_(False),
                )
            ).scalars().all()
            for row in current:
                if row.role_id not in role_ids:
                    _unassign(tenant_id, org, row.role_id, remove_inherited=cascade)
                    removed.append(row.role_id)

        index = _children_index(tenant_id) if cascade else None
        for role_id in role_ids:
            _assign(tenant_id, org, role_id, cascade, index)
            assigned.append(role_id)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info(
        "Bulk assign organization_id=%s assigned=%s removed=%s",
        organization_id, assigned, removed,
        extra={"tenant_id": tenant_id, "organization_id": organization_id},
    )
    return {"assigned": assigned, "removed": removed}


def inherit_roles(
    tenant_id: int,
    from_org_id: int,
    to_org_id: int,
    role_ids: list[int] | None = None,
) -> dict:
    """Copy the source's active roles to one descendant as INHERITED slots.

    Raises:
        ValidationError: target is not a descendant of the source.
        NotFoundError:   the source has no matching active roles.
    """
    source = require_organization(tenant_id, from_org_id)
    target = require_organization(tenant_id, to_org_id)
    if not any(a.id == source.id for a in get_ancestors(tenant_id, target.id)):
        raise ValidationError(
            "Roles can only be inherited by a descendant organization",
            details={"from_org_id": from_org_id, "to_org_id": to_org_id},
        )

    stmt = select(RoleAssignment).where(
        RoleAssignment.organization_id == source.id,
        RoleAssignment.is_active.is_(True),
    )
    if role_ids:
        stmt = stmt.where(RoleAssignment.role_id.in_(role_ids))
    source_rows = db.session.execute(stmt).scalars().all()
    if not source_rows:
        raise NotFoundError(resource="RoleAssignment", resource_id=from_org_id, tenant_id=tenant_id)

    inherited = []
    skipped = []
    for src in source_rows:
        row = _assignment(target.id, src.role_id)
        if row is not None and row.is_active and not row.is_inherited:
            skipped.append(src.role_id)
            continue
        rows = {target.id: row} if row is not None else {}
        _set_inherited(tenant_id, rows, target.id, src.role_id, source.id)
        inherited.append(src.role_id)
    _commit_or_rollback()

    logger.info(
        "Roles inherited from organization_id=%s to %s count=%s",
        from_org_id, to_org_id, len(inherited),
        extra={"tenant_id": tenant_id, "organization_id": to_org_id},
    )
    return {"inherited": inherited, "skipped_direct": skipped}


# ── Queries ───────────────────────────────────────────────────────────────────


def get_effective_roles(tenant_id: int, organization_id: int) -> list[RoleAssignment]:
    """Active direct and inherited assignments of an organization."""
    require_organization(tenant_id, organization_id)
    return list(db.session.execute(
        select(RoleAssignment)
        .join(OrganizationRole, OrganizationRole.id == RoleAssignment.role_id)
        .where(
            RoleAssignment.organization_id == organization_id,
            RoleAssignment.is_active.is_(True),
            OrganizationRole.is_active.is_(True),
        )
    ).scalars().all())


def get_available_roles(tenant_id: int, organization_id: int) -> list[dict]:
    """Effective roles with provenance, most senior first."""
    assignments = get_effective_roles(tenant_id, organization_id)
    source_ids = {a.inherited_from_organization_id for a in assignments if a.is_inherited}
    sources = {}
    if source_ids:
        sources = {
            o.id: o for o in db.session.execute(
                select(Organization).where(Organization.id.in_(source_ids))
            ).scalars().all()
        }

    result = []
    for a in assignments:
        src = sources.get(a.inherited_from_organization_id)
        result.append({
            "role_id": a.role_id,
            "name": a.role.name,
            "rank": a.role.rank,
            "is_leadership": a.role.is_leadership,
            "is_inherited": a.is_inherited,
            "inherited_from_organization_id": a.inherited_from_organization_id,
            "inherited_from_name": src.name if src else None,
        })
    result.sort(key=lambda r: (-r["rank"], r["name"]))
    return result


def get_role_holders(tenant_id: int, organization_id: int, role_name: str,
                     leadership_only: bool = False) -> list[int]:
    """Concrete active users holding role_name at organization_id.

    Members holding the role at the organization itself count; when the
    organization's slot is inherited, members holding it at the source
    organization count too. An organization without the role yields [], as
    does a non-leadership role when leadership_only is set.
    """
    role = _role_by_name(tenant_id, role_name)
    if role is None or (leadership_only and not role.is_leadership):
        return []
    row = _assignment(organization_id, role.id)
    if row is None or not row.is_active:
        return []

    org_ids = [organization_id]
    if row.is_inherited and row.inherited_from_organization_id is not None:
        org_ids.append(row.inherited_from_organization_id)

    user_ids = db.session.execute(
        select(OrganizationMembership.user_id)
        .join(User, User.id == OrganizationMembership.user_id)
        .where(
            OrganizationMembership.tenant_id == tenant_id,
            OrganizationMembership.organization_id.in_(org_ids),
            OrganizationMembership.role_id == role.id,
            OrganizationMembership.is_active.is_(True),
            User.status == "active",
        )
        .distinct()
    ).scalars().all()
    return sorted(user_ids)


def get_assignment_stats(tenant_id: int, organization_id: int) -> dict:
    assignments = get_effective_roles(tenant_id, organization_id)
    total_roles = db.session.execute(
        select(db.func.count(OrganizationRole.id)).where(
            OrganizationRole.tenant_id == tenant_id,
            OrganizationRole.is_active.is_(True),
        )
    ).scalar_one()
    direct = sum(1 for a in assignments if not a.is_inherited)
    inherited = len(assignments) - direct
    leadership = sum(1 for a in assignments if a.role.is_leadership)
    return {
        "organization_id": organization_id,
        "direct": direct,
        "inherited": inherited,
        "total": len(assignments),
        "leadership": leadership,
        "total_roles": total_roles,
        "assignment_rate": round(len(assignments) / total_roles * 100, 1) if total_roles else 0.0,
    }
