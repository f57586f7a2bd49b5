"""
Organization tree service.

Maintains the per-tenant L1..N organization tree and its structural
invariants:
    - level 1 ⇔ no parent
    - parent.level == child.level - 1
    - no cycles, parent in the same tenant

Reorganization (move_subtree / promote_to_root) computes the full new level
map for the moved subtree in memory, validates all of it, and only then
writes, in a single commit. A failed validation leaves the tree untouched.

Nodes are addressed by id; the children index is rebuilt on demand from one
tenant-scoped query instead of traversing ORM relationships.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import ConflictError, NotFoundError, StructuralViolation, ValidationError
from app.models import db
from app.models.organization import DEFAULT_MAX_DEPTH, Organization

logger = logging.getLogger(__name__)


# ── Private helpers ───────────────────────────────────────────────────────────


def _max_depth() -> int:
    return int(current_app.config.get("ORG_MAX_DEPTH", DEFAULT_MAX_DEPTH))


def _children_index(tenant_id: int) -> dict[int | None, list[Organization]]:
    """parent_id → children, built from one query over the tenant's nodes."""
    rows = db.session.execute(
        select(Organization)
        .where(Organization.tenant_id == tenant_id)
        .order_by(Organization.sort_order, Organization.name, Organization.id)
    ).scalars().all()
    index: dict[int | None, list[Organization]] = defaultdict(list)
    for org in rows:
        index[org.parent_id].append(org)
    return index


def _subtree(index: dict, root: Organization) -> list[Organization]:
    """Root followed by all descendants in breadth-first order."""
    result = []
    seen = set()
    queue = deque([root])
    while queue:
        node = queue.popleft()
        if node.id in seen:
            continue
        seen.add(node.id)
        result.append(node)
        queue.extend(index.get(node.id, []))
    return result


def require_organization(tenant_id: int, org_id: int) -> Organization:
    """Load an organization scoped to the tenant or raise NotFoundError."""
    org = db.session.execute(
        select(Organization).where(
            Organization.id == org_id,
            Organization.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if org is None:
        raise NotFoundError(resource="Organization", resource_id=org_id, tenant_id=tenant_id)
    return org


# ── Creation & lookup ─────────────────────────────────────────────────────────


def create_organization(tenant_id: int, data: dict) -> dict:
    """Create a node, enforcing code uniqueness and the parent/level rule.

    Raises:
        ValidationError:     Missing code/name or non-integer level.
        ConflictError:       Code already used within the tenant.
        StructuralViolation: Level out of range or parent/level mismatch.
    """
    code = (data.get("code") or "").strip()
    name = (data.get("name") or "").strip()
    if not code or not name:
        raise ValidationError("code and name are required", details={"code": code, "name": name})

    parent_id = data.get("parent_id")
    level = data.get("level")
    try:
        level = int(level) if level is not None else None
    except (TypeError, ValueError):
        raise ValidationError("level must be an integer", details={"level": data.get("level")})

    parent = require_organization(tenant_id, parent_id) if parent_id is not None else None
    if level is None:
        level = parent.level + 1 if parent else 1

    max_depth = _max_depth()
    if level < 1 or level > max_depth:
        raise StructuralViolation(
            f"level must be between 1 and {max_depth}", details={"level": level},
        )
    if parent is None and level != 1:
        raise StructuralViolation("Only level-1 organizations may have no parent",
                                  details={"level": level})
    if parent is not None and level == 1:
        raise StructuralViolation("Level-1 organizations cannot have a parent",
                                  details={"parent_id": parent_id})
    if parent is not None and parent.level != level - 1:
        raise StructuralViolation(
            f"Parent level {parent.level} does not match child level {level}",
            details={"parent_id": parent_id, "parent_level": parent.level, "level": level},
        )

    existing = db.session.execute(
        select(Organization.id).where(
            Organization.tenant_id == tenant_id,
            Organization.code == code,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError(resource="Organization", field="code", value=code)

    org = Organization(
        tenant_id=tenant_id,
        code=code,
        name=name,
        level=level,
        parent_id=parent.id if parent else None,
        sort_order=int(data.get("sort_order") or 0),
        is_active=bool(data.get("is_active", True)),
    )
    db.session.add(org)
    db.session.commit()
    logger.info(
        "Organization created tenant_id=%s organization_id=%s level=%s parent_id=%s",
        tenant_id, org.id, org.level, org.parent_id,
        extra={"tenant_id": tenant_id, "organization_id": org.id},
    )
    return org.to_dict()


def get_organization(tenant_id: int, org_id: int) -> dict:
    return require_organization(tenant_id, org_id).to_dict()


def list_organizations(
    tenant_id: int,
    *,
    level: int | None = None,
    parent_id: int | None = None,
    include_inactive: bool = False,
) -> list[dict]:
    stmt = select(Organization).where(Organization.tenant_id == tenant_id)
    if level is not None:
        stmt = stmt.where(Organization.level == level)
    if parent_id is not None:
        stmt = stmt.where(Organization.parent_id == parent_id)
    if not include_inactive:
        stmt = stmt.where(Organization.is_active.is_(True))
    stmt = stmt.order_by(Organization.level, Organization.sort_order, Organization.name)
    return [o.to_dict() for o in db.session.execute(stmt).scalars().all()]


def get_children(tenant_id: int, org_id: int) -> list[Organization]:
    require_organization(tenant_id, org_id)
    return list(_children_index(tenant_id).get(org_id, []))


def get_ancestors(tenant_id: int, org_id: int) -> list[Organization]:
    """Ancestors of a node, nearest first (parent, grandparent, … root)."""
    org = require_organization(tenant_id, org_id)
    ancestors = []
    seen = {org.id}
    parent_id = org.parent_id
    while parent_id is not None and parent_id not in seen:
        parent = db.session.get(Organization, parent_id)
        if parent is None or parent.tenant_id != tenant_id:
            break
        ancestors.append(parent)
        seen.add(parent.id)
        parent_id = parent.parent_id
    return ancestors


def get_descendants(tenant_id: int, org_id: int) -> list[Organization]:
    """All descendants (excluding the node itself) in breadth-first order."""
    org = require_organization(tenant_id, org_id)
    return _subtree(_children_index(tenant_id), org)[1:]


def get_root(tenant_id: int, org_id: int) -> Organization:
    ancestors = get_ancestors(tenant_id, org_id)
    return ancestors[-1] if ancestors else require_organization(tenant_id, org_id)


def is_descendant(tenant_id: int, ancestor_id: int, org_id: int) -> bool:
    return any(a.id == ancestor_id for a in get_ancestors(tenant_id, org_id))


def tree_distance(tenant_id: int, from_id: int, to_id: int) -> int | None:
    """Number of edges between two nodes, or None when they are in different trees."""
    if from_id == to_id:
        require_organization(tenant_id, from_id)
        return 0
    from_path = [from_id] + [a.id for a in get_ancestors(tenant_id, from_id)]
    to_path = [to_id] + [a.id for a in get_ancestors(tenant_id, to_id)]
    to_depth = {node_id: depth for depth, node_id in enumerate(to_path)}
    for depth, node_id in enumerate(from_path):
        if node_id in to_depth:
            return depth + to_depth[node_id]
    return None


def get_tree(tenant_id: int, *, include_inactive: bool = False) -> list[dict]:
    """Nested dict representation of every root and its subtree."""
    index = _children_index(tenant_id)

    def _build(node: Organization) -> dict:
        d = node.to_dict()
        d["children"] = [
            _build(child) for child in index.get(node.id, [])
            if include_inactive or child.is_active
        ]
        return d

    return [_build(root) for root in index.get(None, []) if include_inactive or root.is_active]


def deactivate_organization(tenant_id: int, org_id: int) -> dict:
    """Soft-deactivate a node. Historical steps keep referencing it."""
    org = require_organization(tenant_id, org_id)
    org.is_active = False
    db.session.commit()
    logger.info(
        "Organization deactivated tenant_id=%s organization_id=%s",
        tenant_id, org_id,
        extra={"tenant_id": tenant_id, "organization_id": org_id},
    )
    return org.to_dict()


# ── Reorganization ────────────────────────────────────────────────────────────


def move_subtree(
    tenant_id: int,
    org_id: int,
    new_parent_id: int | None,
    new_level: int,
) -> dict:
    """Reparent a node and shift its whole subtree by the same level delta.

    Every node of the subtree is re-levelled by ``new_level - old_level``.
    All checks run against the in-memory level map before anything is
    written; the write itself is a single commit. Inherited role slots in
    the subtree whose source is no longer an ancestor are re-pointed at the
    nearest remaining holder, or dropped, in that same commit.

    Returns:
        {"organization": dict, "delta": int, "moved": int,
         "levels": {id: level}, "repointed_roles": int}

    Raises:
        NotFoundError:       org_id unknown in this tenant.
        StructuralViolation: Out-of-range levels, parent/level mismatch,
                             cycle, or parent missing from the tenant.
    """
    org = require_organization(tenant_id, org_id)
    max_depth = _max_depth()

    try:
        new_level = int(new_level)
    except (TypeError, ValueError):
        raise StructuralViolation("new_level must be an integer", details={"new_level": new_level})

    if new_level < 1 or new_level > max_depth:
        raise StructuralViolation(
            f"new_level must be between 1 and {max_depth}", details={"new_level": new_level},
        )

    index = _children_index(tenant_id)
    subtree = _subtree(index, org)
    subtree_ids = {node.id for node in subtree}

    new_parent = None
    if new_parent_id is None:
        if new_level != 1:
            raise StructuralViolation(
                "A node without parent must be at level 1", details={"new_level": new_level},
            )
    else:
        if new_level == 1:
            raise StructuralViolation(
                "Level-1 organizations cannot have a parent",
                details={"new_parent_id": new_parent_id},
            )
        if new_parent_id in subtree_ids:
            raise StructuralViolation(
                "Cannot move an organization under itself or one of its descendants",
                details={"organization_id": org_id, "new_parent_id": new_parent_id},
            )
        new_parent = db.session.execute(
            select(Organization).where(
                Organization.id == new_parent_id,
                Organization.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if new_parent is None:
            raise StructuralViolation(
                "New parent does not exist in this tenant",
                details={"new_parent_id": new_parent_id},
            )
        if new_parent.level != new_level - 1:
            raise StructuralViolation(
                f"Parent level {new_parent.level} does not match new level {new_level}",
                details={"new_parent_id": new_parent_id, "parent_level": new_parent.level},
            )

    delta = new_level - org.level
    new_levels = {node.id: node.level + delta for node in subtree}
    out_of_range = {
        node_id: lvl for node_id, lvl in new_levels.items() if lvl < 1 or lvl > max_depth
    }
    if out_of_range:
        raise StructuralViolation(
            f"Move would place {len(out_of_range)} organization(s) outside levels 1..{max_depth}",
            details={"out_of_range": out_of_range},
        )

    from app.services.role_inheritance_service import repair_inherited_slots

    old_parent_id = org.parent_id
    try:
        for node in subtree:
            node.level = new_levels[node.id]
        org.parent_id = new_parent.id if new_parent else None
        db.session.flush()
        repointed = repair_inherited_slots(tenant_id, subtree)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info(
        "Subtree moved tenant_id=%s organization_id=%s parent %s→%s delta=%s nodes=%s repointed=%s",
        tenant_id, org_id, old_parent_id, org.parent_id, delta, len(subtree), repointed,
        extra={"tenant_id": tenant_id, "organization_id": org_id},
    )
    return {
        "organization": org.to_dict(),
        "delta": delta,
        "moved": len(subtree),
        "levels": new_levels,
        "repointed_roles": repointed,
    }


def promote_to_root(tenant_id: int, org_id: int) -> dict:
    """Detach a node from its parent and make it a level-1 root."""
    return move_subtree(tenant_id, org_id, None, 1)


def validate_tree(tenant_id: int) -> list[dict]:
    """Return every structural invariant violation in the tenant's tree.

    An empty list means the tree is healthy.
    """
    max_depth = _max_depth()
    nodes = {
        o.id: o for o in db.session.execute(
            select(Organization).where(Organization.tenant_id == tenant_id)
        ).scalars().all()
    }
    violations = []
    for org in nodes.values():
        if org.level < 1 or org.level > max_depth:
            violations.append({"organization_id": org.id, "rule": "level_range", "level": org.level})
        if org.parent_id is None:
            if org.level != 1:
                violations.append({"organization_id": org.id, "rule": "root_level", "level": org.level})
            continue
        parent = nodes.get(org.parent_id)
        if parent is None:
            violations.append({"organization_id": org.id, "rule": "parent_missing",
                               "parent_id": org.parent_id})
            continue
        if parent.level != org.level - 1:
            violations.append({"organization_id": org.id, "rule": "parent_level",
                               "level": org.level, "parent_level": parent.level})

        seen = {org.id}
        cursor = parent
        while cursor is not None:
            if cursor.id in seen:
                violations.append({"organization_id": org.id, "rule": "cycle"})
                break
            seen.add(cursor.id)
            cursor = nodes.get(cursor.parent_id) if cursor.parent_id is not None else None
    return violations
