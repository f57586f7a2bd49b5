"""
Approval matrix service.

Matrices map (category, amount band, organization scope) to an ordered list
of approval levels. Selection is fully deterministic:

    priority DESC, band width ASC, id ASC

where an unbounded band side counts as UNBOUNDED_AMOUNT.

Each level names the organization its roles are resolved against through
an OrgLevelMode; RESOLVERS maps every mode to its resolution function.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import or_, select

from app.core.exceptions import NoApplicableMatrix, NotFoundError, ValidationError
from app.models import db
from app.models.approval import (
    MATRIX_CATEGORIES,
    ApprovalMatrix,
    ApprovalMatrixLevel,
    EscalationRule,
    OrgLevelMode,
    TimeoutPolicy,
)
from app.models.organization import Organization
from app.services.organization_service import get_ancestors, require_organization

logger = logging.getLogger(__name__)


# ── Default matrix set ────────────────────────────────────────────────────────
# Each entry expands to one matrix per listed category.

DEFAULT_MATRICES = [
    {
        "key": "personnel",
        "name": "Personnel costs",
        "categories": ["SALARY", "BONUS", "BENEFITS"],
        "min_amount": 1,
        "max_amount": None,
        "priority": 100,
        "levels": [
            {"required_roles": ["Accountant"], "mode": "ROOT", "timeout_hours": 48},
            {"required_roles": ["Senior Pastor"], "mode": "ROOT", "timeout_hours": 72},
        ],
    },
    {
        "key": "construction",
        "name": "Construction & facilities",
        "categories": ["CONSTRUCTION", "FACILITIES"],
        "min_amount": 1,
        "max_amount": None,
        "priority": 90,
        "levels": [
            {"required_roles": ["Department Head"], "mode": "SAME", "timeout_hours": 24},
            {"required_roles": ["Parish Head"], "mode": "PARENT", "timeout_hours": 48},
            {"required_roles": ["Facilities Chair"], "mode": "ROOT", "timeout_hours": 72},
            {"required_roles": ["Senior Pastor"], "mode": "ROOT", "timeout_hours": 72},
        ],
    },
    {
        "key": "ministry_expense_large",
        "name": "Ministry expense (large)",
        "categories": ["MINISTRY", "EQUIPMENT", "EVENT"],
        "min_amount": 500001,
        "max_amount": None,
        "priority": 80,
        "levels": [
            {"required_roles": ["Department Head"], "mode": "SAME", "timeout_hours": 24},
            {"required_roles": ["Parish Head", "Group Leader"], "mode": "PARENT", "timeout_hours": 48},
            {"required_roles": ["Committee Chair", "President"], "mode": "ROOT", "timeout_hours": 72},
        ],
    },
    {
        "key": "ministry_expense_medium",
        "name": "Ministry expense (medium)",
        "categories": ["MINISTRY", "SUPPLIES", "EQUIPMENT"],
        "min_amount": 100001,
        "max_amount": 500000,
        "priority": 70,
        "levels": [
            {"required_roles": ["Department Head"], "mode": "SAME", "timeout_hours": 24},
            {"required_roles": ["Parish Head", "Group Leader"], "mode": "PARENT", "timeout_hours": 48},
        ],
    },
    {
        "key": "utilities_maintenance",
        "name": "Utilities & maintenance",
        "categories": ["UTILITIES", "MAINTENANCE"],
        "min_amount": None,
        "max_amount": 1000000,
        "priority": 60,
        "levels": [
            {"required_roles": ["Accountant"], "mode": "ROOT", "timeout_hours": 24},
        ],
    },
    {
        "key": "ministry_expense_small",
        "name": "Ministry expense (small)",
        "categories": ["MINISTRY", "SUPPLIES"],
        "min_amount": None,
        "max_amount": 100000,
        "priority": 50,
        "levels": [
            {"required_roles": ["Department Head", "Deputy Head"], "mode": "SAME", "timeout_hours": 24},
        ],
    },
    {
        "key": "other",
        "name": "Other expenses",
        "categories": ["OTHER"],
        "min_amount": None,
        "max_amount": 50000,
        "priority": 10,
        "levels": [
            {"required_roles": ["Department Head", "Deputy Head", "Accountant"], "mode": "SAME",
             "timeout_hours": 24},
        ],
    },
]


# ── Level organization resolution ─────────────────────────────────────────────


def _resolve_same(tenant_id: int, org: Organization) -> Organization:
    return org


def _resolve_parent(tenant_id: int, org: Organization) -> Organization:
    # A root has no parent; its own level answers for it.
    if org.parent_id is None:
        return org
    return require_organization(tenant_id, org.parent_id)


def _resolve_root(tenant_id: int, org: Organization) -> Organization:
    ancestors = get_ancestors(tenant_id, org.id)
    return ancestors[-1] if ancestors else org


RESOLVERS = {
    OrgLevelMode.SAME: _resolve_same,
    OrgLevelMode.PARENT: _resolve_parent,
    OrgLevelMode.ROOT: _resolve_root,
}


def resolve_level_organization(tenant_id: int, org: Organization, mode) -> Organization:
    """Organization a matrix level's roles are resolved against."""
    return RESOLVERS[OrgLevelMode(mode)](tenant_id, org)


# ── Private helpers ───────────────────────────────────────────────────────────


def _to_amount(value, field: str) -> Decimal | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={field: value})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: value})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", details={field: str(value)})
    if amount < 0:
        raise ValidationError(f"{field} must not be negative", details={field: value})
    return amount


def _to_int(value, field: str, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: value})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: value})


def _validate_category(category: str) -> str:
    category = category.upper() if isinstance(category, str) else ""
    if category not in MATRIX_CATEGORIES:
        raise ValidationError(
            f"Unknown category {category!r}",
            details={"category": category, "allowed": sorted(MATRIX_CATEGORIES)},
        )
    return category


def _validate_levels(levels: list) -> list[dict]:
    if not levels:
        raise ValidationError("A matrix needs at least one level", details={"levels": "required"})
    if not isinstance(levels, list) or not all(isinstance(raw, dict) for raw in levels):
        raise ValidationError("levels must be a list of objects", details={"levels": "invalid"})

    cleaned = []
    seen_orders = set()
    for position, raw in enumerate(levels, start=1):
        order = _to_int(raw.get("level_order"), "level_order") or position
        if order in seen_orders:
            raise ValidationError(f"Duplicate level_order {order}", details={"level_order": order})
        seen_orders.add(order)

        raw_roles = raw.get("required_roles") or []
        if not isinstance(raw_roles, list) or not all(isinstance(r, str) for r in raw_roles):
            raise ValidationError(f"Level {order} required_roles must be a list of role names",
                                  details={"level_order": order})
        roles = [r.strip() for r in raw_roles if r.strip()]
        if not roles:
            raise ValidationError(f"Level {order} needs at least one role",
                                  details={"level_order": order})

        mode = raw.get("organization_level_mode") or OrgLevelMode.SAME.value
        try:
            mode = OrgLevelMode(mode.upper()).value
        except (AttributeError, ValueError):
            raise ValidationError(
                f"Unknown organization_level_mode {mode!r}",
                details={"level_order": order, "allowed": [m.value for m in OrgLevelMode]},
            )

        timeout = _to_int(raw.get("timeout_hours"), "timeout_hours")
        if timeout is not None and timeout <= 0:
            raise ValidationError(f"Level {order} timeout_hours must be positive",
                                  details={"level_order": order})

        cleaned.append({
            "level_order": order,
            "required_roles": list(dict.fromkeys(roles)),
            "organization_level_mode": mode,
            "is_required": bool(raw.get("is_required", True)),
            "is_parallel": bool(raw.get("is_parallel", False)),
            "timeout_hours": timeout,
        })
    return sorted(cleaned, key=lambda lvl: lvl["level_order"])


def require_matrix(tenant_id: int, matrix_id: int) -> ApprovalMatrix:
    matrix = db.session.execute(
        select(ApprovalMatrix).where(
            ApprovalMatrix.id == matrix_id,
            ApprovalMatrix.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if matrix is None:
        raise NotFoundError(resource="ApprovalMatrix", resource_id=matrix_id, tenant_id=tenant_id)
    return matrix


# ── Matrix CRUD ───────────────────────────────────────────────────────────────


def create_matrix(tenant_id: int, data: dict) -> dict:
    """Create a matrix with its levels.

    Raises:
        ValidationError: Bad category, band, levels, or scope organization.
    """
    name = data.get("name")
    name = name.strip() if isinstance(name, str) else ""
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    category = _validate_category(data.get("category"))
    min_amount = _to_amount(data.get("min_amount"), "min_amount")
    max_amount = _to_amount(data.get("max_amount"), "max_amount")
    if min_amount is not None and max_amount is not None and min_amount > max_amount:
        raise ValidationError(
            "min_amount must not exceed max_amount",
            details={"min_amount": str(min_amount), "max_amount": str(max_amount)},
        )
    levels = _validate_levels(data.get("levels") or [])

    scope_id = data.get("organization_scope_id")
    if scope_id is not None:
        require_organization(tenant_id, scope_id)

    matrix = ApprovalMatrix(
        tenant_id=tenant_id,
        name=name,
        description=data.get("description"),
        category=category,
        min_amount=min_amount,
        max_amount=max_amount,
        priority=_to_int(data.get("priority"), "priority", 0),
        is_active=bool(data.get("is_active", True)),
        organization_scope_id=scope_id,
    )
    matrix.levels = [ApprovalMatrixLevel(**lvl) for lvl in levels]
    db.session.add(matrix)
    db.session.commit()
    logger.info(
        "Approval matrix created tenant_id=%s matrix_id=%s category=%s priority=%s",
        tenant_id, matrix.id, category, matrix.priority,
        extra={"tenant_id": tenant_id},
    )
    return matrix.to_dict()


def list_matrices(tenant_id: int, *, category: str | None = None,
                  include_inactive: bool = False) -> list[dict]:
    stmt = select(ApprovalMatrix).where(ApprovalMatrix.tenant_id == tenant_id)
    if category:
        stmt = stmt.where(ApprovalMatrix.category == category.upper())
    if not include_inactive:
        stmt = stmt.where(ApprovalMatrix.is_active.is_(True))
    stmt = stmt.order_by(ApprovalMatrix.category, ApprovalMatrix.priority.desc(), ApprovalMatrix.id)
    return [m.to_dict() for m in db.session.execute(stmt).scalars().all()]


def get_matrix(tenant_id: int, matrix_id: int) -> dict:
    return require_matrix(tenant_id, matrix_id).to_dict()


def deactivate_matrix(tenant_id: int, matrix_id: int) -> dict:
    """Deactivate a matrix. Flows already created from it keep their steps."""
    matrix = require_matrix(tenant_id, matrix_id)
    matrix.is_active = False
    db.session.commit()
    logger.info("Approval matrix deactivated tenant_id=%s matrix_id=%s", tenant_id, matrix_id,
                extra={"tenant_id": tenant_id})
    return matrix.to_dict(include_levels=False)


def seed_default_matrices(tenant_id: int) -> int:
    """Create the default matrix set for a tenant. Existing names are skipped.

    Returns:
        Number of matrices created.
    """
    existing = set(db.session.execute(
        select(ApprovalMatrix.name).where(ApprovalMatrix.tenant_id == tenant_id)
    ).scalars().all())

    created = 0
    for template in DEFAULT_MATRICES:
        for category in template["categories"]:
            name = f"{template['name']} / {category}"
            if name in existing:
                continue
            matrix = ApprovalMatrix(
                tenant_id=tenant_id,
                name=name,
                description=f"Default matrix '{template['key']}'",
                category=category,
                min_amount=template["min_amount"],
                max_amount=template["max_amount"],
                priority=template["priority"],
            )
            matrix.levels = [
                ApprovalMatrixLevel(
                    level_order=order,
                    required_roles=list(lvl["required_roles"]),
                    organization_level_mode=lvl["mode"],
                    # Several roles on one default level are alternatives
                    is_required=len(lvl["required_roles"]) == 1,
                    is_parallel=False,
                    timeout_hours=lvl["timeout_hours"],
                )
                for order, lvl in enumerate(template["levels"], start=1)
            ]
            db.session.add(matrix)
            created += 1
    db.session.commit()
    logger.info("Seeded %s default approval matrices tenant_id=%s", created, tenant_id,
                extra={"tenant_id": tenant_id})
    return created


# ── Escalation rules ──────────────────────────────────────────────────────────


def set_escalation_rule(
    tenant_id: int,
    category: str,
    on_timeout: str,
    max_escalations: int | None = None,
) -> dict:
    category = _validate_category(category)
    try:
        policy = TimeoutPolicy((on_timeout or "").lower())
    except (AttributeError, ValueError):
        raise ValidationError(
            f"Unknown timeout policy {on_timeout!r}",
            details={"allowed": [p.value for p in TimeoutPolicy]},
        )
    max_escalations = _to_int(max_escalations, "max_escalations")
    if max_escalations is None:
        max_escalations = int(current_app.config.get("APPROVAL_MAX_ESCALATIONS", 3))
    if max_escalations < 0:
        raise ValidationError("max_escalations must not be negative",
                              details={"max_escalations": max_escalations})

    rule = db.session.execute(
        select(EscalationRule).where(
            EscalationRule.tenant_id == tenant_id,
            EscalationRule.category == category,
        )
    ).scalar_one_or_none()
    if rule is None:
        rule = EscalationRule(tenant_id=tenant_id, category=category)
        db.session.add(rule)
    rule.on_timeout = policy.value
    rule.max_escalations = max_escalations
    db.session.commit()
    logger.info("Escalation rule set tenant_id=%s category=%s on_timeout=%s",
                tenant_id, category, policy.value, extra={"tenant_id": tenant_id})
    return rule.to_dict()


def get_timeout_policy(tenant_id: int, category: str) -> tuple[TimeoutPolicy, int]:
    """(policy, max_escalations) for a category, falling back to configuration."""
    rule = db.session.execute(
        select(EscalationRule).where(
            EscalationRule.tenant_id == tenant_id,
            EscalationRule.category == category,
        )
    ).scalar_one_or_none()
    if rule is not None:
        return TimeoutPolicy(rule.on_timeout), rule.max_escalations
    return (
        TimeoutPolicy(current_app.config.get("APPROVAL_DEFAULT_TIMEOUT_POLICY", "reject")),
        int(current_app.config.get("APPROVAL_MAX_ESCALATIONS", 3)),
    )


# ── Selection ─────────────────────────────────────────────────────────────────


def select_matrix(tenant_id: int, amount, category: str, organization_id: int) -> ApprovalMatrix:
    """Pick the single applicable matrix for a request.

    Candidates are active, match the category, cover the amount, and are
    either unscoped or scoped to the organization or one of its ancestors.

    Raises:
        ValidationError:   Bad amount or category.
        NotFoundError:     Unknown organization.
        NoApplicableMatrix: No candidate remains.
    """
    amount = _to_amount(amount, "amount")
    if amount is None:
        raise ValidationError("amount is required", details={"amount": "required"})
    category = _validate_category(category)
    org = require_organization(tenant_id, organization_id)
    scope_ids = [org.id] + [a.id for a in get_ancestors(tenant_id, org.id)]

    candidates = db.session.execute(
        select(ApprovalMatrix).where(
            ApprovalMatrix.tenant_id == tenant_id,
            ApprovalMatrix.is_active.is_(True),
            ApprovalMatrix.category == category,
            or_(
                ApprovalMatrix.organization_scope_id.is_(None),
                ApprovalMatrix.organization_scope_id.in_(scope_ids),
            ),
            or_(ApprovalMatrix.min_amount.is_(None), ApprovalMatrix.min_amount <= amount),
            or_(ApprovalMatrix.max_amount.is_(None), ApprovalMatrix.max_amount >= amount),
        )
    ).scalars().all()

    if not candidates:
        raise NoApplicableMatrix(amount, category, organization_id)

    selected = sorted(candidates, key=lambda m: (-m.priority, m.band_width, m.id))[0]
    logger.debug(
        "Matrix selected tenant_id=%s matrix_id=%s among %s candidates",
        tenant_id, selected.id, len(candidates),
        extra={"tenant_id": tenant_id, "organization_id": organization_id},
    )
    return selected
