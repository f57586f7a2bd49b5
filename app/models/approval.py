"""
Approval Routing — Matrix, Flow and Step models.

Models:
    - ApprovalMatrix / ApprovalMatrixLevel: (category, amount band) → ordered levels
    - EscalationRule: per-category timeout policy
    - ApprovalFlow: one per transaction, owns its steps
    - ApprovalStep: one decision unit with a candidate approver set

Transition maps (STEP_TRANSITIONS, FLOW_TRANSITIONS) live here next to the
models they govern; services validate every status change against them.
"""

from datetime import datetime, timezone
from enum import Enum

from app.models import db
from app.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

MATRIX_CATEGORIES = frozenset({
    "MINISTRY",
    "SUPPLIES",
    "EQUIPMENT",
    "EVENT",
    "CONSTRUCTION",
    "FACILITIES",
    "SALARY",
    "BONUS",
    "BENEFITS",
    "UTILITIES",
    "MAINTENANCE",
    "OTHER",
})

# Stand-in width for an unbounded side of an amount band when ranking matrices.
UNBOUNDED_AMOUNT = 10 ** 15


class OrgLevelMode(str, Enum):
    """Which organization a matrix level is resolved against."""
    SAME = "SAME"
    PARENT = "PARENT"
    ROOT = "ROOT"


class TimeoutPolicy(str, Enum):
    ESCALATE = "escalate"
    REJECT = "reject"


FLOW_IN_PROGRESS = "IN_PROGRESS"
FLOW_APPROVED = "APPROVED"
FLOW_REJECTED = "REJECTED"
FLOW_CANCELLED = "CANCELLED"

FLOW_TERMINAL_STATUSES = frozenset({FLOW_APPROVED, FLOW_REJECTED, FLOW_CANCELLED})

STEP_PENDING = "PENDING"
STEP_APPROVED = "APPROVED"
STEP_REJECTED = "REJECTED"
STEP_SKIPPED = "SKIPPED"
STEP_TIMED_OUT = "TIMED_OUT"

FLOW_TRANSITIONS = {
    FLOW_IN_PROGRESS: [FLOW_APPROVED, FLOW_REJECTED, FLOW_CANCELLED],
    FLOW_APPROVED:    [],
    FLOW_REJECTED:    [],
    FLOW_CANCELLED:   [],
}

STEP_TRANSITIONS = {
    STEP_PENDING:   [STEP_APPROVED, STEP_REJECTED, STEP_SKIPPED, STEP_TIMED_OUT],
    STEP_APPROVED:  [],
    STEP_REJECTED:  [],
    STEP_SKIPPED:   [],
    STEP_TIMED_OUT: [],
}

DECISION_ACTIONS = {"APPROVE": STEP_APPROVED, "REJECT": STEP_REJECTED}

TIMEOUT_REASON = "Timeout"


def validate_flow_transition(old_status, new_status):
    """Return True if ApprovalFlow status transition is valid."""
    return new_status in FLOW_TRANSITIONS.get(old_status, [])


def validate_step_transition(old_status, new_status):
    """Return True if ApprovalStep status transition is valid."""
    return new_status in STEP_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. ApprovalMatrix + levels
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalMatrix(TenantModel):
    """Rule set mapping a category and amount band to ordered approval levels."""

    __tablename__ = "approval_matrices"
    __table_args__ = (
        db.Index("ix_matrix_tenant_category_active", "tenant_id", "category", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(30), nullable=False)
    min_amount = db.Column(db.Numeric(15, 2), nullable=True, comment="NULL = 0")
    max_amount = db.Column(db.Numeric(15, 2), nullable=True, comment="NULL = unbounded")
    priority = db.Column(db.Integer, nullable=False, default=0, comment="Higher wins")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    organization_scope_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True, comment="Restricts the matrix to this subtree",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    levels = db.relationship(
        "ApprovalMatrixLevel",
        back_populates="matrix",
        order_by="ApprovalMatrixLevel.level_order",
        cascade="all, delete-orphan",
    )

    @property
    def band_width(self):
        """Width of the amount band; unbounded sides count as UNBOUNDED_AMOUNT."""
        low = self.min_amount if self.min_amount is not None else 0
        high = self.max_amount if self.max_amount is not None else UNBOUNDED_AMOUNT
        return high - low

    def to_dict(self, include_levels=True):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "min_amount": _money(self.min_amount),
            "max_amount": _money(self.max_amount),
            "priority": self.priority,
            "is_active": self.is_active,
            "organization_scope_id": self.organization_scope_id,
            "created_at": _iso(self.created_at),
        }
        if include_levels:
            d["levels"] = [lvl.to_dict() for lvl in self.levels]
        return d

    def __repr__(self):
        return f"<ApprovalMatrix {self.id} {self.category} p={self.priority}>"


class ApprovalMatrixLevel(db.Model):
    """One stage of a matrix: required roles + the org they resolve against."""

    __tablename__ = "approval_matrix_levels"
    __table_args__ = (
        db.UniqueConstraint("matrix_id", "level_order", name="uq_matrix_level_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    matrix_id = db.Column(
        db.Integer, db.ForeignKey("approval_matrices.id", ondelete="CASCADE"), nullable=False,
    )
    level_order = db.Column(db.Integer, nullable=False)
    required_roles = db.Column(db.JSON, nullable=False, default=list, comment="List of role names")
    organization_level_mode = db.Column(
        db.String(10), nullable=False, default=OrgLevelMode.SAME.value,
        comment="SAME | PARENT | ROOT",
    )
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    is_parallel = db.Column(db.Boolean, nullable=False, default=False)
    timeout_hours = db.Column(db.Integer, nullable=True)

    matrix = db.relationship("ApprovalMatrix", back_populates="levels")

    @property
    def mode(self):
        return OrgLevelMode(self.organization_level_mode)

    def to_dict(self):
        return {
            "id": self.id,
            "level_order": self.level_order,
            "required_roles": list(self.required_roles or []),
            "organization_level_mode": self.organization_level_mode,
            "is_required": self.is_required,
            "is_parallel": self.is_parallel,
            "timeout_hours": self.timeout_hours,
        }


# ═════════════════════════════════════════════════════════════════════════════
# 2. EscalationRule — per-category timeout policy
# ═════════════════════════════════════════════════════════════════════════════

class EscalationRule(TenantModel):
    __tablename__ = "escalation_rules"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "category", name="uq_escalation_tenant_category"),
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(30), nullable=False)
    on_timeout = db.Column(
        db.String(10), nullable=False, default=TimeoutPolicy.REJECT.value,
        comment="escalate | reject",
    )
    max_escalations = db.Column(db.Integer, nullable=False, default=3)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "category": self.category,
            "on_timeout": self.on_timeout,
            "max_escalations": self.max_escalations,
        }


# ═════════════════════════════════════════════════════════════════════════════
# 3. ApprovalFlow
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalFlow(TenantModel):
    """Concrete per-transaction instantiation of a matrix. Immutable once terminal."""

    __tablename__ = "approval_flows"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "transaction_id", name="uq_flow_tenant_transaction"),
        db.Index("ix_flow_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(64), nullable=False)
    requesting_organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="RESTRICT"), nullable=False,
    )
    requester_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    matrix_id = db.Column(
        db.Integer, db.ForeignKey("approval_matrices.id", ondelete="RESTRICT"), nullable=False,
    )
    amount = db.Column(db.Numeric(15, 2), nullable=False)
    category = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=FLOW_IN_PROGRESS)
    current_level_order = db.Column(db.Integer, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    steps = db.relationship(
        "ApprovalStep",
        back_populates="flow",
        order_by="ApprovalStep.id",
        cascade="all, delete-orphan",
    )
    matrix = db.relationship("ApprovalMatrix")

    @property
    def is_terminal(self):
        return self.status in FLOW_TERMINAL_STATUSES

    def steps_for_level(self, level_order):
        return [s for s in self.steps if s.level_order == level_order]

    @property
    def level_orders(self):
        return sorted({s.level_order for s in self.steps})

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "transaction_id": self.transaction_id,
            "requesting_organization_id": self.requesting_organization_id,
            "requester_user_id": self.requester_user_id,
            "matrix_id": self.matrix_id,
            "amount": _money(self.amount),
            "category": self.category,
            "status": self.status,
            "current_level_order": self.current_level_order,
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<ApprovalFlow {self.id} tx={self.transaction_id} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ApprovalStep
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalStep(db.Model):
    """
    One decision unit within a flow.

    candidate_user_ids is the set of users allowed to decide; the first
    terminal decision records approver_user_id. Steps of later levels stay
    PENDING with activated_at NULL until their level becomes current.
    """

    __tablename__ = "approval_steps"
    __table_args__ = (
        db.Index("ix_step_flow_level", "flow_id", "level_order"),
        db.Index("ix_step_status_due", "status", "due_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(
        db.Integer, db.ForeignKey("approval_flows.id", ondelete="CASCADE"), nullable=False,
    )
    level_order = db.Column(db.Integer, nullable=False)
    resolved_organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="RESTRICT"), nullable=False,
    )
    required_role_name = db.Column(db.String(100), nullable=False)
    candidate_user_ids = db.Column(db.JSON, nullable=False, default=list)
    approver_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Decided by; NULL until the first terminal decision",
    )
    status = db.Column(db.String(20), nullable=False, default=STEP_PENDING)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    is_parallel_group = db.Column(db.Boolean, nullable=False, default=False)
    is_unresolved = db.Column(db.Boolean, nullable=False, default=False)
    timeout_hours = db.Column(db.Integer, nullable=True)

    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)

    escalation_count = db.Column(db.Integer, nullable=False, default=0)
    escalated_from_step_id = db.Column(
        db.Integer, db.ForeignKey("approval_steps.id", ondelete="SET NULL"), nullable=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    flow = db.relationship("ApprovalFlow", back_populates="steps")

    @property
    def is_active(self):
        return self.status == STEP_PENDING and self.activated_at is not None

    def has_candidate(self, user_id):
        return user_id in (self.candidate_user_ids or [])

    def to_dict(self):
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "level_order": self.level_order,
            "resolved_organization_id": self.resolved_organization_id,
            "required_role_name": self.required_role_name,
            "candidate_user_ids": list(self.candidate_user_ids or []),
            "approver_user_id": self.approver_user_id,
            "status": self.status,
            "is_required": self.is_required,
            "is_parallel_group": self.is_parallel_group,
            "is_unresolved": self.is_unresolved,
            "timeout_hours": self.timeout_hours,
            "activated_at": _iso(self.activated_at),
            "due_at": _iso(self.due_at),
            "decided_at": _iso(self.decided_at),
            "comments": self.comments,
            "escalation_count": self.escalation_count,
            "escalated_from_step_id": self.escalated_from_step_id,
        }

    def __repr__(self):
        return f"<ApprovalStep {self.id} L{self.level_order} {self.required_role_name} {self.status}>"
