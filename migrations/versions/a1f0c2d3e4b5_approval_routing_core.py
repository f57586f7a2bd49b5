"""approval_routing_core

Creates the approval routing schema:
  - tenants, users                       — tenant scope and concrete approvers
  - organizations                        — L1..L4 tree (parent pointer + level)
  - organization_roles, role_assignments — role catalogue and (org, role) slots
  - organization_memberships             — user holds role at organization
  - approval_matrices, approval_matrix_levels, escalation_rules
  - approval_flows, approval_steps
  - notifications, scheduled_jobs

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: a1f0c2d3e4b5
Revises:
Create Date: 2026-03-02 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1f0c2d3e4b5'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Tenant / User ─────────────────────────────────────────────────────
    if "tenants" not in existing:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column(
                "status", sa.String(length=20), nullable=True,
                comment="active | inactive | suspended",
            ),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        )
        op.create_index("ix_users_tenant_id", "users", ["tenant_id"])

    # ── Organization tree ─────────────────────────────────────────────────
    if "organizations" not in existing:
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False, comment="Unique within tenant"),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("level", sa.Integer(), nullable=False, comment="1=root … N=deepest"),
            sa.Column("parent_id", sa.Integer(), nullable=True, comment="NULL for L1 roots"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["parent_id"], ["organizations.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "code", name="uq_org_tenant_code"),
        )
        op.create_index("ix_organizations_tenant_id", "organizations", ["tenant_id"])
        op.create_index("ix_org_tenant_parent", "organizations", ["tenant_id", "parent_id"])
        op.create_index("ix_org_tenant_level", "organizations", ["tenant_id", "level"])

    if "organization_roles" not in existing:
        op.create_table(
            "organization_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("rank", sa.Integer(), nullable=False, server_default="0",
                      comment="Higher = more senior"),
            sa.Column("is_leadership", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "name", name="uq_org_role_tenant_name"),
        )
        op.create_index("ix_organization_roles_tenant_id", "organization_roles", ["tenant_id"])

    if "role_assignments" not in existing:
        op.create_table(
            "role_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("is_inherited", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("inherited_from_organization_id", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["organization_roles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["inherited_from_organization_id"], ["organizations.id"],
                                    ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "role_id", name="uq_role_assignment_org_role"),
        )
        op.create_index("ix_role_assignments_tenant_id", "role_assignments", ["tenant_id"])
        op.create_index("ix_role_assignment_role_active", "role_assignments", ["role_id", "is_active"])
        op.create_index("ix_role_assignment_source", "role_assignments",
                        ["inherited_from_organization_id"])

    if "organization_memberships" not in existing:
        op.create_table(
            "organization_memberships",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["organization_roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "user_id", "role_id",
                                name="uq_membership_org_user_role"),
        )
        op.create_index("ix_organization_memberships_tenant_id", "organization_memberships",
                        ["tenant_id"])
        op.create_index("ix_organization_memberships_user_id", "organization_memberships",
                        ["user_id"])
        op.create_index("ix_membership_org_role", "organization_memberships",
                        ["organization_id", "role_id"])

    # ── Matrices ──────────────────────────────────────────────────────────
    if "approval_matrices" not in existing:
        op.create_table(
            "approval_matrices",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=False),
            sa.Column("min_amount", sa.Numeric(precision=15, scale=2), nullable=True,
                      comment="NULL = 0"),
            sa.Column("max_amount", sa.Numeric(precision=15, scale=2), nullable=True,
                      comment="NULL = unbounded"),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0",
                      comment="Higher wins"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("organization_scope_id", sa.Integer(), nullable=True,
                      comment="Restricts the matrix to this subtree"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["organization_scope_id"], ["organizations.id"],
                                    ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_matrices_tenant_id", "approval_matrices", ["tenant_id"])
        op.create_index("ix_matrix_tenant_category_active", "approval_matrices",
                        ["tenant_id", "category", "is_active"])

    if "approval_matrix_levels" not in existing:
        op.create_table(
            "approval_matrix_levels",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("matrix_id", sa.Integer(), nullable=False),
            sa.Column("level_order", sa.Integer(), nullable=False),
            sa.Column("required_roles", sa.JSON(), nullable=False, comment="List of role names"),
            sa.Column("organization_level_mode", sa.String(length=10), nullable=False,
                      server_default="SAME", comment="SAME | PARENT | ROOT"),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_parallel", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("timeout_hours", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["matrix_id"], ["approval_matrices.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("matrix_id", "level_order", name="uq_matrix_level_order"),
        )

    if "escalation_rules" not in existing:
        op.create_table(
            "escalation_rules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("category", sa.String(length=30), nullable=False),
            sa.Column("on_timeout", sa.String(length=10), nullable=False,
                      server_default="reject", comment="escalate | reject"),
            sa.Column("max_escalations", sa.Integer(), nullable=False, server_default="3"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "category", name="uq_escalation_tenant_category"),
        )
        op.create_index("ix_escalation_rules_tenant_id", "escalation_rules", ["tenant_id"])

    # ── Flows & steps ─────────────────────────────────────────────────────
    if "approval_flows" not in existing:
        op.create_table(
            "approval_flows",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("transaction_id", sa.String(length=64), nullable=False),
            sa.Column("requesting_organization_id", sa.Integer(), nullable=False),
            sa.Column("requester_user_id", sa.Integer(), nullable=True),
            sa.Column("matrix_id", sa.Integer(), nullable=False),
            sa.Column("amount", sa.Numeric(precision=15, scale=2), nullable=False),
            sa.Column("category", sa.String(length=30), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False,
                      server_default="IN_PROGRESS"),
            sa.Column("current_level_order", sa.Integer(), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["requesting_organization_id"], ["organizations.id"],
                                    ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["requester_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["matrix_id"], ["approval_matrices.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "transaction_id", name="uq_flow_tenant_transaction"),
        )
        op.create_index("ix_approval_flows_tenant_id", "approval_flows", ["tenant_id"])
        op.create_index("ix_approval_flows_requester_user_id", "approval_flows",
                        ["requester_user_id"])
        op.create_index("ix_flow_tenant_status", "approval_flows", ["tenant_id", "status"])

    if "approval_steps" not in existing:
        op.create_table(
            "approval_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("flow_id", sa.Integer(), nullable=False),
            sa.Column("level_order", sa.Integer(), nullable=False),
            sa.Column("resolved_organization_id", sa.Integer(), nullable=False),
            sa.Column("required_role_name", sa.String(length=100), nullable=False),
            sa.Column("candidate_user_ids", sa.JSON(), nullable=False),
            sa.Column("approver_user_id", sa.Integer(), nullable=True,
                      comment="Decided by; NULL until the first terminal decision"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_parallel_group", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_unresolved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("timeout_hours", sa.Integer(), nullable=True),
            sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("escalation_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("escalated_from_step_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["flow_id"], ["approval_flows.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["resolved_organization_id"], ["organizations.id"],
                                    ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["approver_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["escalated_from_step_id"], ["approval_steps.id"],
                                    ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_step_flow_level", "approval_steps", ["flow_id", "level_order"])
        op.create_index("ix_step_status_due", "approval_steps", ["status", "due_at"])

    # ── Notifications & jobs ──────────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("recipient_user_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("event_type", sa.String(length=30), nullable=False,
                      comment="step_pending/flow_approved/..."),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True,
                      comment="approval_step/approval_flow"),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["recipient_user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_tenant_id", "notifications", ["tenant_id"])
        op.create_index("ix_notifications_recipient_user_id", "notifications",
                        ["recipient_user_id"])

    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs",
        "notifications",
        "approval_steps",
        "approval_flows",
        "escalation_rules",
        "approval_matrix_levels",
        "approval_matrices",
        "organization_memberships",
        "role_assignments",
        "organization_roles",
        "organizations",
        "users",
        "tenants",
    ):
        op.drop_table(table)
