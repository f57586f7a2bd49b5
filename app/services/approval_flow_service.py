"""
Approval flow service — instantiation, decisions, timeouts, queries.

A flow is created once per transaction from the matrix selected for
(category, amount, organization). Each matrix level becomes one step per
required role, resolved against the organization chosen by the level's
OrgLevelMode. Step semantics per level:

    is_parallel                 every step required iff the level is required
    not parallel, is_required   every named role independently mandatory
    not parallel, not required  alternates: one approval satisfies the level,
                                the remaining siblings become SKIPPED

Decisions are written with a conditional UPDATE … WHERE status='PENDING';
when two approvers race on the same step exactly one row is updated and the
other caller gets StepAlreadyDecided.

Timeouts are evaluated lazily on every read and action touching a flow, and
in bulk by the approval_timeout_sweep job. An overdue step becomes TIMED_OUT;
the category's escalation policy then escalates it one organization up or
rejects the flow.

Events are collected while the state changes and published after commit.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import (
    ConflictError,
    FlowAlreadyTerminal,
    NotFoundError,
    PermissionDeniedError,
    StepAlreadyDecided,
    StepTimedOut,
    UnresolvedApprover,
    ValidationError,
)
from app.models import db
from app.models.approval import (
    DECISION_ACTIONS,
    FLOW_APPROVED,
    FLOW_CANCELLED,
    FLOW_IN_PROGRESS,
    FLOW_REJECTED,
    STEP_APPROVED,
    STEP_PENDING,
    STEP_REJECTED,
    STEP_SKIPPED,
    STEP_TIMED_OUT,
    TIMEOUT_REASON,
    ApprovalFlow,
    ApprovalMatrix,
    ApprovalStep,
    TimeoutPolicy,
    validate_flow_transition,
    validate_step_transition,
)
from app.models.organization import Organization
from app.services.approval_events import (
    FlowApproved,
    FlowRejected,
    StepPendingApproval,
    publish_all,
)
from app.services.matrix_service import (
    get_timeout_policy,
    resolve_level_organization,
    select_matrix,
)
from app.services.organization_service import require_organization
from app.services.role_inheritance_service import get_role_holders

logger = logging.getLogger(__name__)

LONG_FLOW_WARNING_DAYS = 7


# ── Private helpers ───────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _default_timeout_hours() -> int:
    return int(current_app.config.get("APPROVAL_DEFAULT_TIMEOUT_HOURS", 24))


def _approvers(tenant_id: int, organization_id: int, role_name: str) -> list[int]:
    return get_role_holders(
        tenant_id, organization_id, role_name,
        leadership_only=bool(current_app.config.get("APPROVAL_LEADERSHIP_ONLY", False)),
    )


def _log_extra(flow: ApprovalFlow, step: ApprovalStep | None = None) -> dict:
    extra = {"tenant_id": flow.tenant_id, "flow_id": flow.id,
             "organization_id": flow.requesting_organization_id}
    if step is not None:
        extra["step_id"] = step.id
    return extra


def _require_flow(tenant_id: int, flow_id: int) -> ApprovalFlow:
    flow = db.session.execute(
        select(ApprovalFlow).where(
            ApprovalFlow.id == flow_id,
            ApprovalFlow.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if flow is None:
        raise NotFoundError(resource="ApprovalFlow", resource_id=flow_id, tenant_id=tenant_id)
    return flow


def _require_step(tenant_id: int, step_id: int) -> ApprovalStep:
    step = db.session.execute(
        select(ApprovalStep)
        .join(ApprovalFlow, ApprovalFlow.id == ApprovalStep.flow_id)
        .where(
            ApprovalStep.id == step_id,
            ApprovalFlow.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if step is None:
        raise NotFoundError(resource="ApprovalStep", resource_id=step_id, tenant_id=tenant_id)
    return step


def _set_step_status(step: ApprovalStep, new_status: str, now: datetime) -> None:
    if not validate_step_transition(step.status, new_status):
        raise ValidationError(
            f"Invalid step transition {step.status} → {new_status}",
            details={"step_id": step.id},
        )
    step.status = new_status
    step.decided_at = now


def _set_flow_status(flow: ApprovalFlow, new_status: str, now: datetime) -> None:
    if not validate_flow_transition(flow.status, new_status):
        raise FlowAlreadyTerminal(flow.id, flow.status)
    flow.status = new_status
    flow.completed_at = now


def _live_steps(steps: list[ApprovalStep]) -> list[ApprovalStep]:
    # A TIMED_OUT step is either replaced by its escalation or ended the flow
    return [s for s in steps if s.status != STEP_TIMED_OUT]


def _level_satisfied(steps: list[ApprovalStep]) -> bool:
    live = _live_steps(steps)
    required = [s for s in live if s.is_required]
    if required:
        return all(s.status == STEP_APPROVED for s in required)
    return any(s.status == STEP_APPROVED for s in live)


def _unresolved_levels(flow: ApprovalFlow) -> list[int]:
    return sorted({
        s.level_order for s in flow.steps
        if s.is_unresolved and s.status == STEP_PENDING
    })


def _pending_event(flow: ApprovalFlow, step: ApprovalStep) -> StepPendingApproval:
    return StepPendingApproval(
        tenant_id=flow.tenant_id,
        flow_id=flow.id,
        step_id=step.id,
        level_order=step.level_order,
        role_name=step.required_role_name,
        candidate_approver_ids=tuple(step.candidate_user_ids or []),
    )


def _activate_level(flow: ApprovalFlow, level_order: int, now: datetime, events: list) -> None:
    """Make level_order the current level and start its clocks."""
    flow.current_level_order = level_order
    default_hours = _default_timeout_hours()
    for step in flow.steps_for_level(level_order):
        if step.status != STEP_PENDING:
            continue
        step.activated_at = now
        step.due_at = now + timedelta(hours=step.timeout_hours or default_hours)
        if not step.is_unresolved:
            events.append(_pending_event(flow, step))


def _reject_flow(flow: ApprovalFlow, reason: str, now: datetime, events: list) -> None:
    _set_flow_status(flow, FLOW_REJECTED, now)
    flow.rejection_reason = reason
    for step in flow.steps:
        if step.status == STEP_PENDING:
            _set_step_status(step, STEP_SKIPPED, now)
    events.append(FlowRejected(
        tenant_id=flow.tenant_id,
        flow_id=flow.id,
        transaction_id=flow.transaction_id,
        reason=reason,
        requester_user_id=flow.requester_user_id,
    ))


def _advance(flow: ApprovalFlow, now: datetime, events: list) -> None:
    """Move past the satisfied current level, or approve the flow."""
    later = [o for o in flow.level_orders if o > (flow.current_level_order or 0)]
    if later:
        _activate_level(flow, later[0], now, events)
        return
    _set_flow_status(flow, FLOW_APPROVED, now)
    events.append(FlowApproved(
        tenant_id=flow.tenant_id,
        flow_id=flow.id,
        transaction_id=flow.transaction_id,
        requester_user_id=flow.requester_user_id,
    ))


def _evaluate_level(flow: ApprovalFlow, decided: ApprovalStep, comments: str | None,
                    now: datetime, events: list) -> None:
    level_steps = flow.steps_for_level(decided.level_order)

    if decided.status == STEP_REJECTED:
        if decided.is_required:
            _reject_flow(flow, comments or "Rejected", now, events)
            return
        remaining = [
            s for s in _live_steps(level_steps)
            if s.id != decided.id and not s.is_required
            and s.status in (STEP_PENDING, STEP_APPROVED)
        ]
        if not remaining:
            _reject_flow(flow, comments or "Rejected", now, events)
        return

    if _level_satisfied(level_steps):
        for s in level_steps:
            if s.status == STEP_PENDING:
                _set_step_status(s, STEP_SKIPPED, now)
        _advance(flow, now, events)


def _build_plan(tenant_id: int, matrix: ApprovalMatrix, org: Organization) -> list[dict]:
    """Resolve every matrix level to concrete organizations, roles and candidates."""
    default_hours = _default_timeout_hours()
    plan = []
    for level in matrix.levels:
        target = resolve_level_organization(tenant_id, org, level.organization_level_mode)
        # Parallel: required iff the level is. Sequential: required ⇒ every role
        # mandatory, optional ⇒ the roles are alternates.
        step_required = level.is_required
        steps = []
        for role_name in level.required_roles:
            candidates = _approvers(tenant_id, target.id, role_name)
            steps.append({
                "role_name": role_name,
                "candidate_user_ids": candidates,
                "is_required": step_required,
                "is_unresolved": not candidates,
            })
        plan.append({
            "level_order": level.level_order,
            "organization_id": target.id,
            "organization_name": target.name,
            "organization_level_mode": level.organization_level_mode,
            "is_required": level.is_required,
            "is_parallel": level.is_parallel,
            "timeout_hours": level.timeout_hours or default_hours,
            "steps": steps,
            "is_unresolved": any(s["is_unresolved"] for s in steps),
        })
    return plan


def _flow_status(flow: ApprovalFlow) -> dict:
    d = flow.to_dict()
    d["steps"] = [
        s.to_dict() for s in sorted(flow.steps, key=lambda s: (s.level_order, s.id))
    ]
    d["unresolved_levels"] = _unresolved_levels(flow)
    return d


# ── Instantiation ─────────────────────────────────────────────────────────────


def preview_flow(tenant_id: int, organization_id: int, amount, category: str) -> dict:
    """Resolve the approval route for a prospective request without persisting it.

    Returns:
        {"matrix", "levels", "estimated_days", "warnings", "unresolved_levels"}
    """
    matrix = select_matrix(tenant_id, amount, category, organization_id)
    org = require_organization(tenant_id, organization_id)
    plan = _build_plan(tenant_id, matrix, org)

    total_hours = sum(level["timeout_hours"] for level in plan)
    estimated_days = math.ceil(total_hours / 24)
    unresolved = [level["level_order"] for level in plan if level["is_unresolved"]]

    warnings = []
    if unresolved:
        warnings.append(f"No approver could be resolved for {len(unresolved)} level(s): "
                        f"{', '.join(str(o) for o in unresolved)}")
    if estimated_days > LONG_FLOW_WARNING_DAYS:
        warnings.append(f"Estimated approval time is {estimated_days} days")

    seen: dict[int, int] = {}
    duplicates = set()
    for level in plan:
        level_users = {u for s in level["steps"] for u in s["candidate_user_ids"]}
        for user_id in level_users:
            if user_id in seen and seen[user_id] != level["level_order"]:
                duplicates.add(user_id)
            seen.setdefault(user_id, level["level_order"])
    if duplicates:
        warnings.append("The same approver is assigned to several levels")

    return {
        "matrix": matrix.to_dict(include_levels=False),
        "levels": plan,
        "estimated_days": estimated_days,
        "warnings": warnings,
        "unresolved_levels": unresolved,
        "duplicate_approver_ids": sorted(duplicates),
    }


def create_flow(
    tenant_id: int,
    transaction_id: str,
    organization_id: int,
    amount,
    category: str,
    requester_user_id: int | None = None,
    *,
    now: datetime | None = None,
) -> dict:
    """Instantiate the approval flow for a transaction and activate level 1.

    Returns:
        Flow status dict (flow fields, ordered steps, unresolved_levels).

    Raises:
        ValidationError:    Missing transaction id, bad amount or category.
        ConflictError:      A flow already exists for the transaction.
        NoApplicableMatrix: No matrix covers the request.
    """
    now = now or _utcnow()
    transaction_id = str(transaction_id or "").strip()
    if not transaction_id:
        raise ValidationError("transaction_id is required", details={"transaction_id": "required"})

    existing = db.session.execute(
        select(ApprovalFlow.id).where(
            ApprovalFlow.tenant_id == tenant_id,
            ApprovalFlow.transaction_id == transaction_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError(resource="ApprovalFlow", field="transaction_id", value=transaction_id)

    matrix = select_matrix(tenant_id, amount, category, organization_id)
    org = require_organization(tenant_id, organization_id)
    plan = _build_plan(tenant_id, matrix, org)

    flow = ApprovalFlow(
        tenant_id=tenant_id,
        transaction_id=transaction_id,
        requesting_organization_id=org.id,
        requester_user_id=requester_user_id,
        matrix_id=matrix.id,
        amount=Decimal(str(amount)),
        category=matrix.category,
        status=FLOW_IN_PROGRESS,
        created_at=now,
    )
    for level in plan:
        for s in level["steps"]:
            flow.steps.append(ApprovalStep(
                level_order=level["level_order"],
                resolved_organization_id=level["organization_id"],
                required_role_name=s["role_name"],
                candidate_user_ids=list(s["candidate_user_ids"]),
                status=STEP_PENDING,
                is_required=s["is_required"],
                is_parallel_group=level["is_parallel"],
                is_unresolved=s["is_unresolved"],
                timeout_hours=level["timeout_hours"],
            ))

    events: list = []
    try:
        db.session.add(flow)
        db.session.flush()
        _activate_level(flow, plan[0]["level_order"], now, events)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(resource="ApprovalFlow", field="transaction_id", value=transaction_id)

    logger.info(
        "Approval flow created flow_id=%s tx=%s matrix_id=%s levels=%s unresolved=%s",
        flow.id, transaction_id, matrix.id, len(plan), _unresolved_levels(flow),
        extra=_log_extra(flow),
    )
    publish_all(events)
    return _flow_status(flow)


def reresolve_step(tenant_id: int, step_id: int, *, now: datetime | None = None) -> dict:
    """Recompute a pending step's candidates after role or membership changes."""
    now = now or _utcnow()
    step = _require_step(tenant_id, step_id)
    flow = step.flow
    _apply_timeouts(flow, now)

    if flow.is_terminal:
        raise FlowAlreadyTerminal(flow.id, flow.status)
    if step.status == STEP_TIMED_OUT:
        raise StepTimedOut(step.id)
    if step.status != STEP_PENDING:
        raise StepAlreadyDecided(step.id, step.status)

    was_unresolved = step.is_unresolved
    candidates = _approvers(tenant_id, step.resolved_organization_id, step.required_role_name)
    step.candidate_user_ids = candidates
    step.is_unresolved = not candidates
    db.session.commit()

    logger.info(
        "Step re-resolved step_id=%s candidates=%s", step.id, len(candidates),
        extra=_log_extra(flow, step),
    )
    if was_unresolved and candidates and step.is_active:
        publish_all([_pending_event(flow, step)])
    return step.to_dict()


# ── Decisions ─────────────────────────────────────────────────────────────────


def process_decision(
    tenant_id: int,
    step_id: int,
    approver_user_id: int,
    action: str,
    comments: str | None = None,
    *,
    now: datetime | None = None,
) -> dict:
    """Record an APPROVE/REJECT decision and advance the flow.

    Returns:
        Flow status dict after the decision.

    Raises:
        ValidationError:       Unknown action, or step not in the active level.
        FlowAlreadyTerminal:   Flow already APPROVED/REJECTED/CANCELLED.
        StepTimedOut:          Step passed its deadline.
        StepAlreadyDecided:    Step no longer PENDING (including a lost race).
        UnresolvedApprover:    Step has no candidates.
        PermissionDeniedError: User is not in the step's candidate set.
    """
    now = now or _utcnow()
    new_status = DECISION_ACTIONS.get((action or "").upper())
    if new_status is None:
        raise ValidationError(
            f"Unknown action {action!r}", details={"allowed": sorted(DECISION_ACTIONS)},
        )

    step = _require_step(tenant_id, step_id)
    flow = step.flow
    _apply_timeouts(flow, now)

    if flow.is_terminal:
        raise FlowAlreadyTerminal(flow.id, flow.status, comments)
    if step.status == STEP_TIMED_OUT:
        raise StepTimedOut(step.id, comments)
    if step.status != STEP_PENDING:
        raise StepAlreadyDecided(step.id, step.status, comments)
    if step.level_order != flow.current_level_order or step.activated_at is None:
        raise ValidationError(
            f"Step {step.id} belongs to level {step.level_order}, "
            f"but level {flow.current_level_order} is active",
            details={"step_id": step.id, "current_level_order": flow.current_level_order},
        )
    if step.is_unresolved:
        raise UnresolvedApprover(step.level_order, step.required_role_name,
                                 step.resolved_organization_id)
    if not step.has_candidate(approver_user_id):
        raise PermissionDeniedError(
            f"User {approver_user_id} may not decide step {step.id}"
        )
    result = db.session.execute(
        update(ApprovalStep)
        .where(ApprovalStep.id == step.id, ApprovalStep.status == STEP_PENDING)
        .values(
            status=new_status,
            approver_user_id=approver_user_id,
            decided_at=now,
            comments=comments,
        )
    )
    if result.rowcount == 0:
        db.session.rollback()
        current = db.session.get(ApprovalStep, step_id)
        logger.info(
            "Decision lost race step_id=%s status=%s", step_id, current.status,
            extra=_log_extra(flow, step),
        )
        raise StepAlreadyDecided(step_id, current.status, comments)

    events: list = []
    try:
        _evaluate_level(flow, step, comments, now, events)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Step decided step_id=%s action=%s by user_id=%s flow_status=%s",
        step.id, new_status, approver_user_id, flow.status,
        extra={**_log_extra(flow, step), "user_id": approver_user_id},
    )
    publish_all(events)
    return _flow_status(flow)


def cancel_flow(tenant_id: int, flow_id: int, reason: str | None = None,
                *, now: datetime | None = None) -> dict:
    """Cancel an in-progress flow; pending steps become SKIPPED."""
    now = now or _utcnow()
    flow = _require_flow(tenant_id, flow_id)
    _apply_timeouts(flow, now)
    if flow.status != FLOW_IN_PROGRESS:
        raise FlowAlreadyTerminal(flow.id, flow.status, reason)
    _set_flow_status(flow, FLOW_CANCELLED, now)
    flow.rejection_reason = reason
    for step in flow.steps:
        if step.status == STEP_PENDING:
            _set_step_status(step, STEP_SKIPPED, now)
    db.session.commit()
    logger.info("Approval flow cancelled flow_id=%s", flow.id, extra=_log_extra(flow))
    return _flow_status(flow)


# ── Timeouts ──────────────────────────────────────────────────────────────────


def _escalate(flow: ApprovalFlow, step: ApprovalStep, now: datetime,
              max_escalations: int) -> ApprovalStep | None:
    """Re-issue a timed-out step one organization up, or None when that is impossible."""
    if step.escalation_count >= max_escalations:
        return None
    source = db.session.get(Organization, step.resolved_organization_id)
    if source is None or source.parent_id is None:
        return None
    candidates = _approvers(flow.tenant_id, source.parent_id, step.required_role_name)
    if not candidates:
        return None

    hours = step.timeout_hours or _default_timeout_hours()
    escalated = ApprovalStep(
        level_order=step.level_order,
        resolved_organization_id=source.parent_id,
        required_role_name=step.required_role_name,
        candidate_user_ids=candidates,
        status=STEP_PENDING,
        is_required=step.is_required,
        is_parallel_group=step.is_parallel_group,
        is_unresolved=False,
        timeout_hours=step.timeout_hours,
        activated_at=now,
        due_at=now + timedelta(hours=hours),
        escalation_count=step.escalation_count + 1,
        escalated_from_step_id=step.id,
    )
    flow.steps.append(escalated)
    db.session.flush()
    return escalated


def evaluate_timeouts(flow: ApprovalFlow, now: datetime | None = None) -> tuple[list, dict]:
    """Apply deadline expiry to a flow's active level (no commit).

    Returns:
        (events, {"timed_out": n, "escalated": n, "rejected": n})
    """
    now = now or _utcnow()
    events: list = []
    stats = {"timed_out": 0, "escalated": 0, "rejected": 0}
    if flow.status != FLOW_IN_PROGRESS or flow.current_level_order is None:
        return events, stats

    overdue = [
        s for s in flow.steps_for_level(flow.current_level_order)
        if s.is_active and s.due_at is not None and _aware(s.due_at) <= now
    ]
    if not overdue:
        return events, stats

    policy, max_escalations = get_timeout_policy(flow.tenant_id, flow.category)
    for step in overdue:
        if flow.is_terminal:
            break
        _set_step_status(step, STEP_TIMED_OUT, now)
        stats["timed_out"] += 1

        if policy == TimeoutPolicy.ESCALATE:
            escalated = _escalate(flow, step, now, max_escalations)
            if escalated is not None:
                stats["escalated"] += 1
                events.append(_pending_event(flow, escalated))
                logger.info(
                    "Step escalated step_id=%s → step_id=%s organization_id=%s",
                    step.id, escalated.id, escalated.resolved_organization_id,
                    extra=_log_extra(flow, step),
                )
                continue

        _reject_flow(flow, TIMEOUT_REASON, now, events)
        stats["rejected"] += 1
        logger.info("Flow rejected on timeout flow_id=%s step_id=%s", flow.id, step.id,
                    extra=_log_extra(flow, step))
    return events, stats


def _apply_timeouts(flow: ApprovalFlow, now: datetime | None = None) -> dict:
    events, stats = evaluate_timeouts(flow, now)
    if stats["timed_out"]:
        db.session.commit()
        publish_all(events)
    return stats


def sweep_timeouts(now: datetime | None = None) -> dict:
    """Evaluate timeouts for every in-progress flow with an overdue active step."""
    now = now or _utcnow()
    candidates = db.session.execute(
        select(ApprovalStep)
        .join(ApprovalFlow, ApprovalFlow.id == ApprovalStep.flow_id)
        .where(
            ApprovalFlow.status == FLOW_IN_PROGRESS,
            ApprovalStep.status == STEP_PENDING,
            ApprovalStep.activated_at.is_not(None),
            ApprovalStep.due_at.is_not(None),
        )
    ).scalars().all()
    flow_ids = sorted({s.flow_id for s in candidates if _aware(s.due_at) <= now})

    totals = {"flows_checked": len(flow_ids), "timed_out": 0, "escalated": 0, "rejected": 0}
    for flow_id in flow_ids:
        flow = db.session.get(ApprovalFlow, flow_id)
        stats = _apply_timeouts(flow, now)
        for key, value in stats.items():
            totals[key] += value
    return totals


# ── Queries ───────────────────────────────────────────────────────────────────


def get_flow_status(tenant_id: int, flow_id: int, *, now: datetime | None = None) -> dict:
    flow = _require_flow(tenant_id, flow_id)
    _apply_timeouts(flow, now)
    return _flow_status(flow)


def get_flow_by_transaction(tenant_id: int, transaction_id: str,
                            *, now: datetime | None = None) -> dict:
    flow = db.session.execute(
        select(ApprovalFlow).where(
            ApprovalFlow.tenant_id == tenant_id,
            ApprovalFlow.transaction_id == str(transaction_id),
        )
    ).scalar_one_or_none()
    if flow is None:
        raise NotFoundError(resource="ApprovalFlow", resource_id=transaction_id, tenant_id=tenant_id)
    _apply_timeouts(flow, now)
    return _flow_status(flow)


def get_pending_steps_for_user(user_id: int, tenant_id: int | None = None,
                               *, now: datetime | None = None) -> list[dict]:
    """Active pending steps the user may decide, oldest first."""
    stmt = (
        select(ApprovalStep)
        .join(ApprovalFlow, ApprovalFlow.id == ApprovalStep.flow_id)
        .where(
            ApprovalFlow.status == FLOW_IN_PROGRESS,
            ApprovalStep.status == STEP_PENDING,
            ApprovalStep.activated_at.is_not(None),
        )
        .order_by(ApprovalStep.activated_at, ApprovalStep.id)
    )
    if tenant_id is not None:
        stmt = stmt.where(ApprovalFlow.tenant_id == tenant_id)
    steps = [s for s in db.session.execute(stmt).scalars().all() if s.has_candidate(user_id)]

    for flow in {s.flow for s in steps}:
        _apply_timeouts(flow, now)

    result = []
    for step in steps:
        if not step.is_active or step.flow.status != FLOW_IN_PROGRESS:
            continue
        d = step.to_dict()
        d["flow"] = step.flow.to_dict()
        result.append(d)
    return result


def get_my_requests(tenant_id: int, requester_user_id: int) -> list[dict]:
    flows = db.session.execute(
        select(ApprovalFlow)
        .where(
            ApprovalFlow.tenant_id == tenant_id,
            ApprovalFlow.requester_user_id == requester_user_id,
        )
        .order_by(ApprovalFlow.created_at.desc(), ApprovalFlow.id.desc())
    ).scalars().all()
    return [f.to_dict() for f in flows]


def get_approval_stats(tenant_id: int) -> dict:
    rows = db.session.execute(
        select(ApprovalFlow.status, db.func.count(ApprovalFlow.id))
        .where(ApprovalFlow.tenant_id == tenant_id)
        .group_by(ApprovalFlow.status)
    ).all()
    by_status = {status: 0 for status in (FLOW_IN_PROGRESS, FLOW_APPROVED,
                                          FLOW_REJECTED, FLOW_CANCELLED)}
    by_status.update({status: count for status, count in rows})

    approved = db.session.execute(
        select(ApprovalFlow.created_at, ApprovalFlow.completed_at).where(
            ApprovalFlow.tenant_id == tenant_id,
            ApprovalFlow.status == FLOW_APPROVED,
            ApprovalFlow.completed_at.is_not(None),
        )
    ).all()
    durations = [
        (_aware(done) - _aware(created)).total_seconds() / 3600
        for created, done in approved if created is not None
    ]
    decided = by_status[FLOW_APPROVED] + by_status[FLOW_REJECTED]
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "average_approval_hours": round(sum(durations) / len(durations), 1) if durations else None,
        "approval_rate": round(by_status[FLOW_APPROVED] / decided * 100, 1) if decided else None,
    }
