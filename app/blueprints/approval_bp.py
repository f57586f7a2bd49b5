"""Approval matrices, flows and step decisions blueprint.

Routes:
  GET    /approval-matrices                    – list matrices (category?, include_inactive?)
  POST   /approval-matrices                    – create matrix with levels
  GET    /approval-matrices/<mid>              – matrix detail
  POST   /approval-matrices/<mid>/deactivate   – deactivate matrix
  POST   /approval-matrices/seed               – seed the default matrix set
  PUT    /escalation-rules/<category>          – set timeout policy for a category
  POST   /approval-flows/preview               – resolve a route without persisting
  POST   /approval-flows                       – instantiate a flow for a transaction
  GET    /approval-flows                       – flows by requester (requester_user_id=)
  GET    /approval-flows/<fid>                 – flow status with steps
  GET    /approval-flows/by-transaction/<tx>   – flow status by transaction id
  POST   /approval-flows/<fid>/cancel          – cancel an in-progress flow
  POST   /approval-steps/<sid>/decide          – APPROVE / REJECT a step
  POST   /approval-steps/<sid>/reresolve       – recompute candidates of a pending step
  GET    /approval-steps/pending               – active steps a user may decide (user_id=)
  GET    /approval-stats                       – counts, average hours, approval rate
  GET    /notifications                        – a user's notifications (user_id=)
  POST   /notifications/mark-read              – mark all of a user's notifications read
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import app.services.approval_flow_service as flow_svc
import app.services.matrix_service as matrix_svc
from app.services.notification import NotificationService
from app.utils.errors import E, api_error
from app.utils.helpers import parse_bool, parse_int, register_error_handlers, tenant_required

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval", __name__, url_prefix="/api/v1")
register_error_handlers(approval_bp)


def _require_fields(data: dict, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"Missing required fields: {', '.join(missing)}",
                         details={"missing": missing})
    return None


# ═════════════════════════════════════════════════════════════════════════════
# MATRICES
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/approval-matrices", methods=["GET"])
def list_matrices():
    tenant_id, err = tenant_required()
    if err:
        return err
    items = matrix_svc.list_matrices(
        tenant_id,
        category=request.args.get("category"),
        include_inactive=parse_bool(request.args.get("include_inactive")),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@approval_bp.route("/approval-matrices", methods=["POST"])
def create_matrix():
    """Body: {tenant_id, name, category, min_amount?, max_amount?, priority?, levels: [...]}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    err = _require_fields(data, "name", "category")
    if err:
        return err
    return jsonify(matrix_svc.create_matrix(tenant_id, data)), 201


@approval_bp.route("/approval-matrices/<int:mid>", methods=["GET"])
def get_matrix(mid):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(matrix_svc.get_matrix(tenant_id, mid)), 200


@approval_bp.route("/approval-matrices/<int:mid>/deactivate", methods=["POST"])
def deactivate_matrix(mid):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(matrix_svc.deactivate_matrix(tenant_id, mid)), 200


@approval_bp.route("/approval-matrices/seed", methods=["POST"])
def seed_matrices():
    tenant_id, err = tenant_required()
    if err:
        return err
    created = matrix_svc.seed_default_matrices(tenant_id)
    return jsonify({"created": created}), 201 if created else 200


@approval_bp.route("/escalation-rules/<category>", methods=["PUT"])
def set_escalation_rule(category):
    """Body: {tenant_id, on_timeout: escalate|reject, max_escalations?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    err = _require_fields(data, "on_timeout")
    if err:
        return err
    rule = matrix_svc.set_escalation_rule(
        tenant_id, category, data["on_timeout"], data.get("max_escalations"),
    )
    return jsonify(rule), 200


# ═════════════════════════════════════════════════════════════════════════════
# FLOWS
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/approval-flows/preview", methods=["POST"])
def preview_flow():
    """Body: {tenant_id, organization_id, amount, category}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    err = _require_fields(data, "organization_id", "amount", "category")
    if err:
        return err
    preview = flow_svc.preview_flow(
        tenant_id, parse_int(data["organization_id"], "organization_id"),
        data["amount"], data["category"],
    )
    return jsonify(preview), 200


@approval_bp.route("/approval-flows", methods=["POST"])
def create_flow():
    """Body: {tenant_id, transaction_id, organization_id, amount, category, requester_user_id?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    err = _require_fields(data, "transaction_id", "organization_id", "amount", "category")
    if err:
        return err
    flow = flow_svc.create_flow(
        tenant_id,
        data["transaction_id"],
        parse_int(data["organization_id"], "organization_id"),
        data["amount"],
        data["category"],
        requester_user_id=data.get("requester_user_id"),
    )
    return jsonify(flow), 201


@approval_bp.route("/approval-flows", methods=["GET"])
def list_my_requests():
    tenant_id, err = tenant_required()
    if err:
        return err
    requester = request.args.get("requester_user_id", type=int)
    if not requester:
        return api_error(E.VALIDATION_REQUIRED, "requester_user_id is required")
    items = flow_svc.get_my_requests(tenant_id, requester)
    return jsonify({"items": items, "total": len(items)}), 200


@approval_bp.route("/approval-flows/<int:fid>", methods=["GET"])
def get_flow(fid):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(flow_svc.get_flow_status(tenant_id, fid)), 200


@approval_bp.route("/approval-flows/by-transaction/<transaction_id>", methods=["GET"])
def get_flow_by_transaction(transaction_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(flow_svc.get_flow_by_transaction(tenant_id, transaction_id)), 200


@approval_bp.route("/approval-flows/<int:fid>/cancel", methods=["POST"])
def cancel_flow(fid):
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    return jsonify(flow_svc.cancel_flow(tenant_id, fid, data.get("reason"))), 200


# ═════════════════════════════════════════════════════════════════════════════
# STEPS
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/approval-steps/<int:sid>/decide", methods=["POST"])
def decide_step(sid):
    """Approve or reject a step.

    Body: {tenant_id, approver_user_id, action: APPROVE|REJECT, comments?}
    """
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    err = _require_fields(data, "approver_user_id", "action")
    if err:
        return err
    flow = flow_svc.process_decision(
        tenant_id, sid, parse_int(data["approver_user_id"], "approver_user_id"),
        data["action"], data.get("comments"),
    )
    return jsonify(flow), 200


@approval_bp.route("/approval-steps/<int:sid>/reresolve", methods=["POST"])
def reresolve_step(sid):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(flow_svc.reresolve_step(tenant_id, sid)), 200


@approval_bp.route("/approval-steps/pending", methods=["GET"])
def pending_steps():
    """Query params: user_id (required), tenant_id?"""
    user_id = request.args.get("user_id", type=int)
    if not user_id:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    items = flow_svc.get_pending_steps_for_user(
        user_id, tenant_id=request.args.get("tenant_id", type=int),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@approval_bp.route("/approval-stats", methods=["GET"])
def approval_stats():
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(flow_svc.get_approval_stats(tenant_id)), 200


# ═════════════════════════════════════════════════════════════════════════════
# NOTIFICATIONS
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Query params: user_id (required), unread_only?"""
    user_id = request.args.get("user_id", type=int)
    if not user_id:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    items = NotificationService.list_for_user(
        user_id, unread_only=parse_bool(request.args.get("unread_only")),
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "unread_count": NotificationService.unread_count(user_id),
    }), 200


@approval_bp.route("/notifications/mark-read", methods=["POST"])
def mark_notifications_read():
    """Body: {user_id}"""
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    if not user_id:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    marked = NotificationService.mark_all_read(parse_int(user_id, "user_id"))
    return jsonify({"marked": marked}), 200
