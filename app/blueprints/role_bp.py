"""Role catalogue, assignment and membership blueprint.

Endpoint groups:
  Role catalogue    GET/POST /api/v1/roles
  Assignments       GET    /api/v1/organizations/<id>/roles
                    POST   /api/v1/organizations/<id>/roles
                    DELETE /api/v1/organizations/<id>/roles/<role_id>
                    POST   /api/v1/organizations/<id>/roles/bulk
                    POST   /api/v1/organizations/<id>/roles/inherit
                    GET    /api/v1/organizations/<id>/roles/stats
  Holders           GET    /api/v1/organizations/<id>/roles/holders?role_name=
  Memberships       POST   /api/v1/organizations/<id>/members
                    DELETE /api/v1/organizations/<id>/members

tenant_id is resolved from query param or JSON body.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import app.services.role_inheritance_service as role_svc
from app.utils.errors import E, api_error
from app.utils.helpers import parse_bool, parse_int, register_error_handlers, tenant_required

logger = logging.getLogger(__name__)

role_bp = Blueprint("role", __name__, url_prefix="/api/v1")
register_error_handlers(role_bp)


# ═════════════════════════════════════════════════════════════════════════
# Role catalogue
# ═════════════════════════════════════════════════════════════════════════


@role_bp.route("/roles", methods=["GET"])
def list_roles():
    tenant_id, err = tenant_required()
    if err:
        return err
    items = role_svc.list_roles(tenant_id)
    return jsonify({"items": items, "total": len(items)}), 200


@role_bp.route("/roles", methods=["POST"])
def create_role():
    """Body: {tenant_id, name, rank?, is_leadership?, description?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    return jsonify(role_svc.create_role(tenant_id, data)), 201


# ═════════════════════════════════════════════════════════════════════════
# Assignments
# ═════════════════════════════════════════════════════════════════════════


@role_bp.route("/organizations/<int:org_id>/roles", methods=["GET"])
def get_available_roles(org_id):
    """Effective roles with provenance, most senior first."""
    tenant_id, err = tenant_required()
    if err:
        return err
    items = role_svc.get_available_roles(tenant_id, org_id)
    return jsonify({"items": items, "total": len(items)}), 200


@role_bp.route("/organizations/<int:org_id>/roles", methods=["POST"])
def assign_role(org_id):
    """Body: {tenant_id, role_id, cascade? (default true)}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    role_id = data.get("role_id")
    if not role_id:
        return api_error(E.VALIDATION_REQUIRED, "role_id is required")
    result = role_svc.assign_role(
        tenant_id, org_id, parse_int(role_id, "role_id"),
        cascade=parse_bool(data.get("cascade"), default=True),
    )
    return jsonify(result), 201


@role_bp.route("/organizations/<int:org_id>/roles/<int:role_id>", methods=["DELETE"])
def unassign_role(org_id, role_id):
    """Query params: tenant_id, remove_inherited? (default true)"""
    tenant_id, err = tenant_required()
    if err:
        return err
    result = role_svc.unassign_role(
        tenant_id, org_id, role_id,
        remove_inherited=parse_bool(request.args.get("remove_inherited"), default=True),
    )
    return jsonify(result), 200


@role_bp.route("/organizations/<int:org_id>/roles/bulk", methods=["POST"])
def bulk_assign(org_id):
    """Body: {tenant_id, role_ids: [...], replace_existing?, cascade?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    role_ids = data.get("role_ids")
    if not isinstance(role_ids, list) or not role_ids:
        return api_error(E.VALIDATION_REQUIRED, "role_ids must be a non-empty list")
    result = role_svc.bulk_assign(
        tenant_id, org_id, role_ids,
        replace_existing=parse_bool(data.get("replace_existing")),
        cascade=parse_bool(data.get("cascade"), default=True),
    )
    return jsonify(result), 200


@role_bp.route("/organizations/<int:org_id>/roles/inherit", methods=["POST"])
def inherit_roles(org_id):
    """Copy roles from an ancestor. Body: {tenant_id, from_org_id, role_ids?}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("from_org_id"):
        return api_error(E.VALIDATION_REQUIRED, "from_org_id is required")
    result = role_svc.inherit_roles(tenant_id, parse_int(data["from_org_id"], "from_org_id"),
                                    org_id, data.get("role_ids"))
    return jsonify(result), 200


@role_bp.route("/organizations/<int:org_id>/roles/stats", methods=["GET"])
def assignment_stats(org_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(role_svc.get_assignment_stats(tenant_id, org_id)), 200


@role_bp.route("/organizations/<int:org_id>/roles/holders", methods=["GET"])
def role_holders(org_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    role_name = (request.args.get("role_name") or "").strip()
    if not role_name:
        return api_error(E.VALIDATION_REQUIRED, "role_name is required")
    return jsonify({"user_ids": role_svc.get_role_holders(tenant_id, org_id, role_name)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Memberships
# ═════════════════════════════════════════════════════════════════════════


def _membership_args():
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id") or request.args.get("user_id", type=int)
    role_id = data.get("role_id") or request.args.get("role_id", type=int)
    if not user_id or not role_id:
        return None, None, api_error(E.VALIDATION_REQUIRED, "user_id and role_id are required")
    return parse_int(user_id, "user_id"), parse_int(role_id, "role_id"), None


@role_bp.route("/organizations/<int:org_id>/members", methods=["POST"])
def add_member(org_id):
    """Body: {tenant_id, user_id, role_id}"""
    tenant_id, err = tenant_required()
    if err:
        return err
    user_id, role_id, err = _membership_args()
    if err:
        return err
    return jsonify(role_svc.add_membership(tenant_id, org_id, user_id, role_id)), 201


@role_bp.route("/organizations/<int:org_id>/members", methods=["DELETE"])
def remove_member(org_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    user_id, role_id, err = _membership_args()
    if err:
        return err
    return jsonify(role_svc.remove_membership(tenant_id, org_id, user_id, role_id)), 200
