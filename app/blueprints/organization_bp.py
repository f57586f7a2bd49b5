"""Organization tree blueprint.

Endpoint groups:
  Tree & lookup     GET  /api/v1/organizations
                    GET  /api/v1/organizations/tree
                    GET  /api/v1/organizations/<id>
                    GET  /api/v1/organizations/validate
  Creation          POST /api/v1/organizations
  Reorganization    POST /api/v1/organizations/<id>/move
                    POST /api/v1/organizations/<id>/promote
                    POST /api/v1/organizations/<id>/deactivate

tenant_id is resolved from query param or JSON body.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import app.services.organization_service as org_svc
from app.utils.errors import E, api_error
from app.utils.helpers import parse_bool, register_error_handlers, tenant_required

logger = logging.getLogger(__name__)

organization_bp = Blueprint("organization", __name__, url_prefix="/api/v1")
register_error_handlers(organization_bp)


# ═════════════════════════════════════════════════════════════════════════
# Tree & lookup
# ═════════════════════════════════════════════════════════════════════════


@organization_bp.route("/organizations", methods=["GET"])
def list_organizations():
    """List organizations.

    Query params: tenant_id (required), level?, parent_id?, include_inactive?
    """
    tenant_id, err = tenant_required()
    if err:
        return err
    items = org_svc.list_organizations(
        tenant_id,
        level=request.args.get("level", type=int),
        parent_id=request.args.get("parent_id", type=int),
        include_inactive=parse_bool(request.args.get("include_inactive")),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@organization_bp.route("/organizations/tree", methods=["GET"])
def get_tree():
    tenant_id, err = tenant_required()
    if err:
        return err
    tree = org_svc.get_tree(
        tenant_id, include_inactive=parse_bool(request.args.get("include_inactive")),
    )
    return jsonify({"tree": tree}), 200


@organization_bp.route("/organizations/validate", methods=["GET"])
def validate_tree():
    """Report structural invariant violations; empty list when healthy."""
    tenant_id, err = tenant_required()
    if err:
        return err
    violations = org_svc.validate_tree(tenant_id)
    return jsonify({"valid": not violations, "violations": violations}), 200


@organization_bp.route("/organizations/<int:org_id>", methods=["GET"])
def get_organization(org_id):
    """Return one organization with its ancestor path and children."""
    tenant_id, err = tenant_required()
    if err:
        return err
    org = org_svc.get_organization(tenant_id, org_id)
    org["ancestors"] = [a.to_dict() for a in org_svc.get_ancestors(tenant_id, org_id)]
    org["children"] = [c.to_dict() for c in org_svc.get_children(tenant_id, org_id)]
    return jsonify(org), 200


# ═════════════════════════════════════════════════════════════════════════
# Creation & reorganization
# ═════════════════════════════════════════════════════════════════════════


@organization_bp.route("/organizations", methods=["POST"])
def create_organization():
    """Create an organization.

    Body: {tenant_id, code, name, parent_id?, level?, sort_order?}
    """
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("code") or not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "code and name are required")
    return jsonify(org_svc.create_organization(tenant_id, data)), 201


@organization_bp.route("/organizations/<int:org_id>/move", methods=["POST"])
def move_subtree(org_id):
    """Reparent a subtree.

    Body: {tenant_id, new_parent_id (null for root), new_level}
    """
    tenant_id, err = tenant_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if "new_level" not in data:
        return api_error(E.VALIDATION_REQUIRED, "new_level is required")
    result = org_svc.move_subtree(tenant_id, org_id, data.get("new_parent_id"), data["new_level"])
    return jsonify(result), 200


@organization_bp.route("/organizations/<int:org_id>/promote", methods=["POST"])
def promote_to_root(org_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(org_svc.promote_to_root(tenant_id, org_id)), 200


@organization_bp.route("/organizations/<int:org_id>/deactivate", methods=["POST"])
def deactivate_organization(org_id):
    tenant_id, err = tenant_required()
    if err:
        return err
    return jsonify(org_svc.deactivate_organization(tenant_id, org_id)), 200
