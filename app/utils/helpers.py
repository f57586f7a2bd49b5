"""Shared blueprint helpers.

tenant_required:          tenant_id from query string or JSON body (tuple-return pattern)
parse_bool:               lenient boolean parsing for query params and JSON flags
parse_int:                integer ids from JSON bodies, ValidationError (422) when malformed
register_error_handlers:  one mapping from core exceptions to API error bodies
"""
import logging

from flask import request

from app.core.exceptions import (
    ConflictError,
    FlowAlreadyTerminal,
    NoApplicableMatrix,
    NotFoundError,
    PermissionDeniedError,
    StepAlreadyDecided,
    StepTimedOut,
    StructuralViolation,
    UnresolvedApprover,
    ValidationError,
)
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def tenant_id_from_request():
    """Extract tenant_id from query string or JSON body."""
    tid = request.args.get("tenant_id", type=int)
    if tid:
        return tid
    data = request.get_json(silent=True) or {}
    try:
        return int(data["tenant_id"]) if data.get("tenant_id") else None
    except (TypeError, ValueError):
        return None


def tenant_required():
    """Return (tenant_id, None) or (None, error_response).

        tenant_id, err = tenant_required()
        if err:
            return err
    """
    tid = tenant_id_from_request()
    if not tid:
        return None, api_error(E.VALIDATION_REQUIRED, "tenant_id is required")
    return tid, None


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_int(value, field):
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: value})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: value})


def register_error_handlers(bp):
    """Attach the core-exception → HTTP mapping to a blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(StructuralViolation)
    def _handle_structure(error):
        return api_error(E.ORG_STRUCTURE, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error):
        return api_error(E.CONFLICT_DUPLICATE, str(error),
                         details={"field": error.field, "value": error.value})

    @bp.errorhandler(PermissionDeniedError)
    def _handle_forbidden(error):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(NoApplicableMatrix)
    def _handle_no_matrix(error):
        return api_error(E.NO_MATRIX, str(error), details={
            "category": error.category,
            "amount": str(error.amount),
            "organization_id": error.organization_id,
        })

    @bp.errorhandler(UnresolvedApprover)
    def _handle_unresolved(error):
        return api_error(E.UNRESOLVED, str(error), details={
            "level_order": error.level_order,
            "role_name": error.role_name,
            "organization_id": error.organization_id,
        })

    @bp.errorhandler(StepTimedOut)
    def _handle_timed_out(error):
        return api_error(E.STEP_TIMED_OUT, str(error), details={
            "step_id": error.step_id,
            "current_status": error.current_status,
            "comments": error.comments,
        })

    @bp.errorhandler(StepAlreadyDecided)
    def _handle_decided(error):
        return api_error(E.STEP_DECIDED, str(error), details={
            "step_id": error.step_id,
            "current_status": error.current_status,
            "comments": error.comments,
        })

    @bp.errorhandler(FlowAlreadyTerminal)
    def _handle_terminal(error):
        return api_error(E.FLOW_TERMINAL, str(error), details={
            "flow_id": error.flow_id,
            "current_status": error.current_status,
            "comments": error.comments,
        })

    @bp.errorhandler(Exception)
    def _handle_unexpected(error):
        from werkzeug.exceptions import HTTPException
        if isinstance(error, HTTPException):
            return {"error": error.description}, error.code
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
