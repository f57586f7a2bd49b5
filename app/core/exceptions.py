"""
Engine-wide exception hierarchy.

Services raise these types only; blueprints register handlers against them
once and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Organization", resource_id=42)
    raise ValidationError("amount must be positive", details={"amount": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant lookups, so a
    caller cannot discover another tenant's ids.

    Args:
        resource: Human-readable model/entity name (e.g. "Organization", "ApprovalFlow").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class StructuralViolation(ValidationError):
    """An organization tree mutation would break the level/parent invariants.

    Raised before anything is written; the tree is left unchanged.
    """


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value (truncated in HTTP response; full in logs).
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class PermissionDeniedError(Exception):
    """The acting user is not allowed to perform the operation (HTTP 403)."""

    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__(message)


class NoApplicableMatrix(Exception):
    """No active approval matrix covers (category, amount, organization)."""

    def __init__(self, amount, category: str, organization_id: int | None = None) -> None:
        self.amount = amount
        self.category = category
        self.organization_id = organization_id
        super().__init__(
            f"No approval matrix applies to category={category} amount={amount}"
            f" organization={organization_id}"
        )


class UnresolvedApprover(Exception):
    """A step has no concrete user holding its role; the flow is stalled there."""

    def __init__(self, level_order: int, role_name: str, organization_id: int) -> None:
        self.level_order = level_order
        self.role_name = role_name
        self.organization_id = organization_id
        super().__init__(
            f"No holder of role {role_name!r} at organization {organization_id}"
            f" (level {level_order})"
        )


class StepAlreadyDecided(Exception):
    """A decision arrived for a step that is no longer PENDING.

    Carries the caller's comments so the rejected input can be echoed back.
    """

    def __init__(self, step_id: int, current_status: str, comments: str | None = None) -> None:
        self.step_id = step_id
        self.current_status = current_status
        self.comments = comments
        super().__init__(f"Step {step_id} already decided ({current_status})")


class FlowAlreadyTerminal(Exception):
    """An action targeted a flow that is APPROVED, REJECTED or CANCELLED."""

    def __init__(self, flow_id: int, current_status: str, comments: str | None = None) -> None:
        self.flow_id = flow_id
        self.current_status = current_status
        self.comments = comments
        super().__init__(f"Flow {flow_id} is already {current_status}")


class StepTimedOut(StepAlreadyDecided):
    """A decision arrived after the step's deadline had passed."""

    def __init__(self, step_id: int, comments: str | None = None) -> None:
        super().__init__(step_id, "TIMED_OUT", comments)
