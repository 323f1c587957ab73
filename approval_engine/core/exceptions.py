"""
Engine-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and
get consistent HTTP status codes everywhere.  Each exception carries enough
structured context (``to_details()``) for a caller to explain the outcome to
an end user without a second round-trip.

Usage:
    from approval_engine.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WorkflowInstance", resource_id=42)
    raise ValidationError("name is required", details={"name": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model name (e.g. "WorkflowInstance").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)

    def to_details(self) -> dict:
        return {"resource": self.resource, "resource_id": self.resource_id}


class TemplateNotFoundError(NotFoundError):
    """The referenced workflow template does not exist."""

    def __init__(self, template_id: int | str | None) -> None:
        super().__init__(resource="WorkflowTemplate", resource_id=template_id)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_details(self) -> dict:
        return dict(self.details)


class InvalidTemplateError(ValidationError):
    """Stage list is not a contiguous ``1..N`` sequence or a role set is empty."""


class InvalidRangeError(ValidationError):
    """Delegation window has ``start > end``."""


class SelfDelegationError(ValidationError):
    """Delegator and delegate are the same user."""


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")

    def to_details(self) -> dict:
        return {"resource": self.resource, "field": self.field, "value": self.value}


class TemplateInactiveError(Exception):
    """New instances cannot be created against a deactivated template."""

    def __init__(self, template_id: int, request_type: str | None = None) -> None:
        self.template_id = template_id
        self.request_type = request_type
        super().__init__(f"WorkflowTemplate id={template_id} is inactive")

    def to_details(self) -> dict:
        return {"template_id": self.template_id, "request_type": self.request_type}


class WorkflowTerminalError(Exception):
    """A decision or cancellation was attempted on a closed instance."""

    def __init__(self, instance_id: int, status: str, current_stage: int | None = None) -> None:
        self.instance_id = instance_id
        self.status = status
        self.current_stage = current_stage
        super().__init__(f"WorkflowInstance id={instance_id} is already {status}")

    def to_details(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "status": self.status,
            "current_stage": self.current_stage,
        }


class UnauthorizedActionError(Exception):
    """The actor's effective role set does not intersect the stage's roles.

    Args:
        instance_id: Instance the actor tried to decide.
        actor: Acting user.
        current_stage: Stage order awaiting a decision.
        stage_name: Human-readable stage name.
        required_roles: Roles that may decide the stage.
        status: Instance status at the time of the attempt.
    """

    def __init__(
        self,
        instance_id: int,
        actor: str,
        current_stage: int,
        stage_name: str | None,
        required_roles,
        status: str,
    ) -> None:
        self.instance_id = instance_id
        self.actor = actor
        self.current_stage = current_stage
        self.stage_name = stage_name
        self.required_roles = sorted(required_roles or [])
        self.status = status
        super().__init__(
            f"{actor} may not decide stage {current_stage} ({stage_name}) "
            f"of WorkflowInstance id={instance_id}; requires one of {self.required_roles}"
        )

    def to_details(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "actor": self.actor,
            "current_stage": self.current_stage,
            "stage_name": self.stage_name,
            "required_roles": self.required_roles,
            "status": self.status,
        }


class AlreadyDecidedError(Exception):
    """Another actor's decision for this stage was committed first.

    Expected outcome of healthy concurrent use, not a system fault.
    ``decision`` is the winning StageAction as a dict (may be None if the
    winner is not visible yet).
    """

    def __init__(self, instance_id: int, stage_order: int, decision: dict | None = None) -> None:
        self.instance_id = instance_id
        self.stage_order = stage_order
        self.decision = decision
        decided_by = (decision or {}).get("actor")
        msg = f"Stage {stage_order} of WorkflowInstance id={instance_id} was already decided"
        if decided_by:
            msg += f" by {decided_by}"
        super().__init__(msg)

    @property
    def decided_by(self) -> str | None:
        return (self.decision or {}).get("actor")

    def to_details(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "stage_order": self.stage_order,
            "decided_by": self.decided_by,
            "decision": self.decision,
        }


class ForbiddenError(Exception):
    """The acting user may not manage the target record (e.g. another user's delegation)."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_details(self) -> dict:
        return dict(self.details)


class ImmutableRecordError(Exception):
    """An ORM flush tried to rewrite or delete append-only history."""

    def __init__(self, resource: str, operation: str, resource_id: int | None = None) -> None:
        self.resource = resource
        self.operation = operation
        self.resource_id = resource_id
        super().__init__(f"{resource} id={resource_id} is immutable; {operation} is not permitted")
