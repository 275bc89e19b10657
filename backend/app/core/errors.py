"""Typed failures raised by the change-approval workflow.

The HTTP layer maps each kind to a status code; callers further down the
stack (scripts, tests) catch them directly.
"""


class WorkflowError(Exception):
    """Base class for approval workflow failures."""

    status_code = 400
    kind = "workflow_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFound(WorkflowError):
    """No matching change, or no pending approval row for the approver."""

    status_code = 404
    kind = "not_found"


class AlreadyDecided(WorkflowError):
    """The decision lost a race, or the change already reached an outcome."""

    status_code = 409
    kind = "already_decided"


class InvalidRouting(WorkflowError):
    """Routing for a product/risk level has duplicate or missing levels."""

    status_code = 409
    kind = "invalid_routing"

    def __init__(self, product_id: int, risk_level: str, levels: list) -> None:
        self.product_id = product_id
        self.risk_level = risk_level
        self.levels = levels
        super().__init__(
            f"Approval routing for product={product_id} risk={risk_level} "
            f"must define levels 1..N exactly once, got {levels}"
        )


class OutOfSequence(WorkflowError):
    """A lower approval level is still pending."""

    status_code = 409
    kind = "out_of_sequence"

    def __init__(self, change_id: int, level: int, pending_level: int) -> None:
        self.change_id = change_id
        self.level = level
        self.pending_level = pending_level
        super().__init__(
            f"Change {change_id}: level {level} cannot be decided while level {pending_level} is pending"
        )
