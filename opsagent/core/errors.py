from datetime import datetime

# ---------------------------------
# TYPED EXCEPTIONS
# ---------------------------------


class ConfigurationError(RuntimeError):
    """Raised at load/ordering time when static configuration is invalid."""


class DuplicateToolError(ConfigurationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool {name} is already registered")


class WorkflowCycleError(ConfigurationError):
    def __init__(self, step_id: str, workflow_id: str | None = None):
        self.step_id = step_id
        self.workflow_id = workflow_id
        where = f" in workflow '{workflow_id}'" if workflow_id else ""
        super().__init__(f"Circular dependency detected{where}: {step_id}")


class LLMClientError(RuntimeError):
    """Raised by model adapters on transport or payload failures."""


class LLMParseError(Exception):
    pass


class ApprovalError(RuntimeError):
    """Base class for approval-state errors."""

    def __init__(self, approval_id: str, message: str):
        self.approval_id = approval_id
        super().__init__(message)


class ApprovalNotFoundError(ApprovalError):
    def __init__(self, approval_id: str):
        super().__init__(approval_id, ApprovalMessages.NOT_FOUND)


class ApprovalExpiredError(ApprovalError):
    def __init__(self, approval_id: str):
        super().__init__(approval_id, ApprovalMessages.EXPIRED)


class ApprovalAlreadyDecidedError(ApprovalError):
    def __init__(self, approval_id: str):
        super().__init__(approval_id, ApprovalMessages.ALREADY_DECIDED)


class ApprovalMessages:
    """User-visible approval outcomes. Each state keeps its own wording."""

    NOT_FOUND = "Approval not found"
    EXPIRED = "Approval has expired"
    ALREADY_DECIDED = "Approval request has already been processed"
    REJECTED = "Action was rejected by user"
    PENDING = "Approval is still pending"
    ALREADY_EXECUTED = "Approval has already been executed"
    MISMATCH = "Approval does not cover this action"


class RateLimitExceededError(RuntimeError):
    def __init__(self, reset_at: datetime):
        self.reset_at = reset_at
        super().__init__(f"Rate limit exceeded. Resets at {reset_at.isoformat()}")
