"""Custom exceptions for the workflow automation engine with detailed error information."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    SCHEDULING = "scheduling"
    TRAVERSAL = "traversal"


class WorkflowAutomationError(Exception):
    """Base exception for all workflow automation errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class WorkflowValidationError(WorkflowAutomationError):
    """Raised when a workflow definition fails structural validation."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class NodeConfigurationError(WorkflowAutomationError):
    """Raised when a node's configuration is missing or invalid.

    This is a caller error, never a transient fault, so it is not retryable.
    """

    def __init__(
        self,
        message: str,
        node_type: Optional[str] = None,
        node_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            recoverable=False,
            **kwargs
        )
        if node_type:
            self.add_context(node_type=node_type)
        if node_id:
            self.add_context(node_id=node_id)


class NodeExecutionError(WorkflowAutomationError):
    """Raised when a node executor fails while talking to the outside world."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        node_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if execution_id:
            self.add_context(execution_id=execution_id)
        if node_type:
            self.add_context(node_type=node_type)


class ExecutionCancelledError(WorkflowAutomationError):
    """Raised inside a traversal when its cancellation token has been set."""

    def __init__(self, message: str = "Execution cancelled", execution_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)


class ExecutionEngineError(WorkflowAutomationError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.TRAVERSAL,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class NotFoundError(WorkflowAutomationError):
    """Raised when a requested entity does not exist."""

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if entity:
            self.add_context(entity=entity)
        if entity_id:
            self.add_context(entity_id=entity_id)


class WorkflowInactiveError(WorkflowAutomationError):
    """Raised when an execution is requested for an inactive workflow."""

    def __init__(self, message: str, workflow_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class InvalidStateTransitionError(WorkflowAutomationError):
    """Raised when an execution status change violates the state machine."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if current_status and requested_status:
            self.add_details(current_status=current_status, requested_status=requested_status)


class StorageError(WorkflowAutomationError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ResourceExhaustionError(WorkflowAutomationError):
    """Raised when the execution pool cannot admit another run."""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        current_usage: Optional[int] = None,
        limit: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.RESOURCE,
            recoverable=True,
            **kwargs
        )
        if resource_type:
            self.add_context(resource_type=resource_type)
        if current_usage is not None and limit is not None:
            self.add_details(current_usage=current_usage, limit=limit)


class SchedulerError(WorkflowAutomationError):
    """Raised when the scheduler cannot register or remove a trigger."""

    def __init__(self, message: str, schedule_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.SCHEDULING,
            **kwargs
        )
        if schedule_id:
            self.add_context(schedule_id=schedule_id)


class InvalidCronExpressionError(SchedulerError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, message: str, cron_expression: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.severity = ErrorSeverity.LOW
        self.category = ErrorCategory.VALIDATION
        if cron_expression is not None:
            self.add_details(cron_expression=cron_expression)


class ConfigurationError(WorkflowAutomationError):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def get_status_code_for_error(error: WorkflowAutomationError) -> int:
    """Map a workflow automation error onto an HTTP status code."""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (WorkflowValidationError, InvalidCronExpressionError, NodeConfigurationError)):
        return 400
    if isinstance(error, (WorkflowInactiveError, InvalidStateTransitionError)):
        return 409
    if isinstance(error, ResourceExhaustionError):
        return 503
    return 500


def create_error_response(error: WorkflowAutomationError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowAutomationError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
