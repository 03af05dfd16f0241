# src/core/exceptions.py
"""
Core exceptions for the triage assistant.

All custom exceptions derive from TriageError so route handlers and the
orchestrator can tell our own failures apart from unexpected ones.
"""

from typing import Optional, Dict, Any


class TriageError(Exception):
    """Base exception for all triage assistant errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class FlowError(TriageError):
    """Errors in state machine transitions"""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize flow error.

        Args:
            message: Error description
            current_state: State where error occurred
            details: Additional error context
        """
        super().__init__(message, details)
        self.current_state = current_state

        if current_state:
            self.details['current_state'] = current_state

    def __str__(self) -> str:
        base_msg = super().__str__()
        if self.current_state:
            return f"{base_msg} [State: {self.current_state}]"
        return base_msg


class ValidationError(TriageError):
    """Errors in caller input"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize validation error.

        Args:
            message: Error description
            field: Field that failed validation
            value: Invalid value
            details: Additional validation context
        """
        super().__init__(message, details)
        self.field = field
        self.value = value

        if field:
            self.details['field'] = field
        if value is not None:
            self.details['value'] = str(value)


class ServiceError(TriageError):
    """Errors in external service interactions"""

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize service error.

        Args:
            message: Error description
            service_name: Name of the failing service
            operation: Operation that failed
            details: Additional service context
        """
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details['service'] = service_name
        if operation:
            self.details['operation'] = operation


class TransportError(ServiceError):
    """
    Non-success answer from the language-model provider.

    ``status`` is the HTTP status code, or None when the request never got
    an answer (connection refused, timeout). ``body`` holds the provider's
    raw error payload, truncated.
    """

    RATE_LIMIT_STATUS = 429

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: str = "",
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name="LLM", operation=operation, details=details)
        self.status = status
        self.body = body

        if status is not None:
            self.details['status'] = status

    @property
    def is_rate_limited(self) -> bool:
        """True if the provider refused the call because of its rate limit"""
        return self.status == self.RATE_LIMIT_STATUS


class EmptyResponseError(TransportError):
    """Provider answered with a well-formed envelope but no text payload"""

    def __init__(
        self,
        message: str = "No text in provider response",
        finish_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, status=200, operation="call_provider", details=details)
        self.finish_reason = finish_reason

        if finish_reason:
            self.details['finish_reason'] = finish_reason


class ConfigurationError(TriageError):
    """Errors in system configuration and initialization"""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize configuration error.

        Args:
            message: Error description
            component: Component or setting with configuration issue
            details: Additional configuration context
        """
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


class PromptError(TriageError):
    """Errors in prompt management and template processing"""

    def __init__(
        self,
        message: str,
        prompt_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.prompt_type = prompt_type

        if prompt_type:
            self.details['prompt_type'] = prompt_type


class SessionError(TriageError):
    """Errors in session lookup and handling"""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.session_id = session_id

        if session_id:
            self.details['session_id'] = session_id
