"""
Workflow error taxonomy and structured action results

Core operations raise WorkflowError subclasses. User-facing actions convert
them to ActionResult so callers always get an is_error flag plus a message.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base class for every error the order/payment/provisioning workflow raises"""

    code = 'workflow_error'
    http_status = 500
    default_message = 'An unexpected error occurred. Please try again later.'

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.user_message = message or self.default_message
        self.details = details or {}
        super().__init__(self.user_message)


class InvalidRequest(WorkflowError):
    code = 'invalid_request'
    http_status = 400
    default_message = 'The request is missing required information.'

    def __init__(self, message: Optional[str] = None, fields: Optional[Dict[str, str]] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.fields = fields or {}


class InvalidLabel(InvalidRequest):
    code = 'invalid_label'
    default_message = ('Subdomain can only contain lowercase letters, numbers, and hyphens, '
                       'and cannot start or end with a hyphen.')


class LimitExceeded(WorkflowError):
    code = 'limit_exceeded'
    http_status = 409
    default_message = ('You have reached the limit for free services. '
                       'You can only have one free service at a time.')


class AlreadyTaken(WorkflowError):
    code = 'already_taken'
    http_status = 409
    default_message = 'That name is already taken. Please choose another one.'


class NotFound(WorkflowError):
    code = 'not_found'
    http_status = 404
    default_message = 'The requested record was not found.'


class NotConfigured(WorkflowError):
    code = 'not_configured'
    http_status = 503
    default_message = 'This feature is not configured by the administrator.'


class NotEligible(WorkflowError):
    code = 'not_eligible'
    http_status = 403
    default_message = 'This service is not eligible for that action.'


class ProvisioningFailed(WorkflowError):
    code = 'provisioning_failed'
    http_status = 502
    default_message = 'The hosting provider could not complete the request.'


class GatewayError(ProvisioningFailed):
    """External payment gateway refused or failed the request"""
    code = 'gateway_error'
    default_message = 'The payment gateway could not create a checkout session.'


class DependencyTimeout(WorkflowError):
    code = 'dependency_timeout'
    http_status = 504
    default_message = 'An external service did not respond in time. Please try again.'


class StoreUnavailable(WorkflowError):
    code = 'store_unavailable'
    http_status = 503
    default_message = 'The data store is temporarily unavailable.'


class SignatureInvalid(WorkflowError):
    code = 'signature_invalid'
    http_status = 400
    default_message = 'Invalid signature.'


@dataclass
class ActionResult:
    """Structured result returned by every user-facing action"""
    is_error: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    fields: Dict[str, str] = field(default_factory=dict)
    code: Optional[str] = None

    @classmethod
    def ok(cls, message: str, **data) -> 'ActionResult':
        return cls(is_error=False, message=message, data=data)

    @classmethod
    def from_error(cls, error: WorkflowError) -> 'ActionResult':
        return cls(
            is_error=True,
            message=error.user_message,
            fields=getattr(error, 'fields', {}) or {},
            code=error.code,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'isError': self.is_error, 'message': self.message}
        if self.code:
            result['code'] = self.code
        if self.fields:
            result['fields'] = self.fields
        if self.data:
            result.update(self.data)
        return result


def _all_error_classes(cls=WorkflowError):
    yield cls
    for subclass in cls.__subclasses__():
        yield from _all_error_classes(subclass)


def http_status_for(code: Optional[str]) -> int:
    """HTTP status for an error code carried by an ActionResult"""
    for error_class in _all_error_classes():
        if error_class.code == code:
            return error_class.http_status
    return WorkflowError.http_status


def error_to_result(error: Exception, action: str) -> ActionResult:
    """Log a failed action server-side and build the user-facing result"""
    if isinstance(error, WorkflowError):
        if error.http_status >= 500:
            logger.error(f"❌ {action} failed ({error.code}): {error} | details={error.details}")
        else:
            logger.info(f"🚫 {action} rejected ({error.code}): {error.user_message}")
        return ActionResult.from_error(error)

    logger.error(f"❌ {action} failed with unexpected error: {error}", exc_info=True)
    return ActionResult(is_error=True, message=WorkflowError.default_message, code=WorkflowError.code)
