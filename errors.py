# errors.py
from typing import Any, Dict, Optional


class AppError(Exception):
  code = "INTERNAL_ERROR"
  status_code = 500

  def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
    super().__init__(message)
    self.message = message
    self.details = details

  def to_body(self) -> Dict[str, Any]:
    err: Dict[str, Any] = {"code": self.code, "message": self.message}
    if self.details:
      err["details"] = self.details
    return {"error": err}


class ValidationError(AppError):
  code = "VALIDATION_ERROR"
  status_code = 400


class UnauthorizedError(AppError):
  code = "UNAUTHORIZED"
  status_code = 401

  def __init__(self, message: str = "Unauthorized"):
    super().__init__(message)


class ForbiddenError(AppError):
  code = "FORBIDDEN"
  status_code = 403

  def __init__(self, message: str = "Access denied"):
    super().__init__(message)


class NotFoundError(AppError):
  code = "NOT_FOUND"
  status_code = 404

  def __init__(self, resource: str):
    super().__init__(f"{resource} not found")


class InvalidTransitionError(AppError):
  code = "INVALID_TRANSITION"
  status_code = 409


# --- gateway ---

class GatewayError(AppError):
  """Base for everything the M-Pesa client can fail with."""
  code = "MPESA_ERROR"
  status_code = 502


class GatewayAuthError(GatewayError):
  code = "MPESA_AUTH_ERROR"


class GatewayUnavailableError(GatewayError):
  code = "MPESA_UNAVAILABLE"


class GatewayRejectedError(GatewayError):
  code = "MPESA_ERROR"
  status_code = 400


# --- membership preconditions ---

class NoActiveMembershipError(AppError):
  code = "NO_MEMBERSHIP"
  status_code = 400

  def __init__(self, message: str = "No active membership found"):
    super().__init__(message)


class PlanAlreadyQueuedError(AppError):
  code = "PLAN_QUEUED"
  status_code = 400


class AlreadyPaidError(AppError):
  code = "ALREADY_PAID"
  status_code = 400

  def __init__(self, message: str = "Cannot cancel - plan already paid. Contact admin for refund."):
    super().__init__(message)


class CallbackMalformedError(AppError):
  # never leaves callback_handler
  code = "INVALID_CALLBACK"
  status_code = 400
