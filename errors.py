"""
domain error taxonomy for the settlement core.

  NotFound      product / user / plan / coupon / withdrawal missing
  InvalidState  validation failure (expired coupon, below minimum, ...)
  Conflict      duplicate payment reference, duplicate coupon code, ...
  Forbidden     acting user may not touch the resource (not the owner)
  Fatal         system misconfiguration (e.g. the seller's plan is gone)

NotFound and InvalidState are ValueErrors so callers that only know about
business-rule ValueErrors keep working.
"""


class SettlementError(Exception):
    code = "error"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.reason = reason


class NotFound(SettlementError, ValueError):
    code = "not_found"


class InvalidState(SettlementError, ValueError):
    code = "invalid_state"


class Conflict(SettlementError):
    code = "conflict"


class Forbidden(SettlementError):
    code = "forbidden"


class Fatal(SettlementError, RuntimeError):
    code = "fatal"
