from signaltrader.policy.approval import (
    ApprovalBindingError,
    ApprovalError,
    ApprovalExpiredError,
    ApprovalIntegrityError,
    ApprovalInvalidatedError,
    ApprovalProtocol,
    ApprovalReplayError,
    IssuedApproval,
    ValidatedApproval,
)
from signaltrader.policy.contracts import OrderPreview, PolicyResult, PolicyViolation, TradingHaltedError
from signaltrader.policy.engine import PolicyEngine

__all__ = [
    "ApprovalBindingError",
    "ApprovalError",
    "ApprovalExpiredError",
    "ApprovalIntegrityError",
    "ApprovalInvalidatedError",
    "ApprovalProtocol",
    "ApprovalReplayError",
    "IssuedApproval",
    "OrderPreview",
    "PolicyEngine",
    "PolicyResult",
    "PolicyViolation",
    "TradingHaltedError",
    "ValidatedApproval",
]
