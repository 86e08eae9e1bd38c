"""Error taxonomy and classifier shared by every engine component.

Raw failures (httpx transport errors, JSON-RPC errors, wallet rejections,
reverts, timeouts) are translated into a SwapError carrying one ErrorKind and
the recovery action the UI should offer.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""

    INVALID_PAIR = "InvalidPair"
    INSUFFICIENT_LIQUIDITY = "InsufficientLiquidity"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    ALLOWANCE_REQUIRED = "AllowanceRequired"
    SLIPPAGE_EXCEEDED = "SlippageExceeded"
    USER_REJECTED = "UserRejected"
    NETWORK_ERROR = "NetworkError"
    GAS_ESTIMATION_FAILED = "GasEstimationFailed"
    INITIALIZATION_FAILED = "InitializationFailed"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class RecoveryAction(str, Enum):
    """What the user can do about a failure."""

    RETRY = "retry"
    APPROVE = "approve"
    ADD_FUNDS = "add_funds"
    ADJUST_SLIPPAGE = "adjust_slippage"
    CHANGE_ROUTE = "change_route"
    CHECK_BALANCE = "check_balance"


RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK_ERROR,
    ErrorKind.TIMEOUT,
    ErrorKind.GAS_ESTIMATION_FAILED,
})

_DEFAULT_ACTIONS = {
    ErrorKind.INVALID_PAIR: RecoveryAction.CHANGE_ROUTE,
    ErrorKind.INSUFFICIENT_LIQUIDITY: RecoveryAction.CHANGE_ROUTE,
    ErrorKind.INSUFFICIENT_BALANCE: RecoveryAction.ADD_FUNDS,
    ErrorKind.ALLOWANCE_REQUIRED: RecoveryAction.APPROVE,
    ErrorKind.SLIPPAGE_EXCEEDED: RecoveryAction.ADJUST_SLIPPAGE,
    ErrorKind.USER_REJECTED: RecoveryAction.RETRY,
    ErrorKind.NETWORK_ERROR: RecoveryAction.RETRY,
    ErrorKind.GAS_ESTIMATION_FAILED: RecoveryAction.CHECK_BALANCE,
    ErrorKind.INITIALIZATION_FAILED: RecoveryAction.RETRY,
    ErrorKind.TIMEOUT: RecoveryAction.RETRY,
    ErrorKind.UNKNOWN: RecoveryAction.RETRY,
}

_DEFAULT_MESSAGES = {
    ErrorKind.INVALID_PAIR: "Trading pair not available",
    ErrorKind.INSUFFICIENT_LIQUIDITY: "Insufficient liquidity for this conversion",
    ErrorKind.INSUFFICIENT_BALANCE: "Insufficient token balance",
    ErrorKind.ALLOWANCE_REQUIRED: "Token approval required",
    ErrorKind.SLIPPAGE_EXCEEDED: "Price moved beyond acceptable range",
    ErrorKind.USER_REJECTED: "Transaction cancelled",
    ErrorKind.NETWORK_ERROR: "Network connection issue",
    ErrorKind.GAS_ESTIMATION_FAILED: "Cannot estimate transaction cost",
    ErrorKind.INITIALIZATION_FAILED: "Failed to initialize swap functionality",
    ErrorKind.TIMEOUT: "Request timed out",
    ErrorKind.UNKNOWN: "Swap failed",
}

_ACTION_LABELS = {
    RecoveryAction.RETRY: "Try Again",
    RecoveryAction.APPROVE: "Approve Tokens",
    RecoveryAction.ADD_FUNDS: "Add Funds",
    RecoveryAction.ADJUST_SLIPPAGE: "Adjust Slippage",
    RecoveryAction.CHANGE_ROUTE: "Change Route",
    RecoveryAction.CHECK_BALANCE: "Check Balance",
}

# EIP-1193 "user rejected request"
USER_REJECTED_CODE = 4001


class SwapError(Exception):
    """A classified engine failure."""

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        details: Optional[str] = None,
        action: Optional[RecoveryAction] = None,
    ):
        self.kind = kind
        self.message = message or _DEFAULT_MESSAGES[kind]
        self.details = details
        self.action = action or _DEFAULT_ACTIONS[kind]
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def recoverable(self) -> bool:
        return self.kind != ErrorKind.INSUFFICIENT_BALANCE

    def to_dict(self) -> dict:
        return {
            "code": self.kind.value,
            "message": self.message,
            "details": self.details,
            "action": self.action.value,
            "recoverable": self.recoverable,
        }

    def __repr__(self) -> str:
        return f"SwapError({self.kind.value}: {self.message})"


class SessionBusyError(SwapError):
    """A swap session is already running for this wallet."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            ErrorKind.UNKNOWN,
            "A swap is already in progress",
            details=f"Session {session_id} has not finished yet",
        )


class QuoteSuperseded(SwapError):
    """A newer quote request replaced this one before it resolved."""

    def __init__(self, key=None):
        self.key = key
        super().__init__(
            ErrorKind.UNKNOWN,
            "Quote request was superseded",
            details=f"Superseded request {key!r}" if key is not None else None,
        )


class RpcError(Exception):
    """JSON-RPC error object returned by a node or wallet."""

    def __init__(self, code: int, message: str, data=None):
        self.code = code
        self.data = data
        super().__init__(f"RPC error {code}: {message}")


class TransactionReverted(Exception):
    """A mined transaction finished with status 0."""

    def __init__(self, tx_hash: str, reason: str = "execution reverted"):
        self.tx_hash = tx_hash
        self.reason = reason
        super().__init__(f"Transaction {tx_hash} failed ({reason})")


def action_label(action: Optional[RecoveryAction]) -> str:
    """Button text for a recovery action."""
    if action is None:
        return "Try Again"
    return _ACTION_LABELS.get(RecoveryAction(action), "Try Again")


def _error_text(error: BaseException) -> str:
    text = str(error) or type(error).__name__
    data = getattr(error, "data", None)
    if isinstance(data, str):
        text = f"{text} {data}"
    return text.lower()


def _kind_from_message(text: str) -> Optional[ErrorKind]:
    if "user rejected" in text or "rejected by user" in text or "denied" in text:
        return ErrorKind.USER_REJECTED
    if "insufficient funds" in text or ("insufficient" in text and "balance" in text):
        return ErrorKind.INSUFFICIENT_BALANCE
    if "allowance" in text or "transferfrom failed" in text:
        return ErrorKind.ALLOWANCE_REQUIRED
    if "slippage" in text or "amountoutmin" in text or "too little received" in text:
        return ErrorKind.SLIPPAGE_EXCEEDED
    if "liquidity" in text or "no valid median" in text or "pair not available" in text:
        return ErrorKind.INSUFFICIENT_LIQUIDITY
    if "unpredictable_gas_limit" in text or "gas required exceeds" in text or "estimategas" in text:
        return ErrorKind.GAS_ESTIMATION_FAILED
    if "timeout" in text or "timed out" in text:
        return ErrorKind.TIMEOUT
    if "network" in text or "connection" in text:
        return ErrorKind.NETWORK_ERROR
    return None


def classify(error: BaseException, default: ErrorKind = ErrorKind.UNKNOWN) -> SwapError:
    """Translate any failure into a SwapError.

    SwapErrors pass through untouched. The original exception is chained as
    ``__cause__`` of the returned error.
    """
    if isinstance(error, SwapError):
        return error

    kind: Optional[ErrorKind] = None
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        kind = ErrorKind.TIMEOUT
    elif isinstance(error, (httpx.TransportError, ConnectionError)):
        kind = ErrorKind.NETWORK_ERROR
    elif isinstance(error, httpx.HTTPStatusError):
        kind = ErrorKind.NETWORK_ERROR
    elif isinstance(error, RpcError) and error.code == USER_REJECTED_CODE:
        kind = ErrorKind.USER_REJECTED

    text = _error_text(error)
    if kind is None:
        kind = _kind_from_message(text) or default

    classified = SwapError(kind, details=str(error) or type(error).__name__)
    classified.__cause__ = error
    logger.debug(f"Classified {type(error).__name__} as {kind.value}: {error}")
    return classified
