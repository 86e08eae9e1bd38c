"""Stable-token conversion engine for paying in the asset a seller requires."""

from crosspay.engine import Engine
from crosspay.errors import ErrorKind, RecoveryAction, SessionBusyError, SwapError
from crosspay.models import Balance, Quote, SwapSession, SwapStatus

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "ErrorKind",
    "RecoveryAction",
    "SessionBusyError",
    "SwapError",
    "Balance",
    "Quote",
    "SwapSession",
    "SwapStatus",
]
