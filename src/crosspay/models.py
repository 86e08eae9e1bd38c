"""Domain entities owned by the engine components."""

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from crosspay.assets import NATIVE_SYMBOL
from crosspay.errors import SwapError
from crosspay.routing.base import PairHandle


@dataclass
class QuoteFees:
    """Fee breakdown attached to a quote."""

    gas_limit: int
    gas_price: Optional[int] = None
    network_fee: Optional[Decimal] = None  # in fee_asset units
    fee_asset: str = NATIVE_SYMBOL
    estimated: bool = False  # False when the fallback gas limit was used


@dataclass
class Quote:
    """A time-bounded estimate of the output of a conversion."""

    from_asset: str
    to_asset: str
    input_amount: Decimal
    expected_output: Decimal
    minimum_output: Decimal
    price_impact: Decimal  # percent, 0-100
    route: list[str]
    fees: QuoteFees
    slippage_tolerance: Decimal
    amount_in_raw: int
    expected_output_raw: int
    minimum_output_raw: int
    pair: Optional[PairHandle] = None
    routed: bool = True  # False when served by the unrouted fallback
    created_at: float = field(default_factory=time.time)
    ttl_seconds: float = 15.0

    def __post_init__(self):
        if self.minimum_output > self.expected_output:
            raise ValueError("minimum_output must not exceed expected_output")
        if self.minimum_output_raw > self.expected_output_raw:
            raise ValueError("minimum_output_raw must not exceed expected_output_raw")
        if not Decimal(0) <= self.price_impact <= Decimal(100):
            raise ValueError("price_impact must be within [0, 100]")

    @property
    def exchange_rate(self) -> Decimal:
        if self.input_amount == 0:
            return Decimal("0")
        return self.expected_output / self.input_amount

    @property
    def is_expired(self) -> bool:
        return time.time() > (self.created_at + self.ttl_seconds)

    @property
    def seconds_until_expiry(self) -> float:
        return (self.created_at + self.ttl_seconds) - time.time()


@dataclass
class Balance:
    """Cached on-chain balance of one asset."""

    symbol: str
    raw_amount: str  # fixed-point decimal string in asset units
    formatted_amount: str
    fiat_equivalent: Decimal
    last_fetched: float

    @property
    def amount(self) -> Decimal:
        return Decimal(self.raw_amount)


@dataclass
class AllowanceRecord:
    owner: str
    spender: str
    asset: str
    authorized_amount: int
    last_checked: float = field(default_factory=time.time)


class SwapStatus(str, Enum):
    IDLE = "Idle"
    QUOTING = "Quoting"
    APPROVING = "Approving"
    SWAPPING = "Swapping"
    FORWARDING = "Forwarding"
    COMPLETED = "Completed"
    FAILED = "Failed"


TERMINAL_STATUSES = frozenset({SwapStatus.COMPLETED, SwapStatus.FAILED})

_STEP_INDEX = {
    SwapStatus.IDLE: 0,
    SwapStatus.QUOTING: 1,
    SwapStatus.APPROVING: 2,
    SwapStatus.SWAPPING: 3,
    SwapStatus.FORWARDING: 4,
}


@dataclass
class SwapSession:
    """One conversion attempt driven by the swap executor."""

    from_asset: str
    to_asset: str
    amount: Decimal
    slippage_tolerance: Decimal
    owner: str
    recipient: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SwapStatus = SwapStatus.IDLE
    current_step: int = 0
    total_steps: int = 3
    last_error: Optional[SwapError] = None
    failed_status: Optional[SwapStatus] = None
    quote: Optional[Quote] = None
    approval_tx_hash: Optional[str] = None
    swap_tx_hash: Optional[str] = None
    forward_tx_hash: Optional[str] = None
    swap_confirmed: bool = False
    received_raw: Optional[int] = None
    attempts: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.requires_forwarding:
            self.total_steps = 4

    @property
    def requires_forwarding(self) -> bool:
        return bool(self.recipient) and self.recipient.lower() != self.owner.lower()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def advance(self, status: SwapStatus) -> None:
        """Move to a non-terminal step; steps never go backwards."""
        if self.is_terminal:
            raise ValueError(f"Session {self.id} is {self.status.value}")
        step = _STEP_INDEX[status]
        if step < self.current_step:
            raise ValueError(
                f"Cannot move session {self.id} back from step {self.current_step} to {step}"
            )
        self.status = status
        self.current_step = step
        self.updated_at = time.time()

    def complete(self) -> None:
        self.status = SwapStatus.COMPLETED
        self.updated_at = time.time()

    def fail(self, error: SwapError) -> None:
        self.failed_status = self.status if not self.is_terminal else self.failed_status
        self.status = SwapStatus.FAILED
        self.last_error = error
        self.updated_at = time.time()

    def reopen(self) -> SwapStatus:
        """Leave Failed and return the step to resume from."""
        if self.status != SwapStatus.FAILED:
            raise ValueError(f"Only failed sessions can be resumed (status {self.status.value})")
        resume_at = self.failed_status or SwapStatus.QUOTING
        if resume_at == SwapStatus.IDLE:
            resume_at = SwapStatus.QUOTING
        self.status = resume_at
        self.last_error = None
        self.updated_at = time.time()
        return resume_at

    def raise_for_error(self) -> None:
        if self.status == SwapStatus.FAILED and self.last_error is not None:
            raise self.last_error

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_asset": self.from_asset,
            "to_asset": self.to_asset,
            "amount": str(self.amount),
            "slippage_tolerance": str(self.slippage_tolerance),
            "recipient": self.recipient,
            "status": self.status.value,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "approval_tx_hash": self.approval_tx_hash,
            "swap_tx_hash": self.swap_tx_hash,
            "forward_tx_hash": self.forward_tx_hash,
            "error": self.last_error.to_dict() if self.last_error else None,
        }


class RateProvenance(str, Enum):
    LIVE = "live"
    CACHED = "cached"
    FALLBACK_DEFAULT = "fallback-default"


@dataclass
class ExchangeRateTable:
    """Pair key ``FROM_TO`` -> rate."""

    rates: dict[str, Decimal]
    last_updated: float
    provenance: RateProvenance

    def get(self, from_unit: str, to_unit: str) -> Optional[Decimal]:
        rate = self.rates.get(f"{from_unit}_{to_unit}")
        if rate is None or rate <= 0:
            return None
        return rate

    @property
    def age(self) -> float:
        return time.time() - self.last_updated

    def to_dict(self) -> dict:
        return {
            "rates": {k: str(v) for k, v in self.rates.items()},
            "last_updated": self.last_updated,
        }
