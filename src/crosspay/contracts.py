"""Request and response contracts of the engine's upward interface."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from web3 import Web3

from crosspay.models import Quote


class QuoteRequest(BaseModel):
    """Request for a conversion quote."""

    from_asset: str = Field(..., description="Source asset symbol (e.g., cUSD, CELO)")
    to_asset: str = Field(..., description="Destination asset symbol")
    amount: Decimal = Field(..., gt=0, description="Amount of the source asset")
    slippage: Optional[Decimal] = Field(
        default=None,
        ge=0,
        lt=1,
        description="Slippage tolerance as a fraction (None = configured default)",
    )


class SwapRequest(QuoteRequest):
    """Request to convert an amount, optionally paying out to another wallet."""

    recipient: Optional[str] = Field(
        None, description="Wallet that receives the output (None = the signer)"
    )

    @field_validator("recipient")
    @classmethod
    def validate_recipient(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not Web3.is_address(value):
            raise ValueError(f"Invalid recipient address: {value}")
        return Web3.to_checksum_address(value)


class PaymentRequest(BaseModel):
    """Amount a seller requires, in the seller's asset."""

    required_asset: str = Field(..., description="Asset the seller accepts")
    required_amount: Decimal = Field(..., gt=0, description="Price in the seller's asset")


class QuoteResponse(BaseModel):
    """Serializable view of a quote."""

    from_asset: str
    to_asset: str
    input_amount: Decimal
    expected_output: Decimal
    minimum_output: Decimal
    exchange_rate: Decimal
    price_impact: Decimal = Field(..., description="Price impact in percent")
    route: list[str]
    gas_limit: int
    network_fee: Optional[Decimal] = Field(None, description="Network fee in CELO")
    routed: bool = True
    expires_in: float = Field(..., description="Seconds until the quote expires")

    @classmethod
    def from_quote(cls, quote: Quote) -> "QuoteResponse":
        return cls(
            from_asset=quote.from_asset,
            to_asset=quote.to_asset,
            input_amount=quote.input_amount,
            expected_output=quote.expected_output,
            minimum_output=quote.minimum_output,
            exchange_rate=quote.exchange_rate,
            price_impact=quote.price_impact,
            route=list(quote.route),
            gas_limit=quote.fees.gas_limit,
            network_fee=quote.fees.network_fee,
            routed=quote.routed,
            expires_in=max(quote.seconds_until_expiry, 0.0),
        )
