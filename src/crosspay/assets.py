"""Static asset registry for the Celo stable-value tokens.

Each asset carries its per-network contract address. CELO is the native gas
asset; it also exposes an ERC-20 interface, which is the address the broker
trades against.
"""

from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from crosspay.config import CELO_ALFAJORES_ID, CELO_MAINNET_ID

NATIVE_SYMBOL = "CELO"
FIAT_UNIT = "FIAT"


@dataclass(frozen=True)
class Asset:
    """A fungible token or native currency handled by the engine."""

    symbol: str
    name: str
    decimals: int
    addresses: Mapping[int, str] = field(default_factory=dict)
    native: bool = False
    icon: Optional[str] = None
    fiat_currency: Optional[str] = None  # ISO code the asset tracks

    def address_on(self, chain_id: int) -> Optional[str]:
        return self.addresses.get(chain_id)

    def to_base_units(self, amount: Decimal) -> int:
        """Convert a human amount to integer base units (truncating)."""
        scaled = Decimal(amount) * (Decimal(10) ** self.decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))

    def from_base_units(self, raw: int) -> Decimal:
        return Decimal(raw) / (Decimal(10) ** self.decimals)


def _addresses(mainnet: Optional[str], testnet: Optional[str] = None) -> Mapping[int, str]:
    table = {}
    if mainnet:
        table[CELO_MAINNET_ID] = mainnet
    if testnet:
        table[CELO_ALFAJORES_ID] = testnet
    return MappingProxyType(table)


# Placeholder deployment reused by the Alfajores tokens without their own contract
_SHARED = "0x02De4766C272abc10Bc88c220D214A26960a7e92"

# ======================
# Asset Definitions
# ======================

ASSETS: tuple[Asset, ...] = (
    Asset(
        symbol=NATIVE_SYMBOL,
        name="Celo",
        decimals=18,
        addresses=_addresses(
            "0x471EcE3750Da237f93B8E339c536989b8978a438",
            "0xF194afDf50B03e69Bd7D057c1Aa9e10c9954E4C9",
        ),
        native=True,
        icon="🟡",
    ),
    Asset(
        symbol="USDT",
        name="Tether USD",
        decimals=6,
        addresses=_addresses("0x48065fbBE25f71C9282ddf5e1cD6D6A887483D5e"),
        icon="💲",
        fiat_currency="USD",
    ),
    Asset("cUSD", "Celo Dollar", 18, _addresses(
        "0x765DE816845861e75A25fCA122bb6898B8B1282a",
        "0x874069Fa1Eb16D44d622F2e0Ca25eeA172369bC1",
    ), icon="💵", fiat_currency="USD"),
    Asset("cEUR", "Celo Euro", 18, _addresses(
        "0xD8763CBa276a3738E6DE85b4b3bF5FDed6D6cA73",
        "0x10c892A6EC43a53E45D0B916B4b7D383B1b78C0F",
    ), icon="💶", fiat_currency="EUR"),
    Asset("cREAL", "Celo Brazilian Real", 18, _addresses(
        "0xe8537a3d056DA446677B9E9d6c5dB704EaAb4787",
        "0xE4D517785D091D3c54818832dB6094bcc2744545",
    ), icon="💴", fiat_currency="BRL"),
    Asset("cKES", "Celo Kenyan Shilling", 18, _addresses(
        "0x456a3D042C0DbD3db53D5489e98dFb038553B0d0", _SHARED,
    ), icon="🏦", fiat_currency="KES"),
    Asset("PUSO", "Philippine Peso", 18, _addresses(
        "0x46c9757C5497c5B1f2eb73aE79b6B67D119B0B58", _SHARED,
    ), icon="💰", fiat_currency="PHP"),
    Asset("cCOP", "Colombian Peso", 18, _addresses(
        "0x62492A644A588FD904270BeD06ad52B9abfEA1aE", _SHARED,
    ), icon="💸", fiat_currency="COP"),
    Asset("eXOF", "CFA Franc", 18, _addresses(
        "0x73F93dcc49cB8A239e2032663e9475dd5ef29A08", _SHARED,
    ), icon="🪙", fiat_currency="XOF"),
    Asset("cNGN", "Nigerian Naira", 18, _addresses(
        "0x17700282592D6917F6A73D0bF8AcCf4D578c131e", _SHARED,
    ), icon="💵", fiat_currency="NGN"),
    Asset("cJPY", "Japanese Yen", 18, _addresses(
        "0x39049C02A56C3e0b3E4df5bb3e7b65AaC9A24D4F", _SHARED,
    ), icon="💴", fiat_currency="JPY"),
    Asset("cCHF", "Swiss Franc", 18, _addresses(
        "0x2F25deB3848C207fc8E0c34035B3Ba7fC157602B", _SHARED,
    ), icon="🏦", fiat_currency="CHF"),
    Asset("cZAR", "South African Rand", 18, _addresses(
        None, _SHARED,
    ), icon="💎", fiat_currency="ZAR"),
    Asset("cGBP", "British Pound", 18, _addresses(
        "0x5d71876f56681de70c75366b64b80B7f043c7A87", _SHARED,
    ), icon="💷", fiat_currency="GBP"),
    Asset("cAUD", "Australian Dollar", 18, _addresses(
        None, _SHARED,
    ), icon="💲", fiat_currency="AUD"),
    Asset("cCAD", "Canadian Dollar", 18, _addresses(
        None, _SHARED,
    ), icon="💵", fiat_currency="CAD"),
    Asset("cGHS", "Ghanaian Cedi", 18, _addresses(
        None, _SHARED,
    ), icon="🪙", fiat_currency="GHS"),
)


class AssetRegistry:
    """Lookup table over a fixed set of assets."""

    def __init__(self, assets: Iterable[Asset] = ASSETS):
        self._by_symbol: dict[str, Asset] = {}
        for asset in assets:
            self._by_symbol[asset.symbol.upper()] = asset

    def __contains__(self, symbol: str) -> bool:
        return symbol.upper() in self._by_symbol

    def __iter__(self):
        return iter(self._by_symbol.values())

    @property
    def symbols(self) -> list[str]:
        return [asset.symbol for asset in self._by_symbol.values()]

    def get(self, symbol: str) -> Optional[Asset]:
        return self._by_symbol.get(symbol.upper())

    def require(self, symbol: str) -> Asset:
        asset = self.get(symbol)
        if asset is None:
            raise KeyError(f"Unknown asset {symbol}")
        return asset

    def native(self) -> Asset:
        for asset in self._by_symbol.values():
            if asset.native:
                return asset
        raise KeyError("No native asset registered")

    def address(self, symbol: str, chain_id: int) -> Optional[str]:
        """Contract address of an asset on a network, None if not deployed."""
        asset = self.get(symbol)
        return asset.address_on(chain_id) if asset else None

    def symbol_for_address(self, address: str, chain_id: int) -> Optional[str]:
        """First registered symbol deployed at an address."""
        needle = address.lower()
        for asset in self._by_symbol.values():
            found = asset.address_on(chain_id)
            if found and found.lower() == needle:
                return asset.symbol
        return None

    def supported_on(self, chain_id: int) -> list[Asset]:
        return [a for a in self._by_symbol.values() if a.address_on(chain_id)]

    def stable_fiat_map(self) -> dict[str, str]:
        """Mento stable symbol -> tracked fiat currency (USDT excluded)."""
        return {
            a.symbol: a.fiat_currency
            for a in self._by_symbol.values()
            if a.fiat_currency and a.symbol != "USDT"
        }


_default_registry: Optional[AssetRegistry] = None


def get_registry() -> AssetRegistry:
    """Registry over the built-in asset table."""
    global _default_registry
    if _default_registry is None:
        _default_registry = AssetRegistry()
    return _default_registry
