"""Fiat/asset conversion table with persisted cache and hard-coded defaults.

Conversions resolve in a fixed order: identity, direct rate, inverse rate,
cross rate through the FIAT anchor, then a heuristic from the default table
(1:1 when even that has nothing). ``convert`` and ``format`` never raise.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Optional

import httpx

from crosspay.assets import FIAT_UNIT, NATIVE_SYMBOL, AssetRegistry, get_registry
from crosspay.config import Settings
from crosspay.errors import ErrorKind
from crosspay.models import ExchangeRateTable, RateProvenance
from crosspay.utils.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

# Default fallback rates, units per FIAT (USD) unless stated otherwise
DEFAULT_RATES: dict[str, Decimal] = {
    "USDT_CELO": Decimal("0.5"),
    "USDT_FIAT": Decimal("1"),
    "CELO_FIAT": Decimal("2"),
    "cUSD_FIAT": Decimal("1"),
    "cEUR_FIAT": Decimal("0.85"),
    "cREAL_FIAT": Decimal("0.2"),
    "cKES_FIAT": Decimal("0.007"),
    "PUSO_FIAT": Decimal("0.018"),
    "cCOP_FIAT": Decimal("0.00025"),
    "eXOF_FIAT": Decimal("0.0017"),
    "cNGN_FIAT": Decimal("0.0024"),
    "cJPY_FIAT": Decimal("0.0067"),
    "cCHF_FIAT": Decimal("1.1"),
    "cZAR_FIAT": Decimal("0.055"),
    "cGBP_FIAT": Decimal("1.27"),
    "cAUD_FIAT": Decimal("0.67"),
    "cCAD_FIAT": Decimal("0.74"),
    "cGHS_FIAT": Decimal("0.083"),
}

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "BRL": "R$",
    "KES": "KSh",
    "PHP": "₱",
    "NGN": "₦",
    "GHS": "GH₵",
    "ZAR": "R",
    "CHF": "CHF ",
    "AUD": "A$",
    "CAD": "CA$",
    "COP": "COL$",
    "XOF": "CFA ",
}

DEFAULT_CURRENCY = "USD"
FRESH_CACHE_AGE = 3600.0  # persisted tables older than this are not used at startup

RateListener = Callable[[ExchangeRateTable], None]


@dataclass(frozen=True)
class RateResolution:
    """A rate and the resolution step that produced it."""

    rate: Decimal
    method: str  # identity | direct | inverse | cross | heuristic


def _to_decimal(value) -> Optional[Decimal]:
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not number.is_finite():
        return None
    return number


def _lookup(rates: dict[str, Decimal], from_unit: str, to_unit: str) -> Optional[Decimal]:
    rate = rates.get(f"{from_unit}_{to_unit}")
    if rate is None or rate <= 0:
        return None
    return rate


def _resolve_in(rates: dict[str, Decimal], from_unit: str, to_unit: str) -> Optional[RateResolution]:
    direct = _lookup(rates, from_unit, to_unit)
    if direct is not None:
        return RateResolution(direct, "direct")

    inverse = _lookup(rates, to_unit, from_unit)
    if inverse is not None:
        return RateResolution(Decimal(1) / inverse, "inverse")

    from_fiat = _to_fiat(rates, from_unit)
    to_fiat = _to_fiat(rates, to_unit)
    if from_fiat is not None and to_fiat is not None:
        return RateResolution(from_fiat / to_fiat, "cross")
    return None


def _to_fiat(rates: dict[str, Decimal], unit: str) -> Optional[Decimal]:
    if unit == FIAT_UNIT:
        return Decimal(1)
    rate = _lookup(rates, unit, FIAT_UNIT)
    if rate is not None:
        return rate
    inverse = _lookup(rates, FIAT_UNIT, unit)
    if inverse is not None:
        return Decimal(1) / inverse
    return None


def _format_currency(amount: Decimal, code: str) -> str:
    try:
        value = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        value = amount
    sign = "-" if value < 0 else ""
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{sign}{symbol}{abs(value):,.2f}"
    return f"{sign}{abs(value):,.2f} {code}"


def _format_native(amount: Decimal) -> str:
    text = f"{amount:,.4f}"
    # 2 to 4 fraction digits
    while text.endswith("0") and len(text.split(".")[1]) > 2:
        text = text[:-1]
    return f"{text} {NATIVE_SYMBOL}"


class ExchangeRateService:
    """Owns the exchange rate table and the user's display currency."""

    def __init__(
        self,
        settings: Settings,
        registry: Optional[AssetRegistry] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.registry = registry or get_registry()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._client = client
        self._cache_path = Path(settings.rate_cache_path) if settings.rate_cache_path else None

        self.user_currency = DEFAULT_CURRENCY
        self.user_country: Optional[str] = None
        self._geo_fetched_at = 0.0

        self._listeners: list[RateListener] = []
        self._refresh_lock = asyncio.Lock()
        self._auto_task: Optional[asyncio.Task] = None
        self.last_error: Optional[str] = None

        self.table = self._initial_table()

    # ======================
    # Table lookup
    # ======================

    def _initial_table(self) -> ExchangeRateTable:
        cached = self._load_cache()
        if cached is not None and cached.age < FRESH_CACHE_AGE:
            logger.debug(f"Using persisted rate table ({cached.age:.0f}s old)")
            return cached
        return ExchangeRateTable(
            rates=dict(DEFAULT_RATES),
            last_updated=0.0,
            provenance=RateProvenance.FALLBACK_DEFAULT,
        )

    def resolve(self, from_unit: str, to_unit: str) -> RateResolution:
        """Rate from ``from_unit`` to ``to_unit`` and how it was found."""
        if from_unit == to_unit:
            return RateResolution(Decimal(1), "identity")

        found = _resolve_in(self.table.rates, from_unit, to_unit)
        if found is not None:
            return found

        fallback = _resolve_in(DEFAULT_RATES, from_unit, to_unit)
        if fallback is not None:
            return RateResolution(fallback.rate, "heuristic")
        logger.debug(f"No rate for {from_unit}->{to_unit}, assuming 1:1")
        return RateResolution(Decimal(1), "heuristic")

    def convert(self, amount, from_unit: str, to_unit: str) -> Decimal:
        """Convert ``amount``; invalid input converts to 0."""
        value = _to_decimal(amount)
        if value is None:
            return Decimal(0)
        if from_unit == to_unit:
            return value
        if value == 0:
            return Decimal(0)
        return value * self.resolve(from_unit, to_unit).rate

    def format(self, amount, unit: str) -> str:
        """Render ``amount`` of ``unit`` for display."""
        value = _to_decimal(amount)
        if value is None:
            return "-"

        fiat = self.registry.stable_fiat_map().get(unit)
        if fiat:
            return _format_currency(value, fiat)
        if unit == "USDT":
            return _format_currency(value, "USD")
        if unit == NATIVE_SYMBOL:
            return _format_native(value)
        if unit == FIAT_UNIT:
            return _format_currency(value, self.user_currency)
        return f"{value:,.2f} {unit}"

    # ======================
    # Listeners
    # ======================

    def subscribe(self, listener: RateListener) -> Callable[[], None]:
        """Call ``listener`` with the new table whenever it changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_table(self, table: ExchangeRateTable) -> None:
        changed = table.rates != self.table.rates or table.provenance != self.table.provenance
        self.table = table
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(table)
            except Exception:
                logger.exception("Exchange rate listener failed")

    # ======================
    # Refresh
    # ======================

    async def refresh(self, force: bool = False) -> ExchangeRateTable:
        """Refresh the table from the price feed.

        Falls back to the persisted cache, then to the defaults. Never raises.
        """
        if not force and self._is_fresh():
            logger.debug(f"Rate table is {self.table.age:.0f}s old, skipping refresh")
            return self.table

        async with self._refresh_lock:
            if not force and self._is_fresh():
                return self.table

            await self._update_geolocation()
            fiat_map = self.registry.stable_fiat_map()
            try:
                data = await with_retry(
                    lambda: self._fetch_prices(fiat_map),
                    policy=self.retry_policy,
                    description="Price feed fetch",
                    default_kind=ErrorKind.NETWORK_ERROR,
                )
                rates = self._build_rates(data, fiat_map)
            except Exception as e:
                self.last_error = str(e)
                logger.warning(f"Exchange rate refresh failed: {e}")
                self._set_table(self._fallback_table())
                return self.table

            self.last_error = None
            table = ExchangeRateTable(
                rates=rates, last_updated=time.time(), provenance=RateProvenance.LIVE
            )
            self._save_cache(table)
            self._set_table(table)
            logger.info(f"Exchange rates updated ({len(rates)} pairs, currency {self.user_currency})")
            return table

    def _is_fresh(self) -> bool:
        return self.table.last_updated > 0 and self.table.age < self.settings.rate_refresh_interval

    def _fallback_table(self) -> ExchangeRateTable:
        cached = self._load_cache()
        if cached is not None:
            logger.info(f"Using persisted exchange rates from {self._cache_path}")
            return cached
        if self.table.provenance != RateProvenance.FALLBACK_DEFAULT:
            logger.info("Keeping the last fetched exchange rates")
            return ExchangeRateTable(
                rates=dict(self.table.rates),
                last_updated=self.table.last_updated,
                provenance=RateProvenance.CACHED,
            )
        logger.info("Using default exchange rates")
        return ExchangeRateTable(
            rates=dict(DEFAULT_RATES),
            last_updated=time.time(),
            provenance=RateProvenance.FALLBACK_DEFAULT,
        )

    async def _get_json(self, url: str, params: Optional[dict] = None):
        if self._client is not None:
            response = await self._client.get(url, params=params, timeout=self.settings.http_timeout)
        else:
            async with httpx.AsyncClient(timeout=self.settings.http_timeout) as client:
                response = await client.get(url, params=params)
        response.raise_for_status()
        return response.json()

    async def _fetch_prices(self, fiat_map: dict[str, str]) -> dict:
        local = self.user_currency.lower()
        currencies = [local, "usd"] + [c.lower() for c in fiat_map.values()]
        vs = ",".join(dict.fromkeys(currencies))

        return await self._get_json(
            self.settings.price_feed_url,
            params={"ids": "tether,celo", "vs_currencies": vs},
        )

    def _build_rates(self, data: dict, fiat_map: dict[str, str]) -> dict[str, Decimal]:
        """Derive the table from tether/celo prices in every tracked currency."""
        tether = {k: _to_decimal(v) for k, v in data["tether"].items()}
        celo = {k: _to_decimal(v) for k, v in data["celo"].items()}
        local = self.user_currency.lower()

        usdt_fiat = tether.get(local) or tether["usd"]
        celo_fiat = celo.get(local) or celo["usd"]
        if not usdt_fiat or not celo_fiat or not celo.get("usd") or not tether.get("usd"):
            raise ValueError("Price feed returned no usable prices")

        rates = {
            "USDT_CELO": tether["usd"] / celo["usd"],
            "USDT_FIAT": usdt_fiat,
            "CELO_FIAT": celo_fiat,
        }
        for token, currency in fiat_map.items():
            if currency.lower() == local:
                token_fiat = Decimal(1)
            else:
                # one USDT buys tether[x] units of currency x
                usdt_in_currency = tether.get(currency.lower())
                if not usdt_in_currency:
                    continue
                token_fiat = usdt_fiat / usdt_in_currency
            rates[f"{token}_FIAT"] = token_fiat
            rates[f"{token}_USDT"] = token_fiat / usdt_fiat
            rates[f"{token}_CELO"] = token_fiat / celo_fiat
        return rates

    async def _update_geolocation(self) -> None:
        """Resolve the display currency, at most once per geo cache lifetime."""
        if self._geo_fetched_at and time.time() - self._geo_fetched_at < self.settings.geo_cache_ttl:
            return
        try:
            data = await self._get_json(self.settings.geolocation_url)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to fetch geolocation data: {e}")
            return
        self.user_currency = (data.get("currency") or DEFAULT_CURRENCY).upper()
        self.user_country = data.get("country") or None
        self._geo_fetched_at = time.time()
        logger.debug(f"Display currency resolved to {self.user_currency}")

    # ======================
    # Persistence
    # ======================

    def _load_cache(self) -> Optional[ExchangeRateTable]:
        if self._cache_path is None or not self._cache_path.exists():
            return None
        try:
            data = json.loads(self._cache_path.read_text(encoding="utf-8"))
            rates = {k: Decimal(v) for k, v in data["rates"].items()}
            last_updated = float(data["last_updated"])
        except (OSError, ValueError, KeyError, TypeError, InvalidOperation) as e:
            logger.warning(f"Ignoring unreadable rate cache {self._cache_path}: {e}")
            return None

        self._load_cached_geo(data.get("geo"))
        return ExchangeRateTable(rates=rates, last_updated=last_updated, provenance=RateProvenance.CACHED)

    def _load_cached_geo(self, geo) -> None:
        if not isinstance(geo, dict) or not geo.get("currency") or self._geo_fetched_at:
            return
        try:
            fetched_at = float(geo.get("fetched_at") or 0)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring cached location with bad timestamp: {e}")
            return
        if time.time() - fetched_at < self.settings.geo_cache_ttl:
            self.user_currency = str(geo["currency"])
            self.user_country = geo.get("country")
            self._geo_fetched_at = fetched_at

    def _save_cache(self, table: ExchangeRateTable) -> None:
        if self._cache_path is None:
            return
        payload = table.to_dict()
        payload["geo"] = {
            "currency": self.user_currency,
            "country": self.user_country,
            "fetched_at": self._geo_fetched_at,
        }
        try:
            self._cache_path.parent.mkdir(parents=True, exist_ok=True)
            self._cache_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not persist exchange rates to {self._cache_path}: {e}")

    # ======================
    # Background refresh
    # ======================

    def start_auto_refresh(self) -> None:
        """Refresh now and then every ``rate_refresh_interval`` seconds."""
        if self._auto_task is not None and not self._auto_task.done():
            return
        self._auto_task = asyncio.ensure_future(self._auto_refresh_loop())

    async def _auto_refresh_loop(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.settings.rate_refresh_interval)

    async def stop(self) -> None:
        """Cancel the background refresh."""
        task, self._auto_task = self._auto_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
