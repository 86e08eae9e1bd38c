"""Tests for the exchange rate service."""

import json
import time
from decimal import Decimal
from itertools import permutations

import httpx
import pytest

from crosspay.assets import get_registry
from crosspay.models import ExchangeRateTable, RateProvenance
from crosspay.services.exchange_rates import DEFAULT_RATES, ExchangeRateService

UNITS = get_registry().symbols + ["FIAT"]

PRICES = {
    "tether": {"usd": 1.0, "eur": 0.9, "brl": 5.0, "kes": 130.0},
    "celo": {"usd": 0.5, "eur": 0.45},
}


class PriceFeed:
    """Price feed and geolocation endpoints behind httpx.MockTransport."""

    def __init__(self, currency: str = "EUR"):
        self.currency = currency
        self.down = False
        self.price_calls = 0
        self.geo_calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "ipapi.co":
            self.geo_calls += 1
            if self.down:
                return httpx.Response(503)
            return httpx.Response(200, json={"currency": self.currency, "country": "DE"})
        self.price_calls += 1
        if self.down:
            return httpx.Response(500)
        return httpx.Response(200, json=PRICES)


@pytest.fixture
def feed():
    return PriceFeed()


@pytest.fixture
def client(feed):
    return httpx.AsyncClient(transport=httpx.MockTransport(feed.handler))


def close(a: Decimal, b: Decimal) -> bool:
    return abs(a - b) <= abs(b) * Decimal("1e-9")


def has_fiat_rate(unit: str) -> bool:
    return unit == "FIAT" or f"{unit}_FIAT" in DEFAULT_RATES or f"FIAT_{unit}" in DEFAULT_RATES


def expected_method(from_unit: str, to_unit: str) -> str:
    if f"{from_unit}_{to_unit}" in DEFAULT_RATES:
        return "direct"
    if f"{to_unit}_{from_unit}" in DEFAULT_RATES:
        return "inverse"
    if has_fiat_rate(from_unit) and has_fiat_rate(to_unit):
        return "cross"
    return "heuristic"


class TestConvert:
    """Tests for rate resolution on the default table."""

    def test_identity(self, rates):
        assert rates.convert(Decimal("5"), "cUSD", "cUSD") == Decimal("5")
        assert rates.resolve("XYZ", "XYZ").method == "identity"

    def test_direct(self, rates):
        assert rates.convert(10, "cEUR", "FIAT") == Decimal("8.5")
        assert rates.resolve("cEUR", "FIAT").method == "direct"

    def test_inverse(self, rates):
        assert close(rates.convert(Decimal("8.5"), "FIAT", "cEUR"), Decimal("10"))
        assert rates.resolve("CELO", "USDT").method == "inverse"
        assert rates.convert(1, "CELO", "USDT") == Decimal("2")

    def test_cross_through_fiat(self, rates):
        resolution = rates.resolve("cEUR", "cREAL")

        assert resolution.method == "cross"
        assert resolution.rate == Decimal("4.25")

    def test_heuristic_from_defaults(self, rates):
        rates.table = ExchangeRateTable(
            rates={"USDT_FIAT": Decimal("1")},
            last_updated=time.time(),
            provenance=RateProvenance.LIVE,
        )

        resolution = rates.resolve("cEUR", "FIAT")
        assert resolution.method == "heuristic"
        assert resolution.rate == Decimal("0.85")

    def test_unknown_units_are_one_to_one(self, rates):
        assert rates.resolve("ABC", "XYZ").method == "heuristic"
        assert rates.convert(7, "ABC", "XYZ") == Decimal("7")

    def test_round_trip(self, rates):
        for unit in ("cEUR", "cKES", "USDT", "CELO"):
            amount = Decimal("123.45")
            there = rates.convert(amount, unit, "FIAT")
            back = rates.convert(there, "FIAT", unit)
            assert close(back, amount), unit

    @pytest.mark.parametrize("unit", UNITS)
    def test_identity_for_every_unit(self, rates, unit):
        assert rates.resolve(unit, unit).method == "identity"
        assert rates.convert(Decimal("123.45"), unit, unit) == Decimal("123.45")

    @pytest.mark.parametrize("from_unit,to_unit", list(permutations(UNITS, 2)))
    def test_every_pair_resolves_in_order(self, rates, from_unit, to_unit):
        resolution = rates.resolve(from_unit, to_unit)

        assert resolution.method == expected_method(from_unit, to_unit)
        assert resolution.rate > 0

        amount = Decimal("123.45")
        back = rates.convert(rates.convert(amount, from_unit, to_unit), to_unit, from_unit)
        assert close(back, amount)

    def test_invalid_input_converts_to_zero(self, rates):
        assert rates.convert("abc", "cUSD", "FIAT") == Decimal("0")
        assert rates.convert(None, "cUSD", "FIAT") == Decimal("0")
        assert rates.convert(float("nan"), "cUSD", "FIAT") == Decimal("0")
        assert rates.convert(0, "cEUR", "FIAT") == Decimal("0")


class TestFormat:
    """Tests for display formatting."""

    def test_stable_tokens_use_their_currency(self, rates):
        assert rates.format(Decimal("1234.5"), "cUSD") == "$1,234.50"
        assert rates.format(Decimal("1234.5"), "cEUR") == "€1,234.50"
        assert rates.format(1000, "cKES") == "KSh1,000.00"
        assert rates.format(-5, "cUSD") == "-$5.00"

    def test_usdt_is_usd(self, rates):
        assert rates.format(Decimal("2"), "USDT") == "$2.00"

    def test_native_asset(self, rates):
        assert rates.format(Decimal("1234.5"), "CELO") == "1,234.50 CELO"
        assert rates.format(Decimal("1.23456"), "CELO") == "1.2346 CELO"

    def test_fiat_uses_user_currency(self, rates):
        assert rates.format(10, "FIAT") == "$10.00"
        rates.user_currency = "EUR"
        assert rates.format(10, "FIAT") == "€10.00"
        rates.user_currency = "SEK"
        assert rates.format(10, "FIAT") == "10.00 SEK"

    def test_never_raises(self, rates):
        assert rates.format("abc", "cUSD") == "-"
        assert rates.format(3, "XYZ") == "3.00 XYZ"


class TestRefresh:
    """Tests for fetching, caching and falling back."""

    @pytest.mark.asyncio
    async def test_live_refresh(self, settings, feed, client):
        service = ExchangeRateService(settings, client=client)

        table = await service.refresh()

        assert table.provenance == RateProvenance.LIVE
        assert service.user_currency == "EUR"
        assert service.user_country == "DE"
        assert table.get("cEUR", "FIAT") == Decimal("1")
        assert close(table.get("cUSD", "FIAT"), Decimal("0.9"))
        assert close(table.get("cKES", "FIAT"), Decimal("0.9") / Decimal("130"))
        assert table.get("USDT", "CELO") == Decimal("2")
        assert service.format(10, "FIAT") == "€10.00"

    @pytest.mark.asyncio
    async def test_fresh_table_is_not_refetched(self, settings, feed, client):
        service = ExchangeRateService(settings, client=client)

        await service.refresh()
        await service.refresh()

        assert feed.price_calls == 1
        await service.refresh(force=True)
        assert feed.price_calls == 2
        assert feed.geo_calls == 1

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_defaults(self, settings, feed, client):
        feed.down = True
        service = ExchangeRateService(settings, client=client)

        table = await service.refresh()

        assert table.provenance == RateProvenance.FALLBACK_DEFAULT
        assert table.rates == DEFAULT_RATES
        assert feed.price_calls == settings.retry_attempts
        assert service.last_error
        assert service.convert(10, "cEUR", "FIAT") == Decimal("8.5")

    @pytest.mark.asyncio
    async def test_failure_keeps_last_fetched_table(self, settings, feed, client):
        service = ExchangeRateService(settings, client=client)
        live = await service.refresh()

        feed.down = True
        table = await service.refresh(force=True)

        assert table.provenance == RateProvenance.CACHED
        assert table.rates == live.rates

    @pytest.mark.asyncio
    async def test_persisted_cache(self, settings, feed, client, tmp_path):
        path = tmp_path / "rates.json"
        cached_settings = settings.model_copy(update={"rate_cache_path": str(path)})
        await ExchangeRateService(cached_settings, client=client).refresh()

        saved = json.loads(path.read_text(encoding="utf-8"))
        assert saved["rates"]["cEUR_FIAT"] == "1"
        assert saved["geo"]["currency"] == "EUR"

        feed.down = True
        service = ExchangeRateService(cached_settings, client=client)
        assert service.table.provenance == RateProvenance.CACHED
        assert service.user_currency == "EUR"

        table = await service.refresh(force=True)
        assert table.provenance == RateProvenance.CACHED
        assert table.get("cEUR", "FIAT") == Decimal("1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "geo",
        ["x", ["EUR"], {"currency": "EUR", "fetched_at": "yesterday"}, {"currency": "EUR", "fetched_at": [1]}],
    )
    async def test_malformed_cached_location_keeps_rates(self, settings, feed, client, tmp_path, geo):
        path = tmp_path / "rates.json"
        path.write_text(
            json.dumps({"rates": {"cEUR_FIAT": "0.9"}, "last_updated": time.time(), "geo": geo}),
            encoding="utf-8",
        )
        feed.down = True
        service = ExchangeRateService(
            settings.model_copy(update={"rate_cache_path": str(path)}), client=client
        )

        assert service.table.provenance == RateProvenance.CACHED
        assert service.user_currency == "USD"

        table = await service.refresh(force=True)
        assert table.get("cEUR", "FIAT") == Decimal("0.9")

    @pytest.mark.asyncio
    async def test_listeners(self, settings, feed, client):
        service = ExchangeRateService(settings, client=client)
        seen = []

        def broken(table):
            raise RuntimeError("listener bug")

        service.subscribe(broken)
        unsubscribe = service.subscribe(seen.append)
        await service.refresh()

        assert [t.provenance for t in seen] == [RateProvenance.LIVE]
        unsubscribe()
        await service.refresh(force=True)
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_auto_refresh_stops(self, settings, feed, client):
        service = ExchangeRateService(settings, client=client)

        service.start_auto_refresh()
        await service.stop()

        assert service._auto_task is None
