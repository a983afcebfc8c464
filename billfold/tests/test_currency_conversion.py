import io
import unittest
from decimal import Decimal
from unittest import mock
from urllib.error import URLError

from billfold.config import Settings
from billfold.currency_conversion import (
    ExchangeRateApiProvider,
    ExchangeRateResolver,
    RateCache,
    build_rate_resolver,
)
from billfold.exceptions import RateProviderUnavailable


class RecordingProvider:
    def __init__(self, rates=None, failures=0, error=None):
        self.rates = rates or {}
        self.failures = failures
        self.error = error
        self.calls = []

    def fetch_rate(self, base: str, target: str) -> Decimal:
        self.calls.append((base, target))
        if self.error is not None:
            raise self.error
        if self.failures > 0:
            self.failures -= 1
            raise RateProviderUnavailable("Down")
        return self.rates[f"{base}-{target}"]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class ExchangeRateResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps = []

    def build(self, provider=None, **kwargs) -> ExchangeRateResolver:
        return ExchangeRateResolver(provider=provider, sleep=self.sleeps.append, **kwargs)

    def test_same_currency_is_one_without_lookup(self) -> None:
        provider = RecordingProvider()
        resolver = self.build(provider)

        self.assertEqual(resolver.get_rate("usd", " USD "), Decimal("1"))
        self.assertEqual(provider.calls, [])
        self.assertEqual(resolver.cache_stats()["size"], 0)

    def test_missing_api_key_goes_straight_to_fallback_table(self) -> None:
        resolver = self.build()

        self.assertEqual(resolver.get_rate("USD", "INR"), Decimal("74.5"))
        self.assertEqual(self.sleeps, [])

    def test_failing_lookup_retries_with_backoff_then_falls_back(self) -> None:
        provider = RecordingProvider(error=RateProviderUnavailable("Down"))
        resolver = self.build(provider)

        rate = resolver.get_rate("USD", "INR")

        self.assertEqual(rate, Decimal("74.5"))
        self.assertEqual(len(provider.calls), 4)
        self.assertEqual(self.sleeps, [1.0, 2.0, 4.0])

    def test_recovers_after_transient_failure(self) -> None:
        provider = RecordingProvider(rates={"USD-EUR": Decimal("0.9")}, failures=1)
        resolver = self.build(provider)

        self.assertEqual(resolver.get_rate("USD", "EUR"), Decimal("0.9"))
        self.assertEqual(len(provider.calls), 2)
        self.assertEqual(self.sleeps, [1.0])

    def test_success_caches_forward_and_inverse_rate(self) -> None:
        provider = RecordingProvider(rates={"USD-EUR": Decimal("0.5")})
        resolver = self.build(provider)

        self.assertEqual(resolver.get_rate("USD", "EUR"), Decimal("0.5"))
        self.assertEqual(resolver.get_rate("USD", "EUR"), Decimal("0.5"))
        self.assertEqual(resolver.get_rate("EUR", "USD"), Decimal("2"))
        self.assertEqual(provider.calls, [("USD", "EUR")])

    def test_out_of_range_rate_counts_as_failure(self) -> None:
        provider = RecordingProvider(rates={"USD-EUR": Decimal("50000")})
        resolver = self.build(provider, max_retries=1)

        self.assertEqual(resolver.get_rate("USD", "EUR"), Decimal("0.85"))
        self.assertEqual(len(provider.calls), 2)

    def test_reverse_fallback_is_inverted(self) -> None:
        resolver = self.build(fallback_rates={"USD-CAD": Decimal("1.25")})

        self.assertEqual(resolver.get_rate("CAD", "USD"), Decimal("0.8"))

    def test_unknown_pair_resolves_to_one_and_is_not_cached(self) -> None:
        resolver = self.build()

        self.assertEqual(resolver.get_rate("CHF", "SEK"), Decimal("1"))
        self.assertEqual(resolver.cache_stats()["size"], 0)

    def test_invalid_currency_code_raises(self) -> None:
        resolver = self.build()

        with self.assertRaises(ValueError):
            resolver.get_rate("US", "EUR")

    def test_convert_minor_units_rounds_half_up(self) -> None:
        resolver = self.build()

        self.assertEqual(resolver.convert_minor_units(1000, "USD", "INR"), 74500)
        self.assertEqual(resolver.convert_minor_units(5, "USD", "EUR"), 4)
        self.assertEqual(resolver.convert_minor_units(10, "USD", "EUR"), 9)

    def test_batch_rates_and_cache_management(self) -> None:
        resolver = self.build()

        rates = resolver.get_batch_rates("USD", ["USD", "EUR", "GBP"])

        self.assertEqual(rates, {"USD": Decimal("1"), "EUR": Decimal("0.85"), "GBP": Decimal("0.73")})
        self.assertEqual(resolver.cache_stats()["size"], 2)
        resolver.clear_cache()
        self.assertEqual(resolver.cache_stats()["size"], 0)

    def test_build_rate_resolver_uses_settings(self) -> None:
        resolver = build_rate_resolver(
            Settings(exchange_rate_api_key="secret", rate_max_retries=1, rate_cache_max_entries=10)
        )

        self.assertIsInstance(resolver.provider, ExchangeRateApiProvider)
        self.assertEqual(resolver.max_retries, 1)
        self.assertEqual(resolver.cache.max_entries, 10)
        self.assertIsNone(build_rate_resolver(Settings()).provider)


class RateCacheTests(unittest.TestCase):
    def test_entries_expire_after_ttl(self) -> None:
        clock = FakeClock()
        cache = RateCache(ttl_seconds=60, clock=clock)
        cache.set("USD-EUR", Decimal("0.9"))

        clock.now += 59
        self.assertEqual(cache.get("USD-EUR"), Decimal("0.9"))
        clock.now += 2
        self.assertIsNone(cache.get("USD-EUR"))
        self.assertEqual(len(cache), 0)

    def test_least_recently_used_entry_is_evicted(self) -> None:
        cache = RateCache(max_entries=2)
        cache.set("USD-EUR", Decimal("0.9"))
        cache.set("USD-GBP", Decimal("0.8"))
        cache.get("USD-EUR")
        cache.set("USD-JPY", Decimal("110"))

        self.assertIsNone(cache.get("USD-GBP"))
        self.assertEqual(cache.get("USD-EUR"), Decimal("0.9"))
        self.assertEqual(cache.get("USD-JPY"), Decimal("110"))


class ExchangeRateApiProviderTests(unittest.TestCase):
    def test_fetches_pair_rate(self) -> None:
        provider = ExchangeRateApiProvider(api_key="key", base_url="https://rates.test/v6/")
        response = io.BytesIO(b'{"result": "success", "conversion_rate": 0.92}')

        with mock.patch("billfold.currency_conversion.urlopen", return_value=response) as urlopen:
            rate = provider.fetch_rate("USD", "EUR")

        self.assertEqual(rate, Decimal("0.92"))
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://rates.test/v6/key/pair/USD/EUR")
        self.assertEqual(urlopen.call_args.kwargs["timeout"], 10.0)

    def test_network_error_is_unavailable(self) -> None:
        provider = ExchangeRateApiProvider(api_key="key")

        with mock.patch("billfold.currency_conversion.urlopen", side_effect=URLError("down")):
            with self.assertRaises(RateProviderUnavailable):
                provider.fetch_rate("USD", "EUR")

    def test_missing_rate_is_unavailable(self) -> None:
        provider = ExchangeRateApiProvider(api_key="key")
        response = io.BytesIO(b'{"result": "error", "error-type": "unsupported-code"}')

        with mock.patch("billfold.currency_conversion.urlopen", return_value=response):
            with self.assertRaises(RateProviderUnavailable):
                provider.fetch_rate("USD", "XYZ")


if __name__ == "__main__":
    unittest.main()
