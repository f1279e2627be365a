"""
Quote router tests - concurrent fan-out, best-quote selection, slippage guard
"""

import asyncio
import random
import time

import pytest

from order_execution.dex_router import (
    BASE58_ALPHABET,
    METEORA,
    QuoteRouter,
    SimulatedProvider,
    SimulatedProviderConfig,
    default_providers,
    generate_mock_tx_hash,
)
from order_execution.errors import ExecutionError, RoutingError, SlippageExceededError
from tests.conftest import StaticProvider


class BrokenProvider(StaticProvider):
    async def submit_swap(self, token_in, token_out, amount, expected_out):
        raise ConnectionError("socket closed")


class TestBestQuote:
    """Test best-quote selection"""

    @pytest.mark.asyncio
    async def test_highest_output_wins(self, router):
        best, quotes = await router.best_quote("SOL", "USDC", 2.0)

        assert best.provider == "Meteora"
        assert [q.provider for q in quotes] == ["Raydium", "Meteora"]
        assert best.amount_out == max(q.amount_out for q in quotes)
        assert best.amount_out == pytest.approx(2.0 * 101.0 * 0.998)

    @pytest.mark.asyncio
    async def test_ties_go_to_first_registered(self):
        router = QuoteRouter([StaticProvider("Alpha", price=100.0),
                              StaticProvider("Beta", price=100.0),
                              StaticProvider("Gamma", price=99.0)])

        for _ in range(5):
            best, _ = await router.best_quote("SOL", "USDC", 1.0)
            assert best.provider == "Alpha"

    @pytest.mark.asyncio
    async def test_quotes_are_requested_concurrently(self):
        router = QuoteRouter([StaticProvider("Slow1", quote_delay=0.2),
                              StaticProvider("Slow2", quote_delay=0.2),
                              StaticProvider("Slow3", quote_delay=0.2)])

        started = time.perf_counter()
        await router.best_quote("SOL", "USDC", 1.0)
        elapsed = time.perf_counter() - started

        assert elapsed < 0.45

    @pytest.mark.asyncio
    async def test_failed_provider_is_skipped(self):
        failing = StaticProvider("Down", price=500.0, quote_error=ConnectionError("timeout"))
        router = QuoteRouter([failing, StaticProvider("Up", price=100.0)])

        best, quotes = await router.best_quote("SOL", "USDC", 1.0)

        assert best.provider == "Up"
        assert len(quotes) == 1
        assert failing.quote_calls == 1

    @pytest.mark.asyncio
    async def test_no_quotes_raises_routing_error(self):
        router = QuoteRouter([StaticProvider("Down", quote_error=ConnectionError("timeout"))])

        with pytest.raises(RoutingError) as exc_info:
            await router.best_quote("SOL", "USDC", 1.0)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_no_providers_raises_routing_error(self):
        with pytest.raises(RoutingError):
            await QuoteRouter().best_quote("SOL", "USDC", 1.0)


class TestProviderRegistry:
    """Test provider registration"""

    def test_duplicate_name_rejected(self):
        router = QuoteRouter([StaticProvider("Raydium")])
        with pytest.raises(ValueError):
            router.register_provider(StaticProvider("Raydium"))

    def test_unknown_provider(self, router):
        with pytest.raises(RoutingError):
            router.get_provider("Orca")


class TestExecuteOnProvider:
    """Test execution and the slippage guard"""

    @pytest.mark.asyncio
    async def test_within_tolerance(self):
        provider = StaticProvider("Raydium", fill_ratio=0.995)
        router = QuoteRouter([provider])

        result = await router.execute_on_provider("Raydium", "SOL", "USDC", 1.0, 100.0, 0.01)

        assert result.amount_out == pytest.approx(99.5)
        assert result.provider == "Raydium"
        assert result.tx_hash

    @pytest.mark.asyncio
    async def test_slippage_exceeded(self):
        router = QuoteRouter([StaticProvider("Raydium", fill_ratio=0.98)])

        with pytest.raises(SlippageExceededError) as exc_info:
            await router.execute_on_provider("Raydium", "SOL", "USDC", 1.0, 100.0, 0.01)

        error = exc_info.value
        assert error.retryable
        assert error.deviation == pytest.approx(0.02)

    @pytest.mark.asyncio
    async def test_better_fill_never_trips_guard(self):
        router = QuoteRouter([StaticProvider("Raydium", fill_ratio=1.05)])

        result = await router.execute_on_provider("Raydium", "SOL", "USDC", 1.0, 100.0, 0.0)

        assert result.amount_out == pytest.approx(105.0)

    @pytest.mark.asyncio
    async def test_downstream_failure_is_execution_error(self):
        router = QuoteRouter([BrokenProvider("Raydium")])

        with pytest.raises(ExecutionError, match="socket closed") as exc_info:
            await router.execute_on_provider("Raydium", "SOL", "USDC", 1.0, 100.0, 0.01)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_accepts_provider_instance(self):
        provider = StaticProvider("Meteora")
        router = QuoteRouter([provider])

        await router.execute_on_provider(provider, "SOL", "USDC", 1.0, 100.0, 0.01)

        assert provider.swap_calls == 1


class TestSimulatedProviders:
    """Test the Raydium/Meteora simulations"""

    def _instant(self, **overrides) -> SimulatedProviderConfig:
        values = dict(name=METEORA.name, fee=METEORA.fee, price_band=METEORA.price_band,
                      liquidity_depth=METEORA.liquidity_depth,
                      estimated_slippage=METEORA.estimated_slippage,
                      quote_latency_seconds=0.0, execution_latency_seconds=(0.0, 0.0),
                      failure_rate=0.0)
        values.update(overrides)
        return SimulatedProviderConfig(**values)

    @pytest.mark.asyncio
    async def test_quote_within_price_band(self):
        provider = SimulatedProvider(self._instant(), random.Random(7))

        for _ in range(20):
            quote = await provider.get_quote("SOL", "USDC", 2.0)
            assert 97.0 <= quote.price <= 102.0
            assert quote.amount_out == pytest.approx(2.0 * quote.price * (1 - 0.002))
            assert quote.liquidity_depth == 75000

    @pytest.mark.asyncio
    async def test_swap_result(self):
        provider = SimulatedProvider(self._instant(), random.Random(7))

        result = await provider.submit_swap("SOL", "USDC", 2.0, 200.0)

        assert 200.0 * 0.998 <= result.amount_out <= 200.0 * 1.002
        assert result.executed_price == pytest.approx(result.amount_out / 2.0)
        assert len(result.tx_hash) == 88

    @pytest.mark.asyncio
    async def test_swap_failure(self):
        provider = SimulatedProvider(self._instant(failure_rate=1.0), random.Random(7))

        with pytest.raises(ExecutionError):
            await provider.submit_swap("SOL", "USDC", 1.0, 100.0)

    def test_mock_tx_hash_is_base58(self):
        tx_hash = generate_mock_tx_hash(random.Random(1))
        assert len(tx_hash) == 88
        assert set(tx_hash) <= set(BASE58_ALPHABET)

    def test_default_providers(self):
        providers = default_providers(seed=3)
        assert [p.name for p in providers] == ["Raydium", "Meteora"]
        assert providers[0].config.fee == 0.003
        assert providers[1].config.fee == 0.002

    @pytest.mark.asyncio
    async def test_seeded_providers_are_reproducible(self):
        first = default_providers(quote_latency_seconds=0.0, seed=11)
        second = default_providers(quote_latency_seconds=0.0, seed=11)

        quotes_a = await asyncio.gather(*(p.get_quote("SOL", "USDC", 1.0) for p in first))
        quotes_b = await asyncio.gather(*(p.get_quote("SOL", "USDC", 1.0) for p in second))

        assert [q.price for q in quotes_a] == [q.price for q in quotes_b]
