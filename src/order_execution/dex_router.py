"""
DEX Router - Best-quote routing across liquidity providers

Features:
- Pluggable Provider interface (real backends or simulations)
- Concurrent quote fan-out; latency is the slowest provider, not the sum
- Deterministic best-quote selection (highest output, registration order on ties)
- Slippage guard on execution

The simulated providers reproduce the behaviour of the Raydium and Meteora
pools used during development: jittered prices around a base price,
200ms quotes, multi-second swaps and an occasional failed submission.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Union

from loguru import logger

from .errors import ExecutionError, RoutingError, SlippageExceededError
from .order_schemas import ExecutionResult, Quote

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
TX_HASH_LENGTH = 88


def generate_mock_tx_hash(rng: Optional[random.Random] = None) -> str:
    """Generate a Solana-style base58 transaction signature"""
    rng = rng or random
    return "".join(rng.choice(BASE58_ALPHABET) for _ in range(TX_HASH_LENGTH))


class Provider(ABC):
    """
    Price and execution source compared by the router

    ``submit_swap`` reports what actually executed; the router, not the
    provider, decides whether the result is within tolerance.
    """

    name: str = ""

    @abstractmethod
    async def get_quote(self, token_in: str, token_out: str, amount: float) -> Quote:
        """Quote ``amount`` of ``token_in`` into ``token_out``"""
        pass

    @abstractmethod
    async def submit_swap(self, token_in: str, token_out: str, amount: float,
                          expected_out: float) -> ExecutionResult:
        """Execute the swap; raise ExecutionError on downstream failure"""
        pass


@dataclass
class SimulatedProviderConfig:
    """Behaviour of a simulated provider"""

    name: str
    fee: float
    price_band: Tuple[float, float]           # Multipliers applied to the base price
    liquidity_depth: float
    estimated_slippage: float
    base_price: float = 100.0
    quote_latency_seconds: float = 0.2
    execution_latency_seconds: Tuple[float, float] = (2.0, 3.0)
    price_impact_band: Tuple[float, float] = (0.998, 1.002)
    failure_rate: float = 0.05


RAYDIUM = SimulatedProviderConfig(
    name="Raydium",
    fee=0.003,
    price_band=(0.98, 1.02),
    liquidity_depth=50000,
    estimated_slippage=0.002,
)

METEORA = SimulatedProviderConfig(
    name="Meteora",
    fee=0.002,
    price_band=(0.97, 1.02),
    liquidity_depth=75000,
    estimated_slippage=0.001,
)


class SimulatedProvider(Provider):
    """Randomized stand-in for an on-chain pool"""

    def __init__(self, config: SimulatedProviderConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.name = config.name
        self.rng = rng or random.Random()

    async def get_quote(self, token_in: str, token_out: str, amount: float) -> Quote:
        config = self.config
        await asyncio.sleep(config.quote_latency_seconds)

        low, high = config.price_band
        price = config.base_price * self.rng.uniform(low, high)
        return Quote(
            provider=self.name,
            price=price,
            amount_out=amount * price * (1 - config.fee),
            fee=config.fee,
            liquidity_depth=config.liquidity_depth,
            estimated_slippage=config.estimated_slippage,
        )

    async def submit_swap(self, token_in: str, token_out: str, amount: float,
                          expected_out: float) -> ExecutionResult:
        config = self.config
        await asyncio.sleep(self.rng.uniform(*config.execution_latency_seconds))

        if self.rng.random() < config.failure_rate:
            raise ExecutionError(f"{self.name}: transaction simulation failed")

        amount_out = expected_out * self.rng.uniform(*config.price_impact_band)
        return ExecutionResult(
            tx_hash=generate_mock_tx_hash(self.rng),
            executed_price=amount_out / amount,
            amount_out=amount_out,
            provider=self.name,
        )


def default_providers(quote_latency_seconds: float = 0.2,
                      execution_latency_seconds: Tuple[float, float] = (2.0, 3.0),
                      failure_rate: float = 0.05,
                      seed: Optional[int] = None) -> List[Provider]:
    """Raydium and Meteora simulations, in registration order"""
    rng = random.Random(seed)
    providers = []
    for preset in (RAYDIUM, METEORA):
        config = SimulatedProviderConfig(
            name=preset.name,
            fee=preset.fee,
            price_band=preset.price_band,
            liquidity_depth=preset.liquidity_depth,
            estimated_slippage=preset.estimated_slippage,
            base_price=preset.base_price,
            quote_latency_seconds=quote_latency_seconds,
            execution_latency_seconds=execution_latency_seconds,
            price_impact_band=preset.price_impact_band,
            failure_rate=failure_rate,
        )
        providers.append(SimulatedProvider(config, random.Random(rng.random())))
    return providers


class QuoteRouter:
    """
    Routes orders to the provider offering the best output

    Providers are compared in registration order, which is also the
    tie-break order.
    """

    def __init__(self, providers: Iterable[Provider] = ()):
        self._providers: Dict[str, Provider] = {}
        for provider in providers:
            self.register_provider(provider)

    def register_provider(self, provider: Provider) -> None:
        if not provider.name:
            raise ValueError("Provider must have a name")
        if provider.name in self._providers:
            raise ValueError(f"Provider {provider.name} already registered")
        self._providers[provider.name] = provider

    @property
    def provider_names(self) -> List[str]:
        return list(self._providers)

    def get_provider(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            raise RoutingError(f"Unknown provider: {name}")

    async def best_quote(self, token_in: str, token_out: str,
                         amount: float) -> Tuple[Quote, List[Quote]]:
        """
        Query every provider concurrently and pick the best quote

        Providers that fail are logged and left out of the comparison.

        Returns:
            (best quote, all quotes received in registration order)

        Raises:
            RoutingError: no provider returned a quote
        """
        if not self._providers:
            raise RoutingError("No providers registered")

        providers = list(self._providers.values())
        responses = await asyncio.gather(
            *(provider.get_quote(token_in, token_out, amount) for provider in providers),
            return_exceptions=True,
        )

        quotes: List[Quote] = []
        for provider, response in zip(providers, responses):
            if isinstance(response, BaseException):
                if isinstance(response, asyncio.CancelledError):
                    raise response
                logger.warning(f"Quote from {provider.name} failed: {response}")
                continue
            quotes.append(response)

        if not quotes:
            raise RoutingError(f"No quotes available for {token_in}->{token_out}")

        best = quotes[0]
        for quote in quotes[1:]:
            # Strictly greater, so ties keep the earlier provider
            if quote.amount_out > best.amount_out:
                best = quote
        return best, quotes

    async def execute_on_provider(self, provider: Union[str, Provider], token_in: str,
                                  token_out: str, amount: float, expected_out: float,
                                  max_slippage: float) -> ExecutionResult:
        """
        Execute on a provider and enforce the slippage tolerance

        Raises:
            SlippageExceededError: realized output below expected by more than max_slippage
            ExecutionError: provider or network failure
        """
        if isinstance(provider, str):
            provider = self.get_provider(provider)
        if expected_out <= 0:
            raise ExecutionError(f"Expected output must be positive, got {expected_out}")

        try:
            result = await provider.submit_swap(token_in, token_out, amount, expected_out)
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"{provider.name}: {e}") from e

        if (expected_out - result.amount_out) / expected_out > max_slippage:
            raise SlippageExceededError(expected_out, result.amount_out, max_slippage)

        return result
