"""
Execution Pipeline - Runs one attempt of an order

ROUTING -> BUILDING -> SUBMITTED -> CONFIRMED, or FAILED on any error.
Each stage is recorded through the order state store before the work of
that stage starts, so subscribers see intent as well as outcome. Failures
are recorded on the order and re-raised for the job queue to retry.
"""

from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from .dex_router import QuoteRouter
from .errors import UnsupportedOrderTypeError
from .latency_monitor import LatencyMonitor
from .order_schemas import ExecutionResult, Order, OrderStatus, OrderType, quotes_to_dicts
from .order_store import OrderStateStore


class ExecutionPipeline:
    """Routes, builds, submits and confirms one order attempt"""

    def __init__(self, store: OrderStateStore, router: QuoteRouter,
                 latency_monitor: Optional[LatencyMonitor] = None):
        self.store = store
        self.router = router
        self.latency_monitor = latency_monitor or LatencyMonitor()

        # Order kinds without a strategy fail their attempt
        self._strategies: Dict[OrderType, Callable[[Order], Awaitable[ExecutionResult]]] = {
            OrderType.MARKET: self._execute_market_order,
        }

    async def run(self, order: Order) -> ExecutionResult:
        """
        Execute one attempt for ``order``

        The stored order is re-read first; the queued snapshot may be stale
        after earlier attempts.

        Raises:
            NotFoundError: the order no longer exists
            ExecutionError: routing or execution failed (order is FAILED)
        """
        order = await self.store.get_order(order.id)
        strategy = self._strategies.get(order.order_type)

        self.latency_monitor.start_timer(order.id, "end_to_end")
        try:
            if strategy is None:
                if order.status == OrderStatus.FAILED:
                    # A resubmitted attempt re-enters the lifecycle before failing again
                    await self.store.update_status(order.id, OrderStatus.ROUTING, payload={
                        'message': f"Routing {order.order_type.value} order...",
                    })
                raise UnsupportedOrderTypeError(
                    f"{order.order_type.value} orders are not supported yet"
                )
            result = await strategy(order)
        except Exception as e:
            await self._record_failure(order, e)
            raise
        finally:
            self.latency_monitor.stop_timer(order.id, "end_to_end")

        return result

    async def _execute_market_order(self, order: Order) -> ExecutionResult:
        short_id = order.short_id
        providers = ", ".join(self.router.provider_names)

        # Phase 1: routing
        logger.info(f"[{short_id}] Phase 1: Routing - comparing {providers}")
        await self.store.update_status(order.id, OrderStatus.ROUTING, payload={
            'message': f"Comparing prices from {providers}...",
        })
        self.latency_monitor.start_timer(order.id, "routing")
        try:
            best, quotes = await self.router.best_quote(order.token_in, order.token_out, order.amount_in)
        finally:
            self.latency_monitor.stop_timer(order.id, "routing")

        worst_out = min(quote.amount_out for quote in quotes)
        price_difference = best.amount_out - worst_out
        for quote in quotes:
            logger.info(f"[{short_id}]   {quote.provider}: {quote.amount_out:.4f} {order.token_out} "
                        f"(fee: {quote.fee * 100:.2f}%)")
        logger.info(f"[{short_id}]   Winner: {best.provider} "
                    f"(better by {price_difference:.4f} {order.token_out})")

        # Phase 2: building
        logger.info(f"[{short_id}] Phase 2: Building transaction for {best.provider}")
        await self.store.update_status(order.id, OrderStatus.BUILDING,
                                       fields={'selected_provider': best.provider},
                                       payload={
                                           'message': f"Building transaction for {best.provider}...",
                                           'expected_output': best.amount_out,
                                           'quotes': quotes_to_dicts(quotes),
                                           'price_difference': price_difference,
                                       })

        # Phase 3: submission
        logger.info(f"[{short_id}] Phase 3: Submitting transaction via {best.provider}")
        await self.store.update_status(order.id, OrderStatus.SUBMITTED, payload={
            'message': f"Transaction submitted via {best.provider}...",
        })
        self.latency_monitor.start_timer(order.id, "execution")
        try:
            result = await self.router.execute_on_provider(
                best.provider,
                order.token_in,
                order.token_out,
                order.amount_in,
                best.amount_out,
                order.slippage,
            )
        finally:
            self.latency_monitor.stop_timer(order.id, "execution")

        # Phase 4: confirmation
        price_impact = (result.executed_price - best.price) / best.price * 100
        await self.store.update_status(order.id, OrderStatus.CONFIRMED,
                                       fields={
                                           'amount_out': result.amount_out,
                                           'execution_price': result.executed_price,
                                           'tx_hash': result.tx_hash,
                                       },
                                       payload={
                                           'message': 'Transaction confirmed',
                                           'tx_hash': result.tx_hash,
                                           'execution_price': result.executed_price,
                                           'amount_in': order.amount_in,
                                           'amount_out': result.amount_out,
                                           'price_impact': f"{price_impact:.2f}%",
                                       })
        logger.info(f"[{short_id}] Phase 4: Confirmed {result.amount_out:.4f} {order.token_out} "
                    f"@ {result.executed_price:.4f} ({result.tx_hash[:12]}...)")
        return result

    async def _record_failure(self, order: Order, error: Exception) -> None:
        """Move the order to FAILED; never masks the original error"""
        message = str(error) or error.__class__.__name__
        logger.error(f"[{order.short_id}] Order failed: {message}")
        try:
            await self.store.update_status(order.id, OrderStatus.FAILED,
                                           fields={
                                               'error_message': message,
                                               'retry_count': order.retry_count + 1,
                                           },
                                           payload={'message': f"Order failed: {message}"})
        except Exception:
            logger.exception(f"[{order.short_id}] Could not record failure")
