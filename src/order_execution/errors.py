"""
Error kinds raised by the order execution core

Every error carries a ``retryable`` flag that the job queue consults when an
attempt fails: retryable errors consume an attempt and are re-scheduled with
backoff, non-retryable ones terminate the job immediately.
"""


class OrderEngineError(Exception):
    """Base exception for the order execution core"""
    retryable = False


class NotFoundError(OrderEngineError):
    """Unknown order id"""

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class ValidationError(OrderEngineError):
    """Malformed order creation request"""
    pass


class InvalidTransitionError(OrderEngineError):
    """Requested status change is not allowed from the current status"""
    pass


class ExecutionError(OrderEngineError):
    """Downstream or network failure while routing or executing an order"""
    retryable = True


class RoutingError(ExecutionError):
    """No provider produced a usable quote"""
    pass


class SlippageExceededError(ExecutionError):
    """Realized output fell below the expected output by more than the tolerance"""

    def __init__(self, expected_out: float, realized_out: float, max_slippage: float):
        deviation = (expected_out - realized_out) / expected_out
        super().__init__(
            f"Slippage tolerance exceeded: {deviation:.4%} > {max_slippage:.4%}"
        )
        self.expected_out = expected_out
        self.realized_out = realized_out
        self.max_slippage = max_slippage
        self.deviation = deviation


class UnsupportedOrderTypeError(ExecutionError):
    """Order kind has no execution strategy"""
    retryable = False


class QueueFullOrDuplicateError(OrderEngineError):
    """Order id already in flight, already known, or the queue is at capacity"""
    pass


class ConfigError(ValueError):
    """Invalid environment configuration"""
    pass
