"""
Tests package for the DEX order execution engine

This package contains all test files organized by component.
"""

# Test organization:
# - test_order_schemas.py: Request validation and lifecycle transitions
# - test_order_store.py: SQLAlchemy repository, snapshot cache, state store
# - test_dex_router.py: Quote routing and simulated providers
# - test_event_bus.py: Status update fan-out and buffered streams
# - test_job_queue.py: Dedup, priority, retry with backoff
# - test_rate_limiter_worker_pool.py: Rate limit, bounded workers, shutdown
# - test_execution_pipeline.py: One routing/execution attempt
# - test_execution_engine.py: End-to-end order scenarios
# - test_api.py: HTTP/WebSocket transport and client
# - test_latency_monitor.py: Stage timers and rolling statistics
# - test_config.py: Environment configuration and logging setup
