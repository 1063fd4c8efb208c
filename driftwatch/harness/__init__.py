"""Runtime harness — timeouts and retries around external calls."""
from driftwatch.harness.retry import RetryConfig, compute_delay, is_retryable_error, with_retries

__all__ = ["RetryConfig", "compute_delay", "is_retryable_error", "with_retries"]
