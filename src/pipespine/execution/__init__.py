"""Execution helpers: retry strategies with bounded backoff."""

from pipespine.execution.retry import ExponentialBackoff, NoRetry, RetryContext, RetryStrategy

__all__ = ["ExponentialBackoff", "NoRetry", "RetryContext", "RetryStrategy"]
