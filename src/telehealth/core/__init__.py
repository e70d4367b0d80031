"""Core primitives shared across the engine."""

from telehealth.core.result import Result, try_async_result, try_result

__all__ = ["Result", "try_async_result", "try_result"]
