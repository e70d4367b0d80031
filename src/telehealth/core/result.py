"""
Explicit success/failure result type.

Business operations return a ``Result`` instead of raising for expected
outcomes (duplicate subscription, illegal transition, declined card).
Exceptions are reserved for infrastructure faults.
"""

from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")


class Result(Generic[T]):
    """Either a success carrying ``value`` or a failure carrying ``error``."""

    __slots__ = ("_value", "_error", "_ok")

    def __init__(self, value: T | None = None, error: Any = None, ok: bool = True) -> None:
        self._value = value
        self._error = error
        self._ok = ok

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value, ok=True)

    @classmethod
    def failure(cls, error: Any) -> "Result[T]":
        return cls(error=error, ok=False)

    @property
    def is_success(self) -> bool:
        return self._ok

    @property
    def is_failure(self) -> bool:
        return not self._ok

    @property
    def value(self) -> T | None:
        return self._value if self._ok else None

    @property
    def error(self) -> Any:
        return None if self._ok else self._error

    @property
    def error_code(self) -> str | None:
        """Machine-readable failure kind, when the error carries one."""
        if self._ok:
            return None
        return getattr(self._error, "error_code", None)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self._ok:
            return self._value  # type: ignore[return-value]
        if isinstance(self._error, BaseException):
            raise self._error
        raise RuntimeError(str(self._error))

    def unwrap_or(self, default: T) -> T:
        return self._value if self._ok else default  # type: ignore[return-value]

    def unwrap_or_else(self, fn: Callable[[Any], T]) -> T:
        return self._value if self._ok else fn(self._error)  # type: ignore[return-value]

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        if not self._ok:
            return Result.failure(self._error)
        try:
            return Result.success(fn(self._value))  # type: ignore[arg-type]
        except Exception as exc:
            return Result.failure(exc)

    def map_error(self, fn: Callable[[Any], Any]) -> "Result[T]":
        if self._ok:
            return self
        return Result.failure(fn(self._error))

    def and_then(self, fn: Callable[[T], "Result[U]"]) -> "Result[U]":
        if not self._ok:
            return Result.failure(self._error)
        try:
            return fn(self._value)  # type: ignore[arg-type]
        except Exception as exc:
            return Result.failure(exc)

    def or_else(self, fn: Callable[[Any], "Result[T]"]) -> "Result[T]":
        if self._ok:
            return self
        try:
            return fn(self._error)
        except Exception as exc:
            return Result.failure(exc)

    def to_dict(self) -> dict[str, Any]:
        if self._ok:
            return {"success": True, "value": self._value}
        error = self._error
        payload: dict[str, Any] = {"success": False, "error": str(error)}
        if hasattr(error, "to_dict"):
            payload["details"] = error.to_dict()
        return payload

    def __bool__(self) -> bool:
        return self._ok

    def __repr__(self) -> str:
        if self._ok:
            return f"Result.success({self._value!r})"
        return f"Result.failure({self._error!r})"


def try_result(fn: Callable[..., T]) -> Callable[..., Result[T]]:
    """Decorator turning raised exceptions into failed results."""

    @wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Result[T]:
        try:
            return Result.success(fn(*args, **kwargs))
        except Exception as exc:
            return Result.failure(exc)

    return wrapper


async def try_async_result(awaitable: Awaitable[T]) -> Result[T]:
    """Await ``awaitable`` and wrap its outcome in a result."""
    try:
        return Result.success(await awaitable)
    except Exception as exc:
        return Result.failure(exc)
