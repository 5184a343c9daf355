"""
Timeout Guard for Blocking Collaborator Calls

Runs a blocking callable on a shared worker pool and waits at most
``timeout`` seconds. On expiry the caller gets TimeoutError while the
worker is left to finish the in-flight request on its own.
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

_POOL = ThreadPoolExecutor(max_workers=16, thread_name_prefix="horus-io")


class CallTimeout(TimeoutError):
    """An external call exceeded its deadline."""


def call_with_timeout(fn: Callable[..., Any], timeout: Optional[float], *args, **kwargs) -> Any:
    """Invoke ``fn(*args, **kwargs)`` with a deadline; ``timeout=None`` waits indefinitely."""
    if timeout is None:
        return fn(*args, **kwargs)
    future = _POOL.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        raise CallTimeout(f"{getattr(fn, '__name__', 'call')} timed out after {timeout:.1f}s") from None
