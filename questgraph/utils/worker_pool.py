"""Shared worker pools for bounded concurrent strategy branches."""

import atexit
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ..models.errors import UpstreamTimeoutError

_POOL_GUARD = threading.Lock()
_POOLS: Dict[Tuple[str, int], ThreadPoolExecutor] = {}


def _pool(pool_name: str, max_workers: int) -> ThreadPoolExecutor:
    key = (str(pool_name or 'default'), max(1, int(max_workers)))
    with _POOL_GUARD:
        ex = _POOLS.get(key)
        if ex is None:
            ex = ThreadPoolExecutor(max_workers=key[1], thread_name_prefix=f'questgraph-{key[0]}')
            _POOLS[key] = ex
        return ex


def shutdown_worker_pools(wait_for_running: bool = False) -> None:
    """Shutdown and clear shared thread pools."""
    with _POOL_GUARD:
        pools = list(_POOLS.values())
        _POOLS.clear()
    for ex in pools:
        ex.shutdown(wait=wait_for_running, cancel_futures=True)


atexit.register(shutdown_worker_pools)


def run_branches(branches: Mapping[str, Callable[[], Any]],
                 *,
                 timeout_seconds: Optional[float],
                 max_workers: int = 4,
                 pool_name: str = 'branches') -> Dict[str, Any]:
    """Start every branch at once and join them at a single deadline.

    Each value in the returned dict is either the branch's return value or the
    exception it raised. A branch still running at the deadline maps to an
    UpstreamTimeoutError; it keeps running in the pool and its eventual result
    is discarded.
    """
    if not branches:
        return {}

    ex = _pool(pool_name, max_workers)
    fut_to_name = {ex.submit(fn): name for name, fn in branches.items()}
    out: Dict[str, Any] = {}
    deadline = None if timeout_seconds is None else time.monotonic() + max(0.0, float(timeout_seconds))
    pending = set(fut_to_name)

    while pending:
        remaining = None if deadline is None else deadline - time.monotonic()
        if remaining is not None and remaining <= 0:
            break
        done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
        for fut in done:
            name = fut_to_name[fut]
            exc = fut.exception()
            out[name] = exc if exc is not None else fut.result()

    for fut in pending:
        fut.cancel()
        out[fut_to_name[fut]] = UpstreamTimeoutError(f'{fut_to_name[fut]} branch exceeded {timeout_seconds}s')

    return out


def call_with_timeout(fn: Callable[[], Any], timeout_seconds: Optional[float], name: str = 'call', max_workers: int = 4) -> Any:
    """Run one blocking call with a deadline; raises UpstreamTimeoutError or the call's own exception."""
    result = run_branches({name: fn}, timeout_seconds=timeout_seconds, max_workers=max_workers)[name]
    if isinstance(result, BaseException):
        raise result
    return result
