import time
import logging
from itertools import count
from typing import Callable, Dict, Any

import psutil
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.cache import cache, SLOW_REQUESTS_KEY

perf_logger = logging.getLogger("performance")

SLOW_REQUESTS_KEPT = 100


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Request ids, timing headers and a rolling log of slow API calls.

    Submissions and session starts are on the exam-taker's critical path, so
    any request over ``slow_request_threshold`` seconds is logged with its
    memory delta and appended to the cached slow-request list.
    """

    def __init__(self, app, slow_request_threshold: float = 1.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold
        self._ids = count(1)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.time()
        rss_before = psutil.Process().memory_info().rss
        request_id = f"req_{next(self._ids)}_{int(started)}"
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception as e:
            perf_logger.error(f"{request.method} {request.url.path} failed after {time.time() - started:.3f}s: {e}")
            raise

        elapsed = time.time() - started
        response.headers["X-Process-Time"] = str(round(elapsed, 4))
        response.headers["X-Request-ID"] = request_id

        if elapsed > self.slow_request_threshold:
            perf_logger.warning(
                f"Slow request {request_id}: {request.method} {request.url.path} "
                f"-> {response.status_code} in {elapsed:.3f}s"
            )
            await self._remember({
                'request_id': request_id,
                'method': request.method,
                'path': request.url.path,
                'status_code': response.status_code,
                'response_time': round(elapsed, 3),
                'memory_delta_mb': round((psutil.Process().memory_info().rss - rss_before) / (1024 * 1024), 2),
                'timestamp': started,
            })
        else:
            perf_logger.debug(f"{request.method} {request.url.path} -> {response.status_code} in {elapsed:.3f}s")
        return response

    async def _remember(self, entry: Dict[str, Any]):
        entries = await cache.aget(SLOW_REQUESTS_KEY) or []
        entries.append(entry)
        await cache.aset(SLOW_REQUESTS_KEY, entries[-SLOW_REQUESTS_KEPT:], ttl=86400)
