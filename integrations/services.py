from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, Optional

import aiohttp

from core.errors import ArrRequestError

logger = logging.getLogger(__name__)

RETRYABLE_NETWORK_ERRORS = (
    aiohttp.ClientConnectorError,
    aiohttp.ClientOSError,
    aiohttp.ServerTimeoutError,
    asyncio.TimeoutError,
)


class RequestManager:
    """Per-instance request pacing and concurrency limits."""

    def __init__(self, *, min_interval_ms: float = 0.0, max_concurrent: int = 0) -> None:
        self.min_interval_ms = min_interval_ms
        self.max_concurrent = max_concurrent
        self._last_request_at: Dict[str, float] = {}
        self._semaphore: Dict[str, asyncio.Semaphore] = {}

    async def throttled_request(
        self,
        session: aiohttp.ClientSession,
        instance_id: str,
        url: str,
        api_key: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
        method: str = 'get',
        request_timeout: int = 10,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
    ):
        # Rate limit by elapsed time between calls
        if self.min_interval_ms and self.min_interval_ms > 0:
            loop = asyncio.get_running_loop()
            last = self._last_request_at.get(instance_id, 0.0)
            wait = (last + (self.min_interval_ms / 1000.0)) - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_at[instance_id] = loop.time()

        kwargs = dict(
            params=params,
            json_data=json_data,
            method=method,
            request_timeout=request_timeout,
            retry_attempts=retry_attempts,
            retry_backoff=retry_backoff,
        )
        # Limit concurrency per instance
        if self.max_concurrent and self.max_concurrent > 0:
            sem = self._semaphore.get(instance_id)
            if sem is None:
                sem = asyncio.Semaphore(self.max_concurrent)
                self._semaphore[instance_id] = sem
            async with sem:
                return await make_api_request(session, url, api_key, **kwargs)
        return await make_api_request(session, url, api_key, **kwargs)


def _backoff(retry_backoff: float, attempt: int) -> float:
    return retry_backoff * (2 ** (attempt - 1)) * (1 + random.uniform(0, 0.25))


async def make_api_request(
    session: aiohttp.ClientSession,
    url: str,
    api_key: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    json_data: Any = None,
    method: str = 'get',
    request_timeout: int = 10,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
):
    """Perform one *arr API call bounded by ``request_timeout`` seconds.

    5xx/429 and network/timeout errors are retried with jittered exponential
    backoff. Returns the decoded JSON body, or ``{'status': code}`` for empty
    responses. Raises :class:`ArrRequestError` once retries are exhausted or
    on any other non-2xx status.
    """
    headers = {'X-Api-Key': api_key}
    verb = method.upper()
    attempts = 0
    while True:
        try:
            timeout = aiohttp.ClientTimeout(total=request_timeout)
            async with session.request(method, url, headers=headers, params=params, json=json_data, timeout=timeout) as response:
                if response.status >= 400:
                    body = await response.text()
                    retryable = 500 <= response.status < 600 or response.status == 429
                    if retryable and attempts < retry_attempts:
                        attempts += 1
                        sleep_for = _backoff(retry_backoff, attempts)
                        logger.warning(f'HTTP {verb} {url} {response.status}; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                        await asyncio.sleep(sleep_for)
                        continue
                    detail = (body or response.reason or '').strip()[:200]
                    raise ArrRequestError(f'HTTP {response.status}: {detail}' if detail else f'HTTP {response.status}', response.status)
                content_type = response.headers.get('Content-Type', '')
                if response.status != 204 and 'application/json' in content_type:
                    text = await response.text()
                    if text.strip():
                        try:
                            return await response.json()
                        except (aiohttp.ContentTypeError, ValueError):
                            logger.debug(f'HTTP {verb} {url} -> {response.status} (malformed JSON body)')
                logger.debug(f'HTTP {verb} {url} -> {response.status} (no content)')
                return {'status': response.status}
        except RETRYABLE_NETWORK_ERRORS as e:
            if attempts < retry_attempts:
                attempts += 1
                sleep_for = _backoff(retry_backoff, attempts)
                logger.warning(f'HTTP {verb} {url} network/timeout; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            label = 'timed out' if isinstance(e, asyncio.TimeoutError) else f'network error: {e}'
            raise ArrRequestError(f'HTTP {verb} {url} {label}') from e
        except aiohttp.ClientError as e:
            raise ArrRequestError(f'HTTP {verb} {url} failed: {e}') from e
