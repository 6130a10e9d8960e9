from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, Optional

import aiohttp


class ServiceError(Exception):
    def __init__(self, status: Optional[int], message: str) -> None:
        super().__init__(f'{status}: {message}' if status else message)
        self.status = status
        self.message = message


class RequestManager:
    def __init__(
        self,
        *,
        request_timeout: int = 10,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
        debug_logging: bool = False,
        service_settings: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> None:
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.debug_logging = debug_logging
        # per-service {'min_request_interval_ms', 'max_concurrent_requests'}
        self.service_settings = service_settings or {}
        self._service_last_request_at: Dict[str, float] = {}
        self._service_semaphore: Dict[str, asyncio.Semaphore] = {}

    def _throttle_for(self, service_name: str) -> tuple:
        cfg = self.service_settings.get(service_name) or self.service_settings.get('default') or {}
        try:
            min_interval_ms = float(cfg.get('min_request_interval_ms') or 0)
        except (TypeError, ValueError):
            min_interval_ms = 0.0
        try:
            max_concurrent = int(cfg.get('max_concurrent_requests') or 0)
        except (TypeError, ValueError):
            max_concurrent = 0
        return min_interval_ms, max_concurrent

    async def throttled_request(
        self,
        session: aiohttp.ClientSession,
        service_name: str,
        url: str,
        api_key: Optional[str],
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
        method: str = 'get',
        headers: Optional[Dict[str, str]] = None,
        raise_errors: bool = False,
    ):
        min_interval_ms, max_concurrent = self._throttle_for(service_name)

        # Rate limit by elapsed time between calls
        if min_interval_ms > 0:
            loop = asyncio.get_running_loop()
            last = self._service_last_request_at.get(service_name, 0.0)
            wait = (last + (min_interval_ms / 1000.0)) - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            self._service_last_request_at[service_name] = loop.time()

        kwargs = dict(
            params=params,
            json_data=json_data,
            method=method,
            headers=headers,
            request_timeout=self.request_timeout,
            retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff,
            debug_logging=self.debug_logging,
            raise_errors=raise_errors,
        )
        # Limit concurrency per service
        if max_concurrent > 0:
            sem = self._service_semaphore.get(service_name)
            if sem is None:
                sem = asyncio.Semaphore(max_concurrent)
                self._service_semaphore[service_name] = sem
            async with sem:
                return await make_api_request(session, url, api_key, **kwargs)
        return await make_api_request(session, url, api_key, **kwargs)


def is_service_configured(service_config: Dict[str, Any]) -> bool:
    return bool(service_config.get('api_url')) and bool(service_config.get('api_key'))


def _backoff(retry_backoff: float, attempts: int) -> float:
    return retry_backoff * (2 ** (attempts - 1)) * (1 + random.uniform(0, 0.25))


async def make_api_request(
    session: aiohttp.ClientSession,
    url: str,
    api_key: Optional[str],
    *,
    params: Optional[Dict[str, Any]] = None,
    json_data: Any = None,
    method: str = 'get',
    headers: Optional[Dict[str, str]] = None,
    request_timeout: int = 10,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
    debug_logging: bool = False,
    raise_errors: bool = False,
):
    import logging

    req_headers = {'Accept': 'application/json'}
    if api_key:
        req_headers['X-Api-Key'] = api_key
    if headers:
        req_headers.update(headers)
    attempts = 0
    while True:
        try:
            timeout = aiohttp.ClientTimeout(total=request_timeout)
            async with session.request(method, url, headers=req_headers, params=params, json=json_data, timeout=timeout) as response:
                response.raise_for_status()
                content_type = response.headers.get('Content-Type', '')
                if response.status != 204 and 'application/json' in content_type:
                    try:
                        return await response.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        # Fall back to status on empty/malformed body
                        pass
                if debug_logging:
                    logging.info(f'HTTP {method.upper()} {url} -> {response.status} (no content)')
                return {'status': response.status}
        except aiohttp.ClientResponseError as e:
            if e.status and (500 <= e.status < 600 or e.status == 429) and attempts < retry_attempts:
                attempts += 1
                sleep_for = _backoff(retry_backoff, attempts)
                if debug_logging:
                    logging.warning(f'HTTP {method.upper()} {url} {e.status}; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            if debug_logging:
                logging.error(f'HTTP {method.upper()} {url} error {e.status}: {e.message}')
            if raise_errors:
                raise ServiceError(e.status, f'{method.upper()} {url} failed: {e.message}') from e
            return None
        except (aiohttp.ClientConnectorError, aiohttp.ClientOSError, aiohttp.ServerTimeoutError, asyncio.TimeoutError) as e:
            if attempts < retry_attempts:
                attempts += 1
                sleep_for = _backoff(retry_backoff, attempts)
                if debug_logging:
                    logging.warning(f'HTTP {method.upper()} {url} network/timeout; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            if debug_logging:
                logging.error(f'HTTP {method.upper()} {url} network/timeout after {retry_attempts} retries: {e}')
            if raise_errors:
                raise ServiceError(None, f'{method.upper()} {url} unreachable: {e or type(e).__name__}') from e
            return None
        except aiohttp.ClientError as e:
            if debug_logging:
                logging.error(f'HTTP {method.upper()} {url} unexpected error: {e}')
            if raise_errors:
                raise ServiceError(None, f'{method.upper()} {url} failed: {e}') from e
            return None
