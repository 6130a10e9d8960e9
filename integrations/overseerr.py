from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List

import aiohttp

from core.utils import parse_datetime, safe_int
from integrations.services import ServiceError

MEDIA_KINDS = {'MOVIE': 'movie', 'TV_SERIES': 'tv'}
REQUEST_STATUS = {1: 'pending', 2: 'approved', 3: 'declined', 4: 'failed', 5: 'completed'}
MEDIA_AVAILABLE = 5
PAGE_SIZE = 100


class RequestBroker:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        request: Callable[..., Awaitable[Any]],
        *,
        name: str = 'Overseerr',
        debug_logging: bool = False,
    ) -> None:
        self.api_url = api_url.rstrip('/')
        self.api_key = api_key
        self.request = request
        self.name = name
        self.debug_logging = debug_logging

    async def list_requests(self, session: aiohttp.ClientSession, media_type: str) -> List[Dict[str, Any]]:
        wanted = MEDIA_KINDS.get(media_type)
        out: List[Dict[str, Any]] = []
        skip = 0
        while True:
            data = await self.request(
                session,
                self.name,
                f'{self.api_url}/request',
                self.api_key,
                params={'take': PAGE_SIZE, 'skip': skip, 'filter': 'all'},
                raise_errors=True,
            )
            results = data.get('results') if isinstance(data, dict) else None
            if not isinstance(results, list):
                # A login page or error body must not read as "no requests"
                raise ServiceError(None, f'{self.name}: unexpected request listing')
            for raw in results:
                media = raw.get('media') if isinstance(raw.get('media'), dict) else {}
                if media.get('mediaType') != wanted:
                    continue
                out.append(normalize_request(raw))
            total = safe_int((data.get('pageInfo') or {}).get('results')) or 0
            skip += PAGE_SIZE
            if not results or skip >= total:
                break
        if self.debug_logging:
            logging.info(f'Service {self.name}: {len(out)} request(s) for {media_type}')
        return out


def normalize_request(raw: Dict[str, Any]) -> Dict[str, Any]:
    media = raw.get('media') if isinstance(raw.get('media'), dict) else {}
    status = REQUEST_STATUS.get(safe_int(raw.get('status')) or 0)
    if status == 'approved' and safe_int(media.get('status')) == MEDIA_AVAILABLE:
        status = 'completed'
    user = raw.get('requestedBy') if isinstance(raw.get('requestedBy'), dict) else {}
    return {
        'tmdb': safe_int(media.get('tmdbId')) or None,
        'tvdb': safe_int(media.get('tvdbId')) or None,
        'facet': {
            'has_request': True,
            'status': status,
            'requested_by': user.get('displayName') or user.get('email'),
            'requested_at': parse_datetime(raw.get('createdAt')),
        },
    }
