from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List

import aiohttp

from core.utils import parse_datetime, safe_int
from integrations.services import ServiceError

SECTION_TYPES = {'MOVIE': 'movie', 'TV_SERIES': 'show'}
MAX_LIBRARY_ITEMS = 10000


class WatchTracker:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        request: Callable[..., Awaitable[Any]],
        *,
        name: str = 'Tautulli',
        debug_logging: bool = False,
    ) -> None:
        self.api_url = api_url.rstrip('/')
        self.api_key = api_key
        self.request = request
        self.name = name
        self.debug_logging = debug_logging

    async def _cmd(self, session: aiohttp.ClientSession, cmd: str, **params) -> Any:
        query = {'apikey': self.api_key, 'cmd': cmd, **params}
        data = await self.request(session, self.name, f'{self.api_url}/api/v2', None, params=query, raise_errors=True)
        resp = (data or {}).get('response') if isinstance(data, dict) else None
        if not isinstance(resp, dict) or resp.get('result') != 'success':
            message = resp.get('message') if isinstance(resp, dict) else None
            raise ServiceError(None, f'{self.name} {cmd} failed: {message or "unexpected response"}')
        return resp.get('data')

    async def list_sections(self, session: aiohttp.ClientSession, media_type: str) -> List[str]:
        wanted = SECTION_TYPES.get(media_type)
        libraries = await self._cmd(session, 'get_libraries')
        return [
            str(lib.get('section_id'))
            for lib in (libraries if isinstance(libraries, list) else [])
            if isinstance(lib, dict) and lib.get('section_type') == wanted
        ]

    async def list_history(self, session: aiohttp.ClientSession, media_type: str) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for section_id in await self.list_sections(session, media_type):
            data = await self._cmd(session, 'get_library_media_info', section_id=section_id, length=MAX_LIBRARY_ITEMS)
            rows = data.get('data') if isinstance(data, dict) else []
            for row in rows or []:
                if isinstance(row, dict):
                    out.append(normalize_media_info(row, section_id))
        if self.debug_logging:
            logging.info(f'Service {self.name}: {len(out)} watch record(s) for {media_type}')
        return out


def normalize_media_info(row: Dict[str, Any], section_id: str) -> Dict[str, Any]:
    last_played = safe_int(row.get('last_played'))
    return {
        'rating_key': str(row.get('rating_key')) if row.get('rating_key') else None,
        'title': row.get('title') or '',
        'year': safe_int(row.get('year')) or None,
        'section_id': section_id,
        'facet': {
            'play_count': safe_int(row.get('play_count')) or 0,
            'last_watched_at': parse_datetime(last_played) if last_played else None,
            'resolution': (str(row.get('video_resolution')).lower() if row.get('video_resolution') else None),
            'video_codec': (str(row.get('video_codec')).lower() if row.get('video_codec') else None),
            'file_size': safe_int(row.get('file_size')),
        },
    }
