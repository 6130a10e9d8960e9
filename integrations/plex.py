from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from core.utils import parse_datetime, safe_int

SECTION_TYPES = {'MOVIE': 'movie', 'TV_SERIES': 'show'}


def _tags(raw: Dict[str, Any], key: str) -> List[str]:
    return [str(t.get('tag')) for t in raw.get(key) or [] if isinstance(t, dict) and t.get('tag')]


def parse_guids(raw: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for g in raw.get('Guid') or []:
        gid = str(g.get('id') or '') if isinstance(g, dict) else ''
        scheme, _, value = gid.partition('://')
        if scheme in ('tmdb', 'tvdb'):
            out[scheme] = safe_int(value)
        elif scheme == 'imdb' and value:
            out['imdb'] = value
    return out


class MediaServer:
    def __init__(
        self,
        base_url: str,
        token: str,
        request: Callable[..., Awaitable[Any]],
        *,
        name: str = 'Plex',
        debug_logging: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.request = request
        self.name = name
        self.debug_logging = debug_logging

    async def _get(self, session: aiohttp.ClientSession, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = await self.request(
            session,
            self.name,
            f'{self.base_url}{path}',
            None,
            params=params,
            headers={'X-Plex-Token': self.token},
            raise_errors=True,
        )
        return (data or {}).get('MediaContainer') or {}

    async def list_items(self, session: aiohttp.ClientSession, media_type: str) -> List[Dict[str, Any]]:
        wanted = SECTION_TYPES.get(media_type)
        container = await self._get(session, '/library/sections')
        out: List[Dict[str, Any]] = []
        for directory in container.get('Directory') or []:
            if directory.get('type') != wanted:
                continue
            key = str(directory.get('key'))
            section = await self._get(session, f'/library/sections/{key}/all', {'includeGuids': 1})
            for raw in section.get('Metadata') or []:
                out.append(normalize_metadata(raw, key))
        if self.debug_logging:
            logging.info(f'Service {self.name}: {len(out)} server item(s) for {media_type}')
        return out


def normalize_metadata(raw: Dict[str, Any], section_key: str) -> Dict[str, Any]:
    return {
        'rating_key': str(raw.get('ratingKey')) if raw.get('ratingKey') else None,
        'title': raw.get('title') or '',
        'year': safe_int(raw.get('year')) or None,
        **parse_guids(raw),
        'facet': {
            'library_id': section_key,
            'view_count': safe_int(raw.get('viewCount')) or 0,
            'last_viewed_at': parse_datetime(safe_int(raw.get('lastViewedAt'))) if raw.get('lastViewedAt') else None,
            'rating': raw.get('userRating'),
            'audience_rating': raw.get('audienceRating'),
            'content_rating': raw.get('contentRating'),
            'genres': _tags(raw, 'Genre'),
            'labels': _tags(raw, 'Label'),
            'collections': _tags(raw, 'Collection'),
        },
    }
