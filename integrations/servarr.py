from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List

import aiohttp

from core.utils import parse_datetime, safe_int
from integrations.services import ServiceError

KINDS = ('radarr', 'sonarr')
MEDIA_TYPE_BY_KIND = {'radarr': 'MOVIE', 'sonarr': 'TV_SERIES'}


class LibraryManager:
    """Radarr/Sonarr v3 client used for library listings and maintenance commands."""

    def __init__(
        self,
        name: str,
        kind: str,
        api_url: str,
        api_key: str,
        request: Callable[..., Awaitable[Any]],
        *,
        debug_logging: bool = False,
    ) -> None:
        if kind not in KINDS:
            raise ValueError(f'unknown library manager kind {kind}')
        self.name = name
        self.kind = kind
        self.api_url = api_url.rstrip('/')
        self.api_key = api_key
        self.request = request
        self.debug_logging = debug_logging

    @property
    def media_type(self) -> str:
        return MEDIA_TYPE_BY_KIND[self.kind]

    @property
    def _resource(self) -> str:
        return 'movie' if self.kind == 'radarr' else 'series'

    async def _call(self, session: aiohttp.ClientSession, path: str, **kwargs) -> Any:
        return await self.request(
            session, self.name, f'{self.api_url}/{path}', self.api_key, raise_errors=True, **kwargs
        )

    async def tag_map(self, session: aiohttp.ClientSession) -> Dict[int, str]:
        data = await self._call(session, 'tag')
        out: Dict[int, str] = {}
        for t in data if isinstance(data, list) else []:
            tid = safe_int(t.get('id'))
            if tid is not None and t.get('label'):
                out[tid] = str(t['label'])
        return out

    async def list_items(self, session: aiohttp.ClientSession) -> List[Dict[str, Any]]:
        data = await self._call(session, self._resource)
        if not isinstance(data, list):
            raise ServiceError(None, f'{self.name}: unexpected {self._resource} listing')
        tags = await self.tag_map(session)
        records = [self._normalize(r, tags) for r in data if isinstance(r, dict)]
        if self.debug_logging:
            logging.info(f'Service {self.name}: {len(records)} {self._resource} record(s)')
        return records

    def _normalize(self, raw: Dict[str, Any], tags: Dict[int, str]) -> Dict[str, Any]:
        labels = [tags.get(t, str(t)) for t in raw.get('tags') or []]
        facet: Dict[str, Any] = {
            'monitored': bool(raw.get('monitored')),
            'tags': labels,
            'added_at': parse_datetime(raw.get('added')),
            'path': raw.get('path'),
            'status': (raw.get('status') or '').lower() or None,
            'quality_profile_id': raw.get('qualityProfileId'),
        }
        if self.kind == 'radarr':
            movie_file = raw.get('movieFile') if isinstance(raw.get('movieFile'), dict) else {}
            facet.update({
                'has_file': bool(raw.get('hasFile')),
                'size_on_disk': raw.get('sizeOnDisk') if raw.get('sizeOnDisk') is not None else movie_file.get('size'),
                'minimum_availability': (raw.get('minimumAvailability') or '').lower() or None,
            })
        else:
            stats = raw.get('statistics') if isinstance(raw.get('statistics'), dict) else {}
            facet.update({
                'has_file': bool(stats.get('episodeFileCount')),
                'size_on_disk': stats.get('sizeOnDisk'),
                'episode_file_count': stats.get('episodeFileCount'),
                'percent_of_episodes': stats.get('percentOfEpisodes'),
            })
        return {
            'instance': self.name,
            'library_id': raw.get('id'),
            'title': raw.get('title') or '',
            'year': safe_int(raw.get('year')) or None,
            'tmdb': safe_int(raw.get('tmdbId')) or None,
            'tvdb': safe_int(raw.get('tvdbId')) or None,
            'imdb': raw.get('imdbId') or None,
            'facet': facet,
        }

    async def list_queue(self, session: aiohttp.ClientSession) -> List[Dict[str, Any]]:
        first = await self._call(session, 'queue', params={'pageSize': 1})
        total_records = int((first or {}).get('totalRecords') or 0)
        if not total_records:
            return []
        page_size = min(total_records, 100) or 1
        pages = (total_records + page_size - 1) // page_size
        out: List[Dict[str, Any]] = []
        for page in range(pages):
            data = await self._call(session, 'queue', params={'page': page + 1, 'pageSize': page_size})
            for rec in (data or {}).get('records') or []:
                library_id = rec.get('movieId') if self.kind == 'radarr' else rec.get('seriesId')
                out.append({
                    'instance': self.name,
                    'library_id': library_id,
                    'download_id': rec.get('downloadId'),
                    'status': (rec.get('status') or '').lower() or None,
                    'protocol': rec.get('protocol'),
                    'size': rec.get('size'),
                    'sizeleft': rec.get('sizeleft'),
                })
        return out

    async def set_monitored(self, session: aiohttp.ClientSession, library_id: Any, monitored: bool) -> None:
        path = f'{self._resource}/{library_id}'
        current = await self._call(session, path)
        if not isinstance(current, dict):
            raise ServiceError(None, f'{self.name}: {self._resource} {library_id} not found')
        current['monitored'] = monitored
        await self._call(session, path, method='put', json_data=current)

    async def delete_item(self, session: aiohttp.ClientSession, library_id: Any, delete_files: bool = True) -> None:
        params = {'deleteFiles': 'true' if delete_files else 'false'}
        await self._call(session, f'{self._resource}/{library_id}', method='delete', params=params)

    async def delete_files(self, session: aiohttp.ClientSession, library_id: Any) -> int:
        if self.kind == 'radarr':
            files = await self._call(session, 'moviefile', params={'movieId': library_id})
            count = 0
            for f in files if isinstance(files, list) else []:
                await self._call(session, f'moviefile/{f["id"]}', method='delete')
                count += 1
            return count
        files = await self._call(session, 'episodefile', params={'seriesId': library_id})
        ids = [f['id'] for f in files if isinstance(f, dict) and 'id' in f] if isinstance(files, list) else []
        if ids:
            await self._call(session, 'episodefile/bulk', method='delete', json_data={'episodeFileIds': ids})
        return len(ids)


def build_library_managers(
    cfg_services: Dict[str, Dict[str, Any]],
    request: Callable[..., Awaitable[Any]],
    *,
    debug_logging: bool = False,
) -> Dict[str, LibraryManager]:
    out: Dict[str, LibraryManager] = {}
    for name, svc in cfg_services.items():
        kind = str(svc.get('kind') or '').lower()
        if kind not in KINDS or not svc.get('api_url') or not svc.get('api_key'):
            if debug_logging:
                logging.info(f'Service {name}: configuration incomplete; skipping')
            continue
        out[name] = LibraryManager(name, kind, svc['api_url'], svc['api_key'], request, debug_logging=debug_logging)
    return out

