from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from core.models import UnifiedMediaItem
from core.utils import normalize_title
from integrations.services import ServiceError

Fetcher = Callable[[], Awaitable[List[Dict[str, Any]]]]

SHARED_IDS = ('tmdb', 'tvdb', 'imdb')

# Returned by _Index.match when a title/year key maps to several records
AMBIGUOUS: Dict[str, Any] = {'ambiguous': True}


class SourceUnavailable(Exception):
    pass


class ReconcileError(Exception):
    pass


@dataclass
class ReconcileSources:
    # instance name -> fetcher of normalized library-manager records
    library: Dict[str, Fetcher]
    # each takes the media type (downloads take the instance names)
    downloads: Optional[Callable[[List[str]], Awaitable[List[Dict[str, Any]]]]] = None
    watch: Optional[Callable[[str], Awaitable[List[Dict[str, Any]]]]] = None
    server: Optional[Callable[[str], Awaitable[List[Dict[str, Any]]]]] = None
    requests: Optional[Callable[[str], Awaitable[List[Dict[str, Any]]]]] = None
    timeout: float = 60.0
    max_parallel: int = 4
    debug_logging: bool = False


@dataclass
class ReconcileResult:
    items: List[UnifiedMediaItem] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def title_key(title: Any, year: Any) -> Optional[Tuple[str, Any]]:
    norm = normalize_title(title)
    if not norm:
        return None
    return norm, year or None


class _Index:
    """Lookup of one source's records by shared identifier and title+year."""

    def __init__(self, source: str, records: List[Dict[str, Any]], id_keys: Tuple[str, ...], use_titles: bool = True) -> None:
        self.source = source
        self.by_id: Dict[Tuple[str, Any], Dict[str, Any]] = {}
        self.by_title: Dict[Tuple[str, Any], List[Dict[str, Any]]] = {}
        for rec in records:
            for k in id_keys:
                if rec.get(k):
                    self.by_id.setdefault((k, str(rec[k])), rec)
            if use_titles:
                tk = title_key(rec.get('title'), rec.get('year'))
                if tk is not None:
                    self.by_title.setdefault(tk, []).append(rec)

    def match(self, item: UnifiedMediaItem, id_keys: Tuple[str, ...], warnings: List[str]) -> Optional[Dict[str, Any]]:
        """The record linked to ``item``, None when nothing matches, or ``AMBIGUOUS``."""
        for k in id_keys:
            v = item.ids.get(k)
            if v and (k, str(v)) in self.by_id:
                return self.by_id[(k, str(v))]
        tk = title_key(item.title, item.year)
        if tk is None or tk not in self.by_title:
            return None
        found = self.by_title[tk]
        if len(found) > 1:
            warnings.append(
                f'{self.source}: ambiguous title/year match for "{item.title} ({item.year})" ({len(found)} records); not linked'
            )
            return AMBIGUOUS
        return found[0]


async def _fetch(name: str, call: Fetcher, sem: asyncio.Semaphore, timeout: float, warnings: List[str]):
    async with sem:
        try:
            return await asyncio.wait_for(call(), timeout)
        except asyncio.TimeoutError:
            warnings.append(f'{name}: timed out after {timeout:g}s')
        except (SourceUnavailable, ServiceError, aiohttp.ClientError) as e:
            warnings.append(f'{name}: unavailable ({e})')
        except Exception as e:
            # A malformed payload makes the source unknown, never the whole run
            logging.warning(f'Reconcile: {name} fetch failed: {e!r}')
            warnings.append(f'{name}: failed ({e.__class__.__name__}: {e})')
    return None


def never_watched_facet() -> Dict[str, Any]:
    return {'play_count': 0, 'last_watched_at': None}


def no_request_facet() -> Dict[str, Any]:
    return {'has_request': False, 'status': None, 'requested_by': None, 'requested_at': None}


def not_queued_facet() -> Dict[str, Any]:
    return {'in_queue': False, 'seeding': None, 'ratio': None}


async def reconcile(
    media_type: str,
    sources: ReconcileSources,
    *,
    instances: Optional[List[str]] = None,
    search: Optional[str] = None,
) -> ReconcileResult:
    """Merge the five sources into one item per library-manager record.

    The library manager is authoritative for which items exist; without at
    least one reachable instance the whole run fails. Other sources degrade to
    an unknown (``None``) facet plus a warning.
    """
    warnings: List[str] = []
    sem = asyncio.Semaphore(max(1, int(sources.max_parallel or 1)))
    names = list(instances) if instances else list(sources.library.keys())
    if not names:
        raise ReconcileError(f'no library manager configured for {media_type}')

    missing = [n for n in names if n not in sources.library]
    for n in missing:
        warnings.append(f'{n}: library manager not configured')
    available = [n for n in names if n in sources.library]
    fetched = await asyncio.gather(*[
        _fetch(n, sources.library[n], sem, sources.timeout, warnings) for n in available
    ])
    library_records: List[Dict[str, Any]] = []
    reached: List[str] = []
    for n, recs in zip(available, fetched):
        if recs is None:
            continue
        reached.append(n)
        library_records.extend(recs)
    if not reached:
        raise ReconcileError(f'library manager unavailable for {media_type}: ' + '; '.join(warnings))

    items: List[UnifiedMediaItem] = []
    needle = (search or '').strip().lower()
    for rec in library_records:
        title = rec.get('title') or ''
        if needle and needle not in title.lower():
            continue
        items.append(UnifiedMediaItem(
            media_type=media_type,
            title=title,
            year=rec.get('year'),
            ids={
                'instance': rec.get('instance'),
                'library_id': rec.get('library_id'),
                'tmdb': rec.get('tmdb'),
                'tvdb': rec.get('tvdb'),
                'imdb': rec.get('imdb'),
            },
            library=dict(rec.get('facet') or {}),
        ))

    async def _optional(label: str, fn, arg):
        if fn is None:
            warnings.append(f'{label}: not configured')
            return None
        return await _fetch(label, lambda: fn(arg), sem, sources.timeout, warnings)

    server_recs, watch_recs, request_recs, download_recs = await asyncio.gather(
        _optional('media server', sources.server, media_type),
        _optional('watch tracker', sources.watch, media_type),
        _optional('request broker', sources.requests, media_type),
        _optional('download manager', sources.downloads, reached),
    )

    server_idx = _Index('media server', server_recs, SHARED_IDS) if server_recs is not None else None
    watch_idx = _Index('watch tracker', watch_recs, ('rating_key',)) if watch_recs is not None else None
    request_idx = _Index('request broker', request_recs, ('tmdb', 'tvdb'), use_titles=False) if request_recs is not None else None
    downloads: Optional[Dict[Tuple[str, str], Dict[str, Any]]] = None
    if download_recs is not None:
        downloads = {}
        for rec in download_recs:
            key = (str(rec.get('instance')), str(rec.get('library_id')))
            _merge_download(downloads.setdefault(key, {'in_queue': True, 'seeding': None, 'ratio': None}), rec)

    for item in items:
        try:
            _merge_item(item, server_idx, watch_idx, request_idx, downloads, warnings)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            item.error = f'merge failed: {e}'
            if sources.debug_logging:
                logging.warning(f'Reconcile: {item.title}: {item.error}')

    return ReconcileResult(items=items, warnings=_dedupe(warnings))


def _merge_download(facet: Dict[str, Any], rec: Dict[str, Any]) -> None:
    facet.setdefault('download_ids', [])
    if rec.get('download_id'):
        facet['download_ids'].append(rec['download_id'])
    facet['status'] = facet.get('status') or rec.get('status')
    if rec.get('seeding') is not None:
        facet['seeding'] = bool(facet.get('seeding')) or bool(rec['seeding'])
    if rec.get('ratio') is not None:
        # Lowest ratio across the item's torrents
        current = facet.get('ratio')
        facet['ratio'] = rec['ratio'] if current is None else min(current, rec['ratio'])


def _merge_item(item, server_idx, watch_idx, request_idx, downloads, warnings) -> None:
    if server_idx is not None:
        rec = server_idx.match(item, SHARED_IDS, warnings)
        if rec is not None and rec is not AMBIGUOUS:
            item.server = dict(rec.get('facet') or {})
            if rec.get('rating_key'):
                item.ids['rating_key'] = rec['rating_key']
            for k in SHARED_IDS:
                if not item.ids.get(k) and rec.get(k):
                    item.ids[k] = rec[k]
    if watch_idx is not None:
        rec = watch_idx.match(item, ('rating_key',), warnings)
        if rec is AMBIGUOUS:
            # Linking either record could misreport plays; leave the facet unknown
            item.watch = None
        else:
            item.watch = dict(rec.get('facet') or {}) if rec is not None else never_watched_facet()
    if request_idx is not None:
        rec = request_idx.match(item, ('tmdb', 'tvdb'), warnings)
        item.request = dict(rec.get('facet') or {}) if rec is not None else no_request_facet()
    if downloads is not None:
        key = (str(item.ids.get('instance')), str(item.ids.get('library_id')))
        item.download = dict(downloads[key]) if key in downloads else not_queued_facet()


def _dedupe(warnings: List[str]) -> List[str]:
    seen = set()
    out = []
    for w in warnings:
        if w not in seen:
            seen.add(w)
            out.append(w)
    return out
