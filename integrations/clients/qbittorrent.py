from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

SEEDING_STATES = ('uploading', 'stalledUP', 'forcedUP', 'queuedUP', 'checkingUP', 'pausedUP', 'stoppedUP')
ACTIVE_SEEDING_STATES = ('uploading', 'stalledUP', 'forcedUP', 'queuedUP', 'checkingUP')


async def qbittorrent_login(
    session: aiohttp.ClientSession,
    base_url: str,
    username: str,
    password: str,
) -> bool:
    login_url = base_url.rstrip('/') + '/api/v2/auth/login'
    form = aiohttp.FormData()
    form.add_field('username', username)
    form.add_field('password', password)
    resp = await session.post(login_url, data=form, timeout=aiohttp.ClientTimeout(total=5))
    return getattr(resp, 'status', None) == 200


async def qbittorrent_get_torrents(
    session: aiohttp.ClientSession,
    base_url: str,
    username: str,
    password: str,
    info_hashes: List[str],
) -> Optional[List[Dict[str, Any]]]:
    if not info_hashes:
        return []
    try:
        if not await qbittorrent_login(session, base_url, username, password):
            return None
        info_url = base_url.rstrip('/') + '/api/v2/torrents/info'
        r = await session.get(info_url, params={'hashes': '|'.join(info_hashes)}, timeout=aiohttp.ClientTimeout(total=5))
        if getattr(r, 'status', None) != 200:
            return None
        data = await r.json()
        return data if isinstance(data, list) else None
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
        return None


def torrent_facet(info: Dict[str, Any]) -> Dict[str, Any]:
    state = info.get('state')
    try:
        ratio = round(float(info.get('ratio')), 3) if info.get('ratio') is not None else None
    except (TypeError, ValueError):
        ratio = None
    return {
        'client_state': state,
        'seeding': state in ACTIVE_SEEDING_STATES,
        'completed': state in SEEDING_STATES,
        'ratio': ratio,
    }
