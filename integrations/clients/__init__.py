from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from . import qbittorrent as qb_mod


async def get_torrent_states(
    session: aiohttp.ClientSession,
    download_ids: List[str],
    CONFIG: Dict[str, Any],
    debug_logging: bool = False,
) -> Optional[Dict[str, Dict[str, Any]]]:
    """Look up download-client state for queue download ids.

    Returns ``{}`` when no client is configured and ``None`` when the client
    could not be reached, keyed by lower-cased info hash otherwise.
    """
    clients = CONFIG.get('clients') if isinstance(CONFIG.get('clients'), dict) else {}
    qb = clients.get('qbittorrent') if isinstance(clients.get('qbittorrent'), dict) else {}
    hashes = sorted({str(d).lower() for d in download_ids if d})
    if not qb.get('url') or not hashes:
        return {}
    torrents = await qb_mod.qbittorrent_get_torrents(
        session, qb['url'], qb.get('username') or '', qb.get('password') or '', hashes
    )
    if torrents is None:
        if debug_logging:
            logging.warning('Client qbittorrent: torrent info unavailable')
        return None
    out: Dict[str, Dict[str, Any]] = {}
    for info in torrents:
        h = str(info.get('hash') or '').lower()
        if h:
            out[h] = qb_mod.torrent_facet(info)
    return out
