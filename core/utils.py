from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Facet attributes that hold timestamps
DATE_ATTRS = ('added_at', 'last_watched_at', 'last_viewed_at', 'requested_at')


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return None


def coerce_facet_dates(facet: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(facet, dict):
        return None
    out = dict(facet)
    for key in DATE_ATTRS:
        if key in out and out[key] is not None:
            out[key] = parse_datetime(out[key])
    return out


_ARTICLES = re.compile(r'^(the|a|an)\s+')
_NON_ALNUM = re.compile(r'[^a-z0-9]+')


def normalize_title(title: Any) -> str:
    text = unicodedata.normalize('NFKD', str(title or ''))
    text = ''.join(ch for ch in text if not unicodedata.combining(ch)).lower().strip()
    text = text.replace('&', ' and ')
    text = _ARTICLES.sub('', text)
    return _NON_ALNUM.sub('', text)


def safe_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None and value != '' else None
    except (TypeError, ValueError):
        return None
