from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import yaml

# Built-in library managers; extra instances are declared under `services:` with a kind
DEFAULT_LIBRARY_MANAGERS = {'Radarr': 'radarr', 'Sonarr': 'sonarr'}

GENERAL_DEFAULTS: Dict[str, Any] = {
    'debug_logging': False,
    'structured_logs': True,
    'dry_run': False,
    'db_path': '/app/data/maintenance.sqlite3',
    'request_timeout': 10,
    'retry_attempts': 2,
    'retry_backoff': 1.0,
    'source_timeout': 60.0,
    'max_parallel_sources': 4,
    'action_interval_minutes': 15.0,
    'lease_seconds': 30,
    'scan_batch_size': 100,
    'timezone': 'UTC',
    'rule_sync_minutes': 1.0,
}

_GENERAL_CASTS = {
    'request_timeout': int,
    'retry_attempts': int,
    'retry_backoff': float,
    'source_timeout': float,
    'max_parallel_sources': int,
    'action_interval_minutes': float,
    'lease_seconds': int,
    'scan_batch_size': int,
    'rule_sync_minutes': float,
}

# Floors applied after coercion
_GENERAL_MINIMUMS = {
    'request_timeout': 1,
    'max_parallel_sources': 1,
    'action_interval_minutes': 1.0,
    'lease_seconds': 5,
    'scan_batch_size': 1,
    'rule_sync_minutes': 0.5,
}


def get_env_var(key, default=None, cast_to=str):
    value = os.environ.get(key, default)
    if value is not None:
        return cast_to(value)
    return default


def env_flag(value: Any) -> bool:
    return str(value).lower() in ['true', '1', 'yes']


def load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError) as e:
        logging.warning(f'Config {path}: unreadable ({e}); using defaults')
        return {}


def _get_env(key: str, default: Any = None) -> Any:
    return os.environ.get(key, default)


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    def _section(self, name: str) -> Dict[str, Any]:
        sec = self.cfg.get(name)
        return sec if isinstance(sec, dict) else {}

    # General settings accessor
    def general(self, key: str, default: Any = None) -> Any:
        return self._section('general').get(key, default)

    def get_service_setting(self, service_name: str, key: str, default: Any = None) -> Any:
        service_cfg = self._section('services').get(service_name)
        if isinstance(service_cfg, dict) and key in service_cfg:
            return service_cfg[key]
        maint = self._section('maintenance')
        if key in maint:
            return maint[key]
        return default

    # Clients
    def clients(self) -> Dict[str, Any]:
        return self._section('clients')

    # Endpoints from env (documented precedence: env-only)
    def service_endpoint(self, service_name: str) -> Dict[str, Optional[str]]:
        upper = service_name.upper()
        return {
            'api_url': _get_env(f'{upper}_URL') or None,
            'api_key': _get_env(f'{upper}_API_KEY') or None,
        }

    def plex_endpoint(self) -> Dict[str, Optional[str]]:
        return {'base_url': _get_env('PLEX_URL') or None, 'token': _get_env('PLEX_TOKEN') or None}

    def library_manager_configs(self) -> Dict[str, Dict[str, Any]]:
        """Name -> {kind, api_url, api_key} for Radarr, Sonarr and any declared extra instances."""
        kinds = dict(DEFAULT_LIBRARY_MANAGERS)
        for name, scfg in self._section('services').items():
            if isinstance(scfg, dict) and str(scfg.get('kind') or '').lower() in ('radarr', 'sonarr'):
                kinds[name] = str(scfg['kind']).lower()
        out: Dict[str, Dict[str, Any]] = {}
        for name, kind in kinds.items():
            ep = self.service_endpoint(name)
            out[name] = {'kind': kind, 'api_url': ep['api_url'] or '', 'api_key': ep['api_key'] or ''}
        return out

    def throttle_settings(self) -> Dict[str, Dict[str, Any]]:
        keys = ('min_request_interval_ms', 'max_concurrent_requests')
        out: Dict[str, Dict[str, Any]] = {}
        maint = self._section('maintenance')
        out['default'] = {k: maint[k] for k in keys if k in maint}
        for name, scfg in self._section('services').items():
            if isinstance(scfg, dict):
                out[name] = {k: self.get_service_setting(name, k, 0) for k in keys}
        return out


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = dict(cfg)

    def _nz(v, cast, default):
        try:
            return cast(v)
        except (TypeError, ValueError):
            return default

    gen = dict(out.get('general')) if isinstance(out.get('general'), dict) else {}
    for key, cast in _GENERAL_CASTS.items():
        if key in gen:
            value = max(0, _nz(gen[key], cast, GENERAL_DEFAULTS[key]))
            gen[key] = max(_GENERAL_MINIMUMS.get(key, value), value)
    if gen:
        out['general'] = gen

    # Global throttle fallback
    maint = dict(out.get('maintenance')) if isinstance(out.get('maintenance'), dict) else {}
    if maint:
        maint['min_request_interval_ms'] = max(0, _nz(maint.get('min_request_interval_ms', 0), float, 0))
        maint['max_concurrent_requests'] = max(0, _nz(maint.get('max_concurrent_requests', 0), int, 0))
        out['maintenance'] = maint

    sv = out.get('services') if isinstance(out.get('services'), dict) else {}
    for sname, scfg in list(sv.items()):
        if not isinstance(scfg, dict):
            continue
        if 'min_request_interval_ms' in scfg:
            scfg['min_request_interval_ms'] = max(0, _nz(scfg['min_request_interval_ms'], float, 0))
        if 'max_concurrent_requests' in scfg:
            scfg['max_concurrent_requests'] = max(0, _nz(scfg['max_concurrent_requests'], int, 0))
        if 'kind' in scfg:
            kind = str(scfg.get('kind') or '').lower()
            if kind not in ('radarr', 'sonarr'):
                if debug_logging:
                    logging.warning(f'Ignoring unknown kind for service {sname}: {scfg.get("kind")}')
                scfg.pop('kind')
            else:
                scfg['kind'] = kind
    return out


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> None:
    """Log configuration problems. Never raises; a misconfigured source is simply skipped."""
    problems = []
    # Service env pairs
    svcs = ['Radarr', 'Sonarr', 'Tautulli', 'Overseerr']
    extra = cfg.get('services') if isinstance(cfg.get('services'), dict) else {}
    svcs += [n for n, s in extra.items() if isinstance(s, dict) and s.get('kind') and n not in svcs]
    for s in svcs:
        url = os.environ.get(f'{s.upper()}_URL') or None
        key = os.environ.get(f'{s.upper()}_API_KEY') or None
        if (url and not key) or (key and not url):
            problems.append(f'Service {s} has partial env config (URL/API_KEY); it will be skipped.')
    plex_url = os.environ.get('PLEX_URL') or None
    plex_token = os.environ.get('PLEX_TOKEN') or None
    if (plex_url and not plex_token) or (plex_token and not plex_url):
        problems.append('Plex has partial env config (PLEX_URL/PLEX_TOKEN); it will be skipped.')
    maint = cfg.get('maintenance') if isinstance(cfg.get('maintenance'), dict) else {}
    if float(maint.get('min_request_interval_ms') or 0) > 0 and int(maint.get('max_concurrent_requests') or 0) == 0:
        problems.append('min_request_interval_ms set without max_concurrent_requests; consider setting both for effect.')
    qb = (cfg.get('clients') or {}).get('qbittorrent') if isinstance(cfg.get('clients'), dict) else None
    if isinstance(qb, dict) and qb and not qb.get('url'):
        problems.append('clients.qbittorrent has no url; download client state will be unknown.')
    for p in problems:
        logging.warning(p)
