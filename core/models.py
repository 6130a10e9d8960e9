from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

ACTION_TYPES = ('FLAG_FOR_REVIEW', 'AUTO_DELETE', 'UNMONITOR_AND_DELETE', 'UNMONITOR_AND_KEEP', 'DO_NOTHING')
EXECUTABLE_ACTIONS = ('AUTO_DELETE', 'UNMONITOR_AND_DELETE', 'UNMONITOR_AND_KEEP')

SCAN_STATUSES = ('PENDING', 'RUNNING', 'COMPLETED', 'FAILED')
REVIEW_STATUSES = ('PENDING', 'APPROVED', 'REJECTED', 'DELETED')

# Allowed forward moves of a candidate's review status
REVIEW_TRANSITIONS: Dict[str, tuple] = {
    'PENDING': ('APPROVED', 'REJECTED'),
    'APPROVED': ('DELETED',),
    'REJECTED': (),
    'DELETED': (),
}

FACETS = ('library', 'download', 'watch', 'server', 'request')


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in REVIEW_TRANSITIONS.get(from_status, ())


@dataclass
class Rule:
    id: str
    name: str
    media_type: str
    criteria: Any  # core.criteria.Group
    action_type: str = 'FLAG_FOR_REVIEW'
    description: str = ''
    enabled: bool = True
    action_delay_days: Optional[int] = None
    schedule: Optional[str] = None
    instances: List[str] = field(default_factory=list)
    created_at: float = 0.0
    updated_at: float = 0.0
    last_run_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        from core.criteria import criteria_to_dict

        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'enabled': self.enabled,
            'mediaType': self.media_type,
            'criteria': criteria_to_dict(self.criteria),
            'actionType': self.action_type,
            'actionDelayDays': self.action_delay_days,
            'schedule': self.schedule,
            'instances': list(self.instances),
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'lastRunAt': self.last_run_at,
        }


@dataclass
class Scan:
    id: str
    rule_id: str
    status: str = 'PENDING'
    started_at: float = 0.0
    completed_at: Optional[float] = None
    items_scanned: int = 0
    items_flagged: int = 0
    items_errored: int = 0
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'ruleId': self.rule_id,
            'status': self.status,
            'startedAt': self.started_at,
            'completedAt': self.completed_at,
            'itemsScanned': self.items_scanned,
            'itemsFlagged': self.items_flagged,
            'itemsErrored': self.items_errored,
            'error': self.error,
            'warnings': list(self.warnings),
        }


@dataclass
class Candidate:
    id: str
    scan_id: str
    rule_id: str
    media_type: str
    identity_key: str
    title: str
    year: Optional[int] = None
    ids: Dict[str, Any] = field(default_factory=dict)
    review_status: str = 'PENDING'
    flagged_at: float = 0.0
    reviewed_at: Optional[float] = None
    reviewed_by: Optional[str] = None
    deleted_at: Optional[float] = None
    deletion_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'scanId': self.scan_id,
            'ruleId': self.rule_id,
            'mediaType': self.media_type,
            'identityKey': self.identity_key,
            'title': self.title,
            'year': self.year,
            'ids': dict(self.ids),
            'reviewStatus': self.review_status,
            'flaggedAt': self.flagged_at,
            'reviewedAt': self.reviewed_at,
            'reviewedBy': self.reviewed_by,
            'deletedAt': self.deleted_at,
            'deletionError': self.deletion_error,
        }


@dataclass
class UnifiedMediaItem:
    media_type: str
    title: str
    year: Optional[int] = None
    ids: Dict[str, Any] = field(default_factory=dict)
    # Each facet is a dict, or None when its source was unavailable
    library: Optional[Dict[str, Any]] = None
    download: Optional[Dict[str, Any]] = None
    watch: Optional[Dict[str, Any]] = None
    server: Optional[Dict[str, Any]] = None
    request: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def identity_key(self) -> str:
        instance = self.ids.get('instance')
        library_id = self.ids.get('library_id')
        if instance and library_id is not None:
            return f'{instance}:{library_id}'
        for key in ('tmdb', 'tvdb', 'imdb'):
            if self.ids.get(key):
                return f'{key}:{self.ids[key]}'
        return f'title:{(self.title or "").lower()}:{self.year or ""}'

    def facet(self, name: str) -> Optional[Dict[str, Any]]:
        if name == 'identity':
            return {'title': self.title, 'year': self.year, **self.ids}
        return getattr(self, name, None)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UnifiedMediaItem':
        from core.utils import coerce_facet_dates

        return cls(
            media_type=str(data.get('media_type') or data.get('mediaType') or 'MOVIE'),
            title=str(data.get('title') or ''),
            year=data.get('year'),
            ids=dict(data.get('ids') or {}),
            library=coerce_facet_dates(data.get('library')),
            download=coerce_facet_dates(data.get('download')),
            watch=coerce_facet_dates(data.get('watch')),
            server=coerce_facet_dates(data.get('server')),
            request=coerce_facet_dates(data.get('request')),
        )
