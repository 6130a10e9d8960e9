from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

MEDIA_TYPES = ('MOVIE', 'TV_SERIES')

VALUE_TYPES = ('string', 'number', 'date', 'boolean', 'array', 'enum')

# Facets a field can be read from; 'identity' is the reconciled identity block
SOURCES = ('identity', 'library', 'download', 'watch', 'server', 'request')

STRING_OPERATORS = ('equals', 'notEquals', 'contains', 'notContains', 'startsWith', 'endsWith', 'regex', 'in', 'notIn')
NUMBER_OPERATORS = ('equals', 'notEquals', 'greaterThan', 'greaterThanOrEqual', 'lessThan', 'lessThanOrEqual', 'between')
DATE_OPERATORS = ('before', 'after', 'between', 'olderThan', 'newerThan', 'null', 'notNull')
BOOLEAN_OPERATORS = ('equals', 'notEquals')
ARRAY_OPERATORS = ('contains', 'notContains', 'containsAny', 'containsAll', 'isEmpty', 'isNotEmpty')
ORDERED_ENUM_OPERATORS = ('equals', 'notEquals', 'in', 'notIn', 'lessThan', 'lessThanOrEqual', 'greaterThan', 'greaterThanOrEqual')

SECONDS_PER_DAY = 86400

TIME_UNITS: Dict[str, int] = {
    'days': SECONDS_PER_DAY,
    'weeks': 7 * SECONDS_PER_DAY,
    'months': 30 * SECONDS_PER_DAY,
    'years': 365 * SECONDS_PER_DAY,
}

SIZE_UNITS: Dict[str, int] = {
    'B': 1,
    'KB': 1024,
    'MB': 1024 ** 2,
    'GB': 1024 ** 3,
    'TB': 1024 ** 4,
}

UNIT_DOMAINS: Dict[str, Dict[str, int]] = {
    'time': TIME_UNITS,
    'size': SIZE_UNITS,
}


@dataclass(frozen=True)
class FieldDefinition:
    key: str
    label: str
    type: str
    source: str
    attr: str
    media_types: Tuple[str, ...]
    allowed_operators: Tuple[str, ...]
    unit: Optional[str] = None
    enum_values: Tuple[str, ...] = ()
    # Empty (known) date values compare as infinitely old, e.g. never watched
    null_as_oldest: bool = False
    derive: Optional[Callable[[Dict[str, Any]], Any]] = field(default=None, compare=False)
    description: str = ''

    def applies_to(self, media_type: str) -> bool:
        return media_type in self.media_types

    def allows(self, operator: str) -> bool:
        return operator in self.allowed_operators

    def enum_rank(self, value: Any) -> Optional[int]:
        try:
            return self.enum_values.index(normalize_enum_value(value))
        except ValueError:
            return None


_RESOLUTION_ALIASES = {'2160': '4k', 'uhd': '4k', '4k': '4k', 'hd': '720', 'fhd': '1080'}


def normalize_enum_value(value: Any) -> str:
    text = str(value).strip().lower()
    if text.endswith('p') and text[:-1].isdigit():
        text = text[:-1]
    return _RESOLUTION_ALIASES.get(text, text)


BOTH = ('MOVIE', 'TV_SERIES')
MOVIE = ('MOVIE',)
TV = ('TV_SERIES',)


def _never_watched(watch: Dict[str, Any]) -> Optional[bool]:
    count = watch.get('play_count')
    if count is None:
        return None
    return int(count) == 0


FIELD_DEFINITIONS: List[FieldDefinition] = [
    # metadata
    FieldDefinition('title', 'Title', 'string', 'identity', 'title', BOTH,
                    ('equals', 'notEquals', 'contains', 'notContains', 'startsWith', 'endsWith', 'regex')),
    FieldDefinition('year', 'Year', 'number', 'identity', 'year', BOTH, NUMBER_OPERATORS),
    FieldDefinition('rating', 'Rating (User)', 'number', 'server', 'rating', BOTH,
                    NUMBER_OPERATORS + ('null', 'notNull'), description='Media server user rating (0-10)'),
    FieldDefinition('audienceRating', 'Audience Rating', 'number', 'server', 'audience_rating', BOTH,
                    NUMBER_OPERATORS + ('null', 'notNull')),
    FieldDefinition('contentRating', 'Content Rating', 'string', 'server', 'content_rating', BOTH,
                    ('equals', 'notEquals', 'in', 'notIn')),
    FieldDefinition('genres', 'Genres', 'array', 'server', 'genres', BOTH, ARRAY_OPERATORS),
    FieldDefinition('labels', 'Labels', 'array', 'server', 'labels', BOTH, ARRAY_OPERATORS),
    FieldDefinition('collections', 'Collections', 'array', 'server', 'collections', BOTH, ARRAY_OPERATORS),
    FieldDefinition('libraryId', 'Library', 'string', 'server', 'library_id', BOTH,
                    ('equals', 'notEquals', 'in', 'notIn')),
    FieldDefinition('tags', 'Tags', 'array', 'library', 'tags', BOTH, ARRAY_OPERATORS),
    # playback
    FieldDefinition('playCount', 'Play Count', 'number', 'watch', 'play_count', BOTH, NUMBER_OPERATORS),
    FieldDefinition('neverWatched', 'Never Watched', 'boolean', 'watch', 'play_count', BOTH, ('equals',),
                    derive=_never_watched, description='Media that has never been played'),
    FieldDefinition('lastWatchedAt', 'Last Watched', 'date', 'watch', 'last_watched_at', BOTH, DATE_OPERATORS,
                    unit='time', null_as_oldest=True),
    FieldDefinition('addedAt', 'Date Added', 'date', 'library', 'added_at', BOTH,
                    ('before', 'after', 'between', 'olderThan', 'newerThan'), unit='time'),
    FieldDefinition('viewCount', 'View Count', 'number', 'server', 'view_count', BOTH, NUMBER_OPERATORS),
    FieldDefinition('lastViewedAt', 'Last Viewed', 'date', 'server', 'last_viewed_at', BOTH, DATE_OPERATORS,
                    unit='time', null_as_oldest=True),
    # file
    FieldDefinition('fileSize', 'File Size', 'number', 'library', 'size_on_disk', BOTH,
                    ('greaterThan', 'greaterThanOrEqual', 'lessThan', 'lessThanOrEqual', 'between'), unit='size'),
    FieldDefinition('filePath', 'File Path', 'string', 'library', 'path', BOTH,
                    ('contains', 'notContains', 'startsWith', 'regex')),
    # quality
    FieldDefinition('resolution', 'Resolution', 'enum', 'watch', 'resolution', BOTH, ORDERED_ENUM_OPERATORS,
                    enum_values=('sd', '480', '576', '720', '1080', '4k')),
    FieldDefinition('videoCodec', 'Video Codec', 'enum', 'watch', 'video_codec', BOTH,
                    ('equals', 'notEquals', 'in', 'notIn'),
                    enum_values=('h264', 'hevc', 'av1', 'mpeg4', 'mpeg2video', 'vc1')),
    # library manager, movies
    FieldDefinition('radarr.hasFile', 'Has File (Radarr)', 'boolean', 'library', 'has_file', MOVIE, BOOLEAN_OPERATORS),
    FieldDefinition('radarr.monitored', 'Monitored (Radarr)', 'boolean', 'library', 'monitored', MOVIE, BOOLEAN_OPERATORS),
    FieldDefinition('radarr.qualityProfileId', 'Quality Profile (Radarr)', 'number', 'library', 'quality_profile_id', MOVIE,
                    ('equals', 'notEquals', 'in', 'notIn')),
    FieldDefinition('radarr.minimumAvailability', 'Minimum Availability (Radarr)', 'enum', 'library',
                    'minimum_availability', MOVIE, ('equals', 'notEquals', 'in', 'notIn'),
                    enum_values=('announced', 'incinemas', 'released', 'predb', 'tba')),
    # library manager, series
    FieldDefinition('sonarr.monitored', 'Monitored (Sonarr)', 'boolean', 'library', 'monitored', TV, BOOLEAN_OPERATORS),
    FieldDefinition('sonarr.status', 'Series Status (Sonarr)', 'enum', 'library', 'status', TV,
                    ('equals', 'notEquals', 'in', 'notIn'), enum_values=('continuing', 'ended', 'upcoming', 'deleted')),
    FieldDefinition('sonarr.episodeFileCount', 'Episode File Count (Sonarr)', 'number', 'library', 'episode_file_count', TV,
                    ('equals', 'greaterThan', 'greaterThanOrEqual', 'lessThan', 'lessThanOrEqual')),
    FieldDefinition('sonarr.percentOfEpisodes', 'Percent Complete (Sonarr)', 'number', 'library', 'percent_of_episodes', TV,
                    ('equals', 'greaterThan', 'greaterThanOrEqual', 'lessThan', 'lessThanOrEqual')),
    # download manager
    FieldDefinition('download.inQueue', 'In Download Queue', 'boolean', 'download', 'in_queue', BOTH, BOOLEAN_OPERATORS),
    FieldDefinition('download.seeding', 'Seeding', 'boolean', 'download', 'seeding', BOTH, BOOLEAN_OPERATORS),
    FieldDefinition('download.ratio', 'Seed Ratio', 'number', 'download', 'ratio', BOTH,
                    ('greaterThan', 'greaterThanOrEqual', 'lessThan', 'lessThanOrEqual', 'null', 'notNull')),
    # request broker
    FieldDefinition('request.hasRequest', 'Has Request', 'boolean', 'request', 'has_request', BOTH, BOOLEAN_OPERATORS),
    FieldDefinition('request.status', 'Request Status', 'enum', 'request', 'status', BOTH,
                    ('equals', 'notEquals', 'in', 'notIn', 'null', 'notNull'),
                    enum_values=('pending', 'approved', 'declined', 'failed', 'completed')),
    FieldDefinition('request.requestedBy', 'Requested By', 'string', 'request', 'requested_by', BOTH,
                    ('equals', 'notEquals', 'in', 'notIn', 'contains')),
    FieldDefinition('request.requestedAt', 'Requested At', 'date', 'request', 'requested_at', BOTH,
                    ('before', 'after', 'olderThan', 'newerThan', 'null', 'notNull'), unit='time'),
]

_BY_KEY: Dict[str, FieldDefinition] = {f.key: f for f in FIELD_DEFINITIONS}


def get_field_definition(key: str) -> Optional[FieldDefinition]:
    return _BY_KEY.get(key)


def fields_for_media_type(media_type: str) -> List[FieldDefinition]:
    return [f for f in FIELD_DEFINITIONS if f.applies_to(media_type)]


def fields_by_source(media_type: str) -> Dict[str, List[FieldDefinition]]:
    grouped: Dict[str, List[FieldDefinition]] = {s: [] for s in SOURCES}
    for f in fields_for_media_type(media_type):
        grouped[f.source].append(f)
    return grouped


def unit_multiplier(domain: Optional[str], unit: Optional[str]) -> Optional[int]:
    if not domain or not unit:
        return None
    return UNIT_DOMAINS.get(domain, {}).get(unit)


OPERATOR_LABELS: Dict[str, str] = {
    'equals': 'equals',
    'notEquals': 'not equals',
    'contains': 'contains',
    'notContains': 'does not contain',
    'startsWith': 'starts with',
    'endsWith': 'ends with',
    'regex': 'matches regex',
    'in': 'is one of',
    'notIn': 'is not one of',
    'greaterThan': 'greater than',
    'greaterThanOrEqual': 'greater than or equal to',
    'lessThan': 'less than',
    'lessThanOrEqual': 'less than or equal to',
    'between': 'between',
    'before': 'before',
    'after': 'after',
    'olderThan': 'older than',
    'newerThan': 'newer than',
    'null': 'is empty',
    'notNull': 'is not empty',
    'containsAny': 'contains any of',
    'containsAll': 'contains all of',
    'isEmpty': 'is empty',
    'isNotEmpty': 'is not empty',
}


def format_operator_label(operator: str) -> str:
    return OPERATOR_LABELS.get(operator, operator)
