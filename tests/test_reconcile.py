import asyncio
import importlib

import pytest


pytestmark = pytest.mark.asyncio


def _lib(instance, library_id, title, year, **ids):
    return {
        'instance': instance, 'library_id': library_id, 'title': title, 'year': year,
        'tmdb': ids.get('tmdb'), 'tvdb': ids.get('tvdb'), 'imdb': ids.get('imdb'),
        'facet': {'monitored': True, 'tags': []},
    }


def _returning(value):
    async def fn(*args):
        return value
    return fn


def _raising(exc):
    async def fn(*args):
        raise exc
    return fn


LIBRARY = [
    _lib('Radarr', 1, 'Heat', 1995, tmdb=949),
    _lib('Radarr', 2, 'Ronin', 1998),
]


def _sources(**kw):
    rec = importlib.import_module('core.reconcile')
    defaults = dict(
        library={'Radarr': _returning([dict(r) for r in LIBRARY])},
        downloads=_returning([]),
        watch=_returning([]),
        server=_returning([]),
        requests=_returning([]),
        timeout=1.0,
    )
    defaults.update(kw)
    return rec.ReconcileSources(**defaults)


async def test_merge_uses_ids_then_title_year():
    rec = importlib.import_module('core.reconcile')
    sources = _sources(
        server=_returning([
            {'rating_key': '101', 'title': 'Heat (Director)', 'year': 1995, 'tmdb': 949, 'imdb': 'tt0113277',
             'facet': {'view_count': 1, 'labels': ['keep']}},
            {'rating_key': '102', 'title': 'Ronin', 'year': 1998, 'facet': {'view_count': 0, 'labels': []}},
        ]),
        watch=_returning([{'rating_key': '101', 'title': 'Heat', 'year': 1995, 'facet': {'play_count': 3, 'last_watched_at': None}}]),
        requests=_returning([{'tmdb': 949, 'facet': {'has_request': True, 'status': 'completed'}}]),
        downloads=_returning([{'instance': 'Radarr', 'library_id': 2, 'download_id': 'abc', 'status': 'downloading',
                               'seeding': True, 'ratio': 0.5}]),
    )
    result = await rec.reconcile('MOVIE', sources)
    heat, ronin = result.items
    assert heat.server['labels'] == ['keep']
    assert heat.ids['rating_key'] == '101'
    assert heat.ids['imdb'] == 'tt0113277'
    assert heat.watch['play_count'] == 3
    assert heat.request['has_request'] is True
    assert heat.download == {'in_queue': False, 'seeding': None, 'ratio': None}

    assert ronin.ids['rating_key'] == '102'
    assert ronin.watch == {'play_count': 0, 'last_watched_at': None}
    assert ronin.request['has_request'] is False
    assert ronin.download['in_queue'] is True and ronin.download['seeding'] is True
    assert ronin.download['download_ids'] == ['abc']
    assert result.warnings == []


async def test_unavailable_source_leaves_facet_unknown_with_warning():
    rec = importlib.import_module('core.reconcile')
    services = importlib.import_module('integrations.services')

    async def slow(media_type):
        await asyncio.sleep(5)
        return []

    sources = _sources(
        watch=slow,
        requests=_raising(services.ServiceError(503, 'down')),
        timeout=0.05,
    )
    result = await rec.reconcile('MOVIE', sources)
    assert all(item.watch is None for item in result.items)
    assert all(item.request is None for item in result.items)
    assert any('watch tracker: timed out' in w for w in result.warnings)
    assert any('request broker: unavailable' in w for w in result.warnings)


async def test_unconfigured_sources_are_unknown():
    rec = importlib.import_module('core.reconcile')
    sources = _sources(watch=None, server=None, requests=None, downloads=None)
    result = await rec.reconcile('MOVIE', sources)
    item = result.items[0]
    assert (item.watch, item.server, item.request, item.download) == (None, None, None, None)
    assert 'watch tracker: not configured' in result.warnings


async def test_library_failure_fails_the_run():
    rec = importlib.import_module('core.reconcile')
    sources = _sources(library={'Radarr': _raising(rec.SourceUnavailable('refused'))})
    with pytest.raises(rec.ReconcileError):
        await rec.reconcile('MOVIE', sources)
    with pytest.raises(rec.ReconcileError):
        await rec.reconcile('MOVIE', _sources(library={}))


async def test_one_failing_instance_degrades_to_warning():
    rec = importlib.import_module('core.reconcile')
    sources = _sources(library={
        'Radarr': _returning([dict(LIBRARY[0])]),
        'Radarr4K': _raising(rec.SourceUnavailable('refused')),
    })
    result = await rec.reconcile('MOVIE', sources)
    assert [i.title for i in result.items] == ['Heat']
    assert any(w.startswith('Radarr4K') for w in result.warnings)


async def test_instances_filter_limits_library_managers():
    rec = importlib.import_module('core.reconcile')
    seen = []

    async def other():
        seen.append('Radarr4K')
        return []

    sources = _sources(library={'Radarr': _returning([dict(LIBRARY[0])]), 'Radarr4K': other})
    result = await rec.reconcile('MOVIE', sources, instances=['Radarr'])
    assert seen == []
    assert len(result.items) == 1


async def test_ambiguous_title_year_is_not_linked():
    rec = importlib.import_module('core.reconcile')
    sources = _sources(server=_returning([
        {'rating_key': '1', 'title': 'Ronin', 'year': 1998, 'facet': {'view_count': 5}},
        {'rating_key': '2', 'title': 'RONIN', 'year': 1998, 'facet': {'view_count': 0}},
    ]))
    result = await rec.reconcile('MOVIE', sources)
    ronin = result.items[1]
    assert ronin.server is None
    assert 'rating_key' not in ronin.ids
    assert any('ambiguous' in w for w in result.warnings)


async def test_ambiguous_watch_history_is_unknown_not_unwatched():
    rec = importlib.import_module('core.reconcile')
    rules = importlib.import_module('core.rules')
    criteria = importlib.import_module('core.criteria')
    sources = _sources(
        server=None,
        watch=_returning([
            {'rating_key': 'hd-1', 'title': 'Heat', 'year': 1995, 'facet': {'play_count': 5, 'last_watched_at': None}},
            {'rating_key': '4k-1', 'title': 'Heat', 'year': 1995, 'facet': {'play_count': 2, 'last_watched_at': None}},
        ]),
    )
    result = await rec.reconcile('MOVIE', sources)
    heat, ronin = result.items
    assert heat.watch is None
    assert ronin.watch == {'play_count': 0, 'last_watched_at': None}
    assert any('watch tracker: ambiguous' in w for w in result.warnings)

    tree = criteria.Group(id='root', conditions=[
        criteria.Condition(id='c', field='playCount', operator='equals', value=0),
    ])
    assert rules.evaluate(tree, heat) is False
    assert rules.evaluate(tree, ronin) is True


async def test_malformed_source_payload_degrades_to_unknown():
    rec = importlib.import_module('core.reconcile')
    sources = _sources(
        watch=_raising(AttributeError("'str' object has no attribute 'get'")),
        requests=_raising(KeyError('results')),
    )
    result = await rec.reconcile('MOVIE', sources)
    assert all(i.watch is None and i.request is None for i in result.items)
    assert any(w.startswith('watch tracker: failed (AttributeError') for w in result.warnings)
    assert any(w.startswith('request broker: failed (KeyError') for w in result.warnings)


async def test_malformed_library_payload_fails_the_run():
    rec = importlib.import_module('core.reconcile')
    with pytest.raises(rec.ReconcileError):
        await rec.reconcile('MOVIE', _sources(library={'Radarr': _raising(TypeError('bad listing'))}))


async def test_requests_match_by_identifier_only():
    rec = importlib.import_module('core.reconcile')
    sources = _sources(requests=_returning([{'title': 'Ronin', 'year': 1998, 'facet': {'has_request': True}}]))
    result = await rec.reconcile('MOVIE', sources)
    assert result.items[1].request['has_request'] is False


async def test_search_filters_titles_case_insensitively():
    rec = importlib.import_module('core.reconcile')
    result = await rec.reconcile('MOVIE', _sources(), search='RON')
    assert [i.title for i in result.items] == ['Ronin']


async def test_merge_error_marks_item_only():
    rec = importlib.import_module('core.reconcile')
    sources = _sources(server=_returning([{'rating_key': '9', 'tmdb': 949, 'facet': 5}]))
    result = await rec.reconcile('MOVIE', sources)
    heat, ronin = result.items
    assert heat.error and heat.error.startswith('merge failed')
    assert ronin.error is None


async def test_identity_key_is_instance_and_library_id():
    rec = importlib.import_module('core.reconcile')
    result = await rec.reconcile('MOVIE', _sources())
    assert [i.identity_key for i in result.items] == ['Radarr:1', 'Radarr:2']
