import importlib
import re

import aiohttp
import pytest
from aioresponses import aioresponses


pytestmark = pytest.mark.asyncio


def _request():
    services = importlib.import_module('integrations.services')
    return services.RequestManager(retry_attempts=0, retry_backoff=0.01).throttled_request


def _tautulli_cmd(cmd):
    return re.compile(r'^http://tautulli:8181/api/v2\?.*cmd=' + cmd + r'.*$')


async def test_tautulli_history_per_matching_section():
    tautulli = importlib.import_module('integrations.tautulli')
    tracker = tautulli.WatchTracker('http://tautulli:8181', 'key', _request())
    libraries = {'response': {'result': 'success', 'data': [
        {'section_id': 1, 'section_type': 'movie'},
        {'section_id': 2, 'section_type': 'show'},
    ]}}
    media = {'response': {'result': 'success', 'data': {'data': [
        {'rating_key': 101, 'title': 'Heat', 'year': 1995, 'play_count': 3, 'last_played': 1700000000,
         'video_resolution': '1080', 'video_codec': 'H264', 'file_size': '5000'},
        {'rating_key': 102, 'title': 'Ronin', 'year': 1998, 'play_count': None, 'last_played': None},
    ]}}}
    with aioresponses() as m:
        m.get(_tautulli_cmd('get_libraries'), payload=libraries)
        m.get(_tautulli_cmd('get_library_media_info'), payload=media)
        async with aiohttp.ClientSession() as session:
            rows = await tracker.list_history(session, 'MOVIE')
    assert [r['rating_key'] for r in rows] == ['101', '102']
    heat = rows[0]['facet']
    assert heat['play_count'] == 3
    assert heat['last_watched_at'].year == 2023
    assert heat['resolution'] == '1080' and heat['video_codec'] == 'h264'
    assert heat['file_size'] == 5000
    assert rows[1]['facet'] == {
        'play_count': 0, 'last_watched_at': None, 'resolution': None, 'video_codec': None, 'file_size': None,
    }


async def test_tautulli_error_result_raises():
    tautulli = importlib.import_module('integrations.tautulli')
    services = importlib.import_module('integrations.services')
    tracker = tautulli.WatchTracker('http://tautulli:8181', 'bad', _request())
    with aioresponses() as m:
        m.get(_tautulli_cmd('get_libraries'), payload={'response': {'result': 'error', 'message': 'Invalid apikey'}})
        async with aiohttp.ClientSession() as session:
            with pytest.raises(services.ServiceError) as ei:
                await tracker.list_history(session, 'MOVIE')
    assert 'Invalid apikey' in str(ei.value)


async def test_plex_items_with_guids_and_tags():
    plex = importlib.import_module('integrations.plex')
    server = plex.MediaServer('http://plex:32400', 'tok', _request())
    sections = {'MediaContainer': {'Directory': [
        {'key': '1', 'type': 'movie', 'title': 'Movies'},
        {'key': '2', 'type': 'show', 'title': 'TV'},
    ]}}
    listing = {'MediaContainer': {'Metadata': [{
        'ratingKey': '101', 'title': 'Heat', 'year': 1995, 'viewCount': 2, 'lastViewedAt': 1700000000,
        'userRating': 8.0, 'audienceRating': 9.1, 'contentRating': 'R',
        'Guid': [{'id': 'imdb://tt0113277'}, {'id': 'tmdb://949'}, {'id': 'tvdb://12'}],
        'Genre': [{'tag': 'Crime'}], 'Label': [{'tag': 'keep'}], 'Collection': [{'tag': 'Mann'}],
    }]}}
    with aioresponses() as m:
        m.get('http://plex:32400/library/sections', payload=sections)
        m.get('http://plex:32400/library/sections/1/all?includeGuids=1', payload=listing)
        async with aiohttp.ClientSession() as session:
            items = await server.list_items(session, 'MOVIE')
    assert len(items) == 1
    rec = items[0]
    assert rec['rating_key'] == '101'
    assert (rec['tmdb'], rec['tvdb'], rec['imdb']) == (949, 12, 'tt0113277')
    facet = rec['facet']
    assert facet['library_id'] == '1'
    assert facet['view_count'] == 2
    assert facet['genres'] == ['Crime'] and facet['labels'] == ['keep'] and facet['collections'] == ['Mann']
    assert facet['rating'] == 8.0 and facet['content_rating'] == 'R'


async def test_plex_unwatched_item_has_empty_last_viewed():
    plex = importlib.import_module('integrations.plex')
    rec = plex.normalize_metadata({'ratingKey': 5, 'title': 'New'}, '1')
    assert rec['facet']['view_count'] == 0
    assert rec['facet']['last_viewed_at'] is None
    assert rec['facet']['labels'] == []


async def test_overseerr_requests_filtered_and_paged():
    overseerr = importlib.import_module('integrations.overseerr')
    broker = overseerr.RequestBroker('http://overseerr:5055/api/v1', 'k', _request())
    page1 = {'pageInfo': {'results': 101}, 'results': [
        {'status': 2, 'media': {'mediaType': 'movie', 'tmdbId': 949, 'status': 5},
         'requestedBy': {'displayName': 'ana'}, 'createdAt': '2025-01-01T00:00:00.000Z'},
        {'status': 1, 'media': {'mediaType': 'tv', 'tmdbId': 1, 'tvdbId': 2}},
    ] + [{'status': 3, 'media': {'mediaType': 'movie', 'tmdbId': 1000 + i}} for i in range(98)]}
    page2 = {'pageInfo': {'results': 101}, 'results': [
        {'status': 1, 'media': {'mediaType': 'movie', 'tmdbId': 77}, 'requestedBy': {'email': 'b@x'}},
    ]}
    with aioresponses() as m:
        m.get('http://overseerr:5055/api/v1/request?take=100&skip=0&filter=all', payload=page1)
        m.get('http://overseerr:5055/api/v1/request?take=100&skip=100&filter=all', payload=page2)
        async with aiohttp.ClientSession() as session:
            reqs = await broker.list_requests(session, 'MOVIE')
    assert len(reqs) == 100
    first = reqs[0]
    assert first['tmdb'] == 949
    assert first['facet']['status'] == 'completed'
    assert first['facet']['requested_by'] == 'ana'
    assert first['facet']['requested_at'].year == 2025
    assert reqs[1]['facet']['status'] == 'declined'
    assert reqs[-1]['tmdb'] == 77 and reqs[-1]['facet']['status'] == 'pending'
    assert reqs[-1]['facet']['requested_by'] == 'b@x'


async def test_overseerr_non_listing_body_raises():
    overseerr = importlib.import_module('integrations.overseerr')
    services = importlib.import_module('integrations.services')
    broker = overseerr.RequestBroker('http://overseerr:5055/api/v1', 'k', _request())
    with aioresponses() as m:
        m.get('http://overseerr:5055/api/v1/request?take=100&skip=0&filter=all',
              body='<html>Sign in</html>', content_type='text/html')
        async with aiohttp.ClientSession() as session:
            with pytest.raises(services.ServiceError) as ei:
                await broker.list_requests(session, 'MOVIE')
    assert 'unexpected request listing' in str(ei.value)


async def test_overseerr_empty_listing_is_no_requests():
    overseerr = importlib.import_module('integrations.overseerr')
    broker = overseerr.RequestBroker('http://overseerr:5055/api/v1', 'k', _request())
    with aioresponses() as m:
        m.get('http://overseerr:5055/api/v1/request?take=100&skip=0&filter=all',
              payload={'pageInfo': {'results': 0}, 'results': []})
        async with aiohttp.ClientSession() as session:
            assert await broker.list_requests(session, 'MOVIE') == []
