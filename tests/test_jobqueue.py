import asyncio
import json

import httpx
import pytest

from drawer_bridge.jobqueue import PrintQueueClient, QueueError


def _client(handler):
    transport = httpx.MockTransport(handler)
    return PrintQueueClient(
        'https://demo.supabase.co/',
        'service-key',
        client=httpx.AsyncClient(transport=transport),
    )


def test_fetch_pending_query_shape():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['request'] = request
        return httpx.Response(200, json=[
            {'id': 'a1', 'type': 'cash_drawer', 'created_at': '2026-10-18T10:00:00Z', 'printed_at': None},
            {'id': 'b2', 'type': 'cash_drawer', 'created_at': '2026-10-18T10:00:01Z', 'printed_at': None},
        ])

    async def scenario():
        client = _client(handler)
        jobs = await client.fetch_pending(limit=5)
        await client.aclose()
        return jobs

    jobs = asyncio.run(scenario())
    assert [j.id for j in jobs] == ['a1', 'b2']
    assert all(j.is_pending for j in jobs)

    request = seen['request']
    assert request.method == 'GET'
    assert request.url.path == '/rest/v1/print_queue'
    params = request.url.params
    assert params['type'] == 'eq.cash_drawer'
    assert params['printed_at'] == 'is.null'
    assert params['order'] == 'created_at.asc'
    assert params['limit'] == '5'
    assert request.headers['apikey'] == 'service-key'
    assert request.headers['authorization'] == 'Bearer service-key'


def test_mark_printed_patches_ids():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen['request'] = request
        return httpx.Response(204)

    async def scenario():
        client = _client(handler)
        await client.mark_printed(['a1', 'b2'])
        await client.aclose()

    asyncio.run(scenario())
    request = seen['request']
    assert request.method == 'PATCH'
    assert request.url.params['id'] == 'in.(a1,b2)'
    body = json.loads(request.content)
    assert body['printed_at']
    assert request.headers['prefer'] == 'return=minimal'


def test_mark_printed_with_no_ids_is_a_noop():
    def handler(request):
        raise AssertionError('no request expected')

    async def scenario():
        client = _client(handler)
        await client.mark_printed([])
        await client.aclose()

    asyncio.run(scenario())


def test_enqueue_returns_created_job():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == 'POST'
        assert json.loads(request.content) == {'type': 'cash_drawer', 'payload': {}}
        return httpx.Response(201, json=[{'id': 'new-1', 'type': 'cash_drawer', 'created_at': 'now'}])

    async def scenario():
        client = _client(handler)
        job = await client.enqueue()
        await client.aclose()
        return job

    assert asyncio.run(scenario()).id == 'new-1'


@pytest.mark.parametrize('response', [
    httpx.Response(500, text='boom'),
    httpx.Response(200, text='not json'),
    httpx.Response(200, json={'message': 'not a list'}),
])
def test_bad_responses_raise_queue_error(response):
    async def scenario():
        client = _client(lambda request: response)
        try:
            with pytest.raises(QueueError):
                await client.fetch_pending()
        finally:
            await client.aclose()

    asyncio.run(scenario())


def test_transport_error_raises_queue_error():
    def handler(request):
        raise httpx.ConnectError('connection refused', request=request)

    async def scenario():
        client = _client(handler)
        try:
            with pytest.raises(QueueError, match='connection refused'):
                await client.fetch_pending()
        finally:
            await client.aclose()

    asyncio.run(scenario())
