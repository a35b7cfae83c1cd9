"""Tests for the read-only public feed: stream handling and the polling fallback."""
import httpx
import pytest

from conftest import settle
from escalada_client.public import PublicFeed
from escalada_client.transport import ChannelState


def rankings_http(requests, boxes=None, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        if status != 200:
            return httpx.Response(status, json={"detail": "unavailable"})
        return httpx.Response(
            200,
            json={
                "type": "PUBLIC_STATE_SNAPSHOT",
                "boxes": boxes if boxes is not None else [{"boxId": 1, "scoresByName": {"Ana": [10]}}],
            },
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_feed(settings, clock, connector, requests, **kwargs):
    return PublicFeed(settings, http=rankings_http(requests, **kwargs), connector=connector, clock=clock)


@pytest.mark.asyncio
async def test_stream_messages_update_store(settings, clock, connector):
    requests = []
    feed = make_feed(settings, clock, connector, requests)
    feed.start()
    await settle()
    conn = connector.accept()
    await settle()

    assert connector.urls == ["ws://testserver/api/public/ws"]
    assert conn.sent_json() == [{"type": "REQUEST_STATE"}]

    conn.feed(
        {
            "type": "PUBLIC_STATE_SNAPSHOT",
            "boxes": [
                {"boxId": 1, "categorie": "U14", "scoresByName": {"Ana": [10], "Ion": [8]}},
                {"boxId": 2, "categorie": "U16"},
            ],
        }
    )
    await settle()
    assert feed.store.box_ids() == [1, 2]

    conn.feed({"type": "BOX_RANKING_UPDATE", "box": {"boxId": 2, "scoresByName": {"Mia": [4]}}})
    conn.feed({"type": "PING", "timestamp": 77})
    await settle()

    rankings = feed.rankings()
    assert [r.name for r in rankings[1]] == ["Ana", "Ion"]
    assert [r.name for r in rankings[2]] == ["Mia"]
    assert conn.sent_json()[-1] == {"type": "PONG", "timestamp": 77}
    assert requests == []
    await feed.close()
    await feed.http.aclose()


@pytest.mark.asyncio
async def test_polls_while_stream_down_and_stops_on_open(settings, clock, connector):
    requests = []
    feed = make_feed(settings, clock, connector, requests)
    feed.start()
    await settle()

    connector.refuse()
    await settle()
    assert feed.channel.state is ChannelState.CLOSED_WILL_RETRY
    assert feed.polling
    # First poll is immediate.
    assert requests == ["http://testserver/api/public/rankings"]
    assert feed.store.box_ids() == [1]

    clock.advance(settings.public_poll_interval_sec)
    await settle()
    assert len(requests) == 2

    # The reconnect timer (1s) fired inside that advance; accept the new attempt.
    conn = connector.accept()
    await settle()
    assert feed.channel.state is ChannelState.OPEN
    assert not feed.polling
    assert conn.sent_json() == [{"type": "REQUEST_STATE"}]

    clock.advance(settings.public_poll_interval_sec * 3)
    await settle()
    assert len(requests) == 2
    await feed.close()
    await feed.http.aclose()


@pytest.mark.asyncio
async def test_poll_failures_are_ignored(settings, clock, connector):
    requests = []
    feed = make_feed(settings, clock, connector, requests, status=503)
    feed.start()
    await settle()
    connector.refuse()
    await settle()

    assert len(requests) == 1
    assert feed.store.box_ids() == []
    assert feed.polling

    clock.advance(settings.public_poll_interval_sec)
    await settle()
    assert len(requests) == 2
    await feed.close()
    await feed.http.aclose()


@pytest.mark.asyncio
async def test_poll_once_replaces_boxes(settings, clock, connector):
    requests = []
    feed = make_feed(settings, clock, connector, requests, boxes=[{"boxId": 4}, {"boxId": 5}])
    feed.store.update_credentials(9, None, None)

    assert await feed.poll_once() is True
    assert feed.store.box_ids() == [4, 5]
    await feed.close()
    await feed.http.aclose()


@pytest.mark.asyncio
async def test_close_stops_polling(settings, clock, connector):
    requests = []
    feed = make_feed(settings, clock, connector, requests)
    feed.start()
    await settle()
    connector.refuse()
    await settle()
    assert feed.polling

    await feed.close()
    clock.advance(60)
    await settle()

    assert not feed.polling
    assert len(requests) == 1
    assert feed.channel.state is ChannelState.IDLE
    await feed.http.aclose()
