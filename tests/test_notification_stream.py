import pytest
from starlette.requests import Request

from conftest import auth_headers
from meupersonal import events
from meupersonal.routes import notifications
from meupersonal.routes.notifications import stream_notifications


class FakeRequest:
    """Just enough of a Request for the event generator"""

    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self):
        return self.disconnected


def _bearer(user):
    return auth_headers(user)["Authorization"].split(" ", 1)[1]


async def test_stream_sends_keepalives_and_published_events(monkeypatch):
    monkeypatch.setattr(notifications, "KEEPALIVE_SECONDS", 0.05)
    topic = events.user_topic("u1")
    stream = notifications._event_generator(FakeRequest(), "u1", [topic])

    connected = await stream.__anext__()
    assert connected.startswith("event: connected\n")
    assert events.subscriber_count(topic) == 1

    assert await stream.__anext__() == ": keep-alive\n\n"

    events.publish(topic, {"event": "notification", "notification": {"title": "Aviso"}})
    message = await stream.__anext__()
    assert message.startswith("event: notification\n")
    assert '"title": "Aviso"' in message

    await stream.aclose()
    assert events.subscriber_count(topic) == 0


async def test_stream_ends_when_client_disconnects():
    request = FakeRequest()
    topic = events.user_topic("u2")
    stream = notifications._event_generator(request, "u2", [topic])
    await stream.__anext__()

    request.disconnected = True
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
    assert events.subscriber_count(topic) == 0


async def test_stream_accepts_token_query_parameter(db, network, student):
    _, academy = network
    request = Request(
        {"type": "http", "method": "GET", "path": "/api/notifications/stream", "headers": [], "query_string": b""}
    )

    response = await stream_notifications(request, token=_bearer(student), credentials=None, db=db)
    assert response.media_type == "text/event-stream"

    stream = response.body_iterator
    connected = await stream.__anext__()
    assert events.user_topic(student.id) in connected
    assert events.academy_topic(academy.id) in connected
    assert events.subscriber_count(events.user_topic(student.id)) == 1

    await stream.aclose()
    assert events.subscriber_count(events.user_topic(student.id)) == 0


def test_stream_rejects_missing_or_bad_tokens(client):
    assert client.get("/api/notifications/stream").status_code == 401
    response = client.get("/api/notifications/stream", params={"token": "not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_TOKEN"
