import pytest
from aioresponses import aioresponses
from yarl import URL

from cityfix.models.notification_model import PushMessage
from cityfix.services.push_service import PushClient, chunk_messages, is_expo_push_token

EXPO_URL = "https://exp.host/--/api/v2/push/send"


def messages(n):
    return [PushMessage(to=f"ExponentPushToken[{i}]", body="Your report has been submitted") for i in range(n)]


@pytest.mark.parametrize(
    "token,valid",
    [
        ("ExponentPushToken[abc123]", True),
        ("ExpoPushToken[abc123]", True),
        ("ExponentPushToken[]", False),
        ("fcm:abc123", False),
        ("", False),
        (None, False),
    ],
)
def test_is_expo_push_token(token, valid):
    assert is_expo_push_token(token) is valid


def test_chunking_respects_expo_limit():
    assert [len(c) for c in chunk_messages(messages(201))] == [100, 100, 1]
    assert chunk_messages([]) == []


async def test_send_posts_each_chunk():
    client = PushClient(url=EXPO_URL, access_token="secret", dry_run=False)

    with aioresponses() as mocked:
        mocked.post(EXPO_URL, payload={"data": [{"status": "ok", "id": "t1"}]}, repeat=True)
        outcomes = await client.send(messages(150))

        calls = mocked.requests[("POST", URL(EXPO_URL))]
        assert len(calls) == 2
        assert calls[0].kwargs["json"][0]["to"] == "ExponentPushToken[0]"
        assert len(calls[1].kwargs["json"]) == 50

    assert [(o.index, o.size, o.ok) for o in outcomes] == [(0, 100, True), (1, 50, True)]


async def test_failed_chunk_is_reported_and_others_continue():
    client = PushClient(url=EXPO_URL, dry_run=False)

    with aioresponses() as mocked:
        mocked.post(EXPO_URL, status=500, body="upstream error")
        mocked.post(EXPO_URL, payload={"data": []})
        outcomes = await client.send(messages(120))

    assert [o.ok for o in outcomes] == [False, True]
    assert outcomes[0].error.chunk_index == 0
    assert "HTTP 500" in outcomes[0].error.reason


async def test_connection_error_becomes_delivery_failure():
    client = PushClient(url=EXPO_URL, dry_run=False)

    with aioresponses() as mocked:
        mocked.post(EXPO_URL, exception=ConnectionError("refused"))
        outcomes = await client.send(messages(1))

    assert outcomes[0].ok is False
    assert "refused" in outcomes[0].error.reason


async def test_dry_run_sends_nothing():
    client = PushClient(url=EXPO_URL, dry_run=True)

    with aioresponses() as mocked:
        outcomes = await client.send(messages(3))
        assert mocked.requests == {}

    assert [o.ok for o in outcomes] == [True]


async def test_empty_batch_is_a_no_op():
    assert await PushClient(url=EXPO_URL, dry_run=False).send([]) == []
