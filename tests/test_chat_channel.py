"""Unit tests for the chat channel"""

# pylint: disable=redefined-outer-name

import json
from unittest.mock import MagicMock

import pytest

from src.config.settings import settings
from src.core.errors import NotConnectedError
from src.core.frames import Frame
from src.services.chat import ChatChannel, SendError
from src.services.stomp import IProtocolClient
from tests.conftest import make_token


@pytest.fixture
def mock_client():
    """Protocol client that records subscriptions and publishes."""
    client = MagicMock(spec=IProtocolClient)
    client.is_connected = True
    return client


def _message_frame(sender_id=1, sender_name="Alice", content="hello"):
    body = json.dumps({"senderId": sender_id, "senderName": sender_name, "content": content})
    return Frame("MESSAGE", {"destination": "/topic/chat/42"}, body)


def _handler(client):
    """Handler the channel registered on the mock client."""
    return client.subscribe.call_args.args[1]


def test_mount_subscribes_to_room(mock_client):
    channel = ChatChannel(mock_client, "42", lambda: make_token())

    channel.mount()
    channel.mount()

    mock_client.subscribe.assert_called_once()
    assert mock_client.subscribe.call_args.args[0] == "/topic/chat/42"


def test_send_publishes_decoded_identity(mock_client):
    """The sender identity comes from the credential claims."""
    channel = ChatChannel(mock_client, "42", lambda: make_token(user_id=7, first_name="Bruno"))

    result = channel.send("oi")

    assert result.sent
    mock_client.publish.assert_called_once_with(
        "/app/chat.sendMessage/42", '{"senderId":7,"senderName":"Bruno","content":"oi"}'
    )
    assert channel.error is None


def test_send_defaults_sender_name(mock_client):
    """A token without firstName is sent with the default name."""
    channel = ChatChannel(mock_client, "42", lambda: make_token(user_id=9, first_name=None))

    channel.send("hi")

    body = json.loads(mock_client.publish.call_args.args[1])
    assert body == {"senderId": 9, "senderName": "User", "content": "hi"}


def test_send_is_not_echoed_locally(mock_client):
    """Sent messages only appear once the broker delivers them."""
    channel = ChatChannel(mock_client, "42", lambda: make_token())
    channel.mount()

    channel.send("hello")
    assert channel.messages == []

    _handler(mock_client)(_message_frame(sender_id=7, content="hello"))
    assert [m.content for m in channel.messages] == ["hello"]


def test_send_when_not_connected(mock_client):
    """Nothing is published while disconnected and the error is kept."""
    mock_client.is_connected = False
    channel = ChatChannel(mock_client, "42", lambda: make_token())

    result = channel.send("hello")

    assert not result.sent
    assert result.error is SendError.NOT_CONNECTED
    assert channel.error == "Cannot send message: not connected."
    mock_client.publish.assert_not_called()


def test_send_when_publish_refused(mock_client):
    """A connection lost between the check and the publish is reported, not raised."""
    mock_client.publish.side_effect = NotConnectedError("connection is CONNECTING")
    channel = ChatChannel(mock_client, "42", lambda: make_token())

    result = channel.send("hello")

    assert result.error is SendError.NOT_CONNECTED


@pytest.mark.parametrize("content", ["", "   ", "\n"])
def test_send_empty_content(mock_client, content):
    channel = ChatChannel(mock_client, "42", lambda: make_token())

    result = channel.send(content)

    assert result.error is SendError.EMPTY_CONTENT
    mock_client.publish.assert_not_called()


@pytest.mark.parametrize("credential", [None, "", "garbage"])
def test_send_invalid_credential(mock_client, credential):
    channel = ChatChannel(mock_client, "42", lambda: credential)

    result = channel.send("hello")

    assert result.error is SendError.INVALID_CREDENTIAL
    assert channel.error
    mock_client.publish.assert_not_called()


def test_messages_in_arrival_order(mock_client):
    channel = ChatChannel(mock_client, "42", lambda: make_token())
    channel.mount()
    seen = []
    channel.add_listener(seen.append)

    for i in range(5):
        _handler(mock_client)(_message_frame(content=f"m{i}"))

    assert [m.content for m in channel.messages] == ["m0", "m1", "m2", "m3", "m4"]
    assert [m.content for m in seen] == ["m0", "m1", "m2", "m3", "m4"]


def test_malformed_message_dropped(mock_client):
    """Frames that are not chat messages are dropped, later ones still land."""
    channel = ChatChannel(mock_client, "42", lambda: make_token())
    channel.mount()

    _handler(mock_client)(Frame("MESSAGE", {}, "not json"))
    _handler(mock_client)(Frame("MESSAGE", {}, '{"content": "missing sender"}'))
    _handler(mock_client)(_message_frame(content="ok"))

    assert [m.content for m in channel.messages] == ["ok"]


def test_history_is_bounded(mock_client):
    """Only the newest messages are kept once the limit is reached."""
    channel = ChatChannel(mock_client, "42", lambda: make_token(), history_limit=3)
    channel.mount()

    for i in range(5):
        _handler(mock_client)(_message_frame(content=f"m{i}"))

    assert [m.content for m in channel.messages] == ["m2", "m3", "m4"]


def test_unmount_unsubscribes(mock_client):
    channel = ChatChannel(mock_client, "42", lambda: make_token())
    channel.mount()
    subscription = mock_client.subscribe.return_value

    channel.unmount()
    channel.unmount()

    subscription.unsubscribe.assert_called_once()
    assert not channel.is_mounted


@pytest.mark.asyncio
async def test_two_users_in_same_room(make_client, broker, wait_until, token_factory):
    """Both participants receive the echoed message exactly once, with its literal content."""
    alice_token = token_factory(user_id=1, first_name="Alice")
    bob_token = token_factory(user_id=2, first_name="Bob")
    alice_client, bob_client = make_client(alice_token), make_client(bob_token)
    await alice_client.connect()
    await bob_client.connect()

    alice = ChatChannel(alice_client, "42", lambda: alice_token)
    bob = ChatChannel(bob_client, "42", lambda: bob_token)
    alice.mount()
    bob.mount()
    await wait_until(lambda: all(t.subscriptions for t in broker.transports))

    assert alice.send("hello").sent

    await wait_until(lambda: len(alice.messages) == 1 and len(bob.messages) == 1)
    for channel in (alice, bob):
        message = channel.messages[0]
        assert (message.sender_id, message.sender_name, message.content) == (1, "Alice", "hello")

    await alice_client.close()
    await bob_client.close()


def test_history_unbounded_by_default(mock_client):
    """Without a configured cap no well-formed message is ever evicted."""
    channel = ChatChannel(mock_client, "42", lambda: make_token())
    channel.mount()

    for i in range(1001):
        _handler(mock_client)(_message_frame(content=f"m{i}"))

    assert len(channel.messages) == 1001
    assert channel.messages[0].content == "m0"


def test_explicit_unbounded_overrides_configured_cap(mock_client, monkeypatch):
    """history_limit=None asks for an unbounded buffer even when a cap is configured."""
    monkeypatch.setattr(settings, "chat_history_limit", 2)
    capped = ChatChannel(mock_client, "1", lambda: make_token())
    unbounded = ChatChannel(mock_client, "2", lambda: make_token(), history_limit=None)
    capped.mount()
    unbounded.mount()
    capped_handler, unbounded_handler = (call.args[1] for call in mock_client.subscribe.call_args_list)

    for i in range(3):
        capped_handler(_message_frame(content=f"m{i}"))
        unbounded_handler(_message_frame(content=f"m{i}"))

    assert [m.content for m in capped.messages] == ["m1", "m2"]
    assert [m.content for m in unbounded.messages] == ["m0", "m1", "m2"]


def test_unmount_listener_called_once(mock_client):
    """Unmount listeners fire on the first unmount only, and can be removed."""
    channel = ChatChannel(mock_client, "42", lambda: make_token())
    channel.mount()
    calls = []
    channel.add_unmount_listener(lambda: calls.append("kept"))
    remove = channel.add_unmount_listener(lambda: calls.append("removed"))
    remove()

    channel.unmount()
    channel.unmount()

    assert calls == ["kept"]
