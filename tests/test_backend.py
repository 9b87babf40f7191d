import asyncio
import json
from unittest.mock import MagicMock, call

import pytest

from backend import LocalBroker, RedisBroker, build_broker
from fakes import FakePeer
from relay import RoomRelay


@pytest.fixture
def broker():
    return RedisBroker(redis_client=MagicMock(), pubsub_client=MagicMock(), poll_timeout=0.01)


def envelope(message, exclude=None, booking_id="B123"):
    return json.dumps({"bookingId": booking_id, "exclude": exclude, "message": message})


def test_build_broker():
    assert isinstance(build_broker("memory"), LocalBroker)
    with pytest.raises(ValueError):
        build_broker("carrier-pigeon")


def test_publish_goes_to_booking_channel(broker):
    broker.redis_client.publish.return_value = 3
    message = {"kind": "receive_ack", "bookingId": "B123", "status": "acknowledged", "message": "Go"}

    subscribers = asyncio.run(broker.publish("B123", message, exclude="conn-1"))

    assert subscribers == 3
    channel, payload = broker.redis_client.publish.call_args.args
    assert channel == "booking:channel:B123"
    assert json.loads(payload) == {"bookingId": "B123", "exclude": "conn-1", "message": message}


def test_membership_is_mirrored_in_redis(broker):
    broker.redis_client.scard.return_value = 4
    relay = RoomRelay(broker=broker)
    peer = FakePeer("conn-1")
    broker.room_opened = MagicMock()
    broker.room_closed = MagicMock()

    relay.join(peer, "B123")
    relay.disconnect(peer)

    broker.redis_client.sadd.assert_called_once_with("booking:members:B123", "conn-1")
    broker.redis_client.srem.assert_called_once_with("booking:members:B123", "conn-1")
    broker.room_opened.assert_called_once_with("B123")
    broker.room_closed.assert_called_once_with("B123")
    assert relay.member_count("B123") == 4


def test_dispatch_excludes_the_sender(broker):
    relay = RoomRelay(broker=broker)
    broker.room_opened = MagicMock()
    sender, receiver = FakePeer("conn-1"), FakePeer("conn-2")
    relay.join(sender, "B123")
    relay.join(receiver, "B123")
    message = {"kind": "receive_location", "bookingId": "B123", "location": {"lat": 1.0, "lng": 2.0}}

    delivered = asyncio.run(broker.dispatch("B123", envelope(message, exclude="conn-1")))

    assert delivered == 1
    assert sender.received == []
    assert receiver.received == [message]


def test_dispatch_ignores_garbage(broker):
    RoomRelay(broker=broker)
    assert asyncio.run(broker.dispatch("B123", "{not json")) == 0
    assert asyncio.run(broker.dispatch("B123", json.dumps({"bookingId": "B123"}))) == 0


def test_listener_runs_while_room_is_occupied(broker):
    message = {"kind": "receive_ack", "bookingId": "B123", "status": "acknowledged", "message": "Go"}
    pending = [{"type": "message", "data": envelope(message)}]
    pubsub = MagicMock()
    pubsub.get_message.side_effect = lambda **kwargs: pending.pop(0) if pending else None
    broker.pubsub_client.pubsub.return_value = pubsub

    async def scenario():
        relay = RoomRelay(broker=broker)
        peer = FakePeer("conn-1")
        relay.join(peer, "B123")
        task = broker.listener_tasks["B123"]
        for _ in range(200):
            if peer.received:
                break
            await asyncio.sleep(0.01)
        relay.disconnect(peer)
        await asyncio.wait([task], timeout=2)
        return peer, task

    peer, task = asyncio.run(scenario())

    assert peer.received == [message]
    assert task.done()
    assert broker.listener_tasks == {}
    pubsub.subscribe.assert_called_once_with("booking:channel:B123")
    pubsub.close.assert_called_once()


def test_join_subscribes_before_returning(broker):
    pubsub = MagicMock()
    pubsub.get_message.return_value = None
    broker.pubsub_client.pubsub.return_value = pubsub

    async def scenario():
        relay = RoomRelay(broker=broker)
        peer = FakePeer("conn-1")
        relay.join(peer, "B123")
        # No await yet: the listener task has not run a single step
        subscribed = list(pubsub.subscribe.call_args_list)
        relay.disconnect(peer)
        await asyncio.sleep(0.05)
        return subscribed

    subscribed = asyncio.run(scenario())

    assert subscribed == [call("booking:channel:B123")]
    pubsub.close.assert_called_once()
    assert broker.listener_tasks == {}
