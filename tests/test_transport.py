import asyncio
import json
import socket

import pytest
import websockets

from session import TransportClosed, WebSocketTransport


def unused_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def noisy_relay(websocket):
    """Sends two frames a client must ignore, then answers every message."""
    await websocket.send("not json")
    await websocket.send("[1, 2]")
    async for raw in websocket:
        data = json.loads(raw)
        if data.get("kind") == "bye":
            await websocket.close()
            return
        await websocket.send(json.dumps({"kind": "echo", "got": data}))


def with_server(client):
    async def scenario():
        async with websockets.serve(noisy_relay, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            return await client(WebSocketTransport(f"ws://127.0.0.1:{port}"))

    return asyncio.run(scenario())


def test_connect_to_closed_port_raises_transport_closed():
    transport = WebSocketTransport(f"ws://127.0.0.1:{unused_port()}")

    with pytest.raises(TransportClosed):
        asyncio.run(transport.connect())


def test_unconnected_transport_refuses_io():
    transport = WebSocketTransport("ws://127.0.0.1:1")

    with pytest.raises(TransportClosed):
        asyncio.run(transport.send({"kind": "join_booking", "bookingId": "B123"}))
    with pytest.raises(TransportClosed):
        asyncio.run(transport.receive())


def test_undecodable_and_non_object_frames_are_empty():
    async def client(transport):
        await transport.connect()
        frames = [await transport.receive(), await transport.receive()]
        await transport.send({"kind": "join_booking", "bookingId": "B123"})
        frames.append(await transport.receive())
        await transport.close()
        return frames

    assert with_server(client) == [
        {},
        {},
        {"kind": "echo", "got": {"kind": "join_booking", "bookingId": "B123"}},
    ]


def test_server_close_surfaces_as_transport_closed():
    async def client(transport):
        await transport.connect()
        await transport.receive()
        await transport.receive()
        await transport.send({"kind": "bye"})
        with pytest.raises(TransportClosed):
            await transport.receive()
        with pytest.raises(TransportClosed):
            await transport.send({"kind": "join_booking", "bookingId": "B123"})
        await transport.close()
        return True

    assert with_server(client)


def test_close_is_repeatable_and_final():
    async def client(transport):
        await transport.connect()
        await transport.close()
        await transport.close()
        with pytest.raises(TransportClosed):
            await transport.send({"kind": "join_booking", "bookingId": "B123"})
        return True

    assert with_server(client)
