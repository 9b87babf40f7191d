import asyncio

import simulate_route
from fakes import FakeTransport
from simulate_route import DEFAULT_ROUTE, drift_route, parse_args, simulate


def test_default_route_has_six_points():
    assert len(DEFAULT_ROUTE) == 6
    assert DEFAULT_ROUTE[0] == {"lat": 12.9716, "lng": 77.5946}


def test_drift_route_moves_north_east():
    assert drift_route(2) == [
        {"lat": 12.9721, "lng": 77.5951},
        {"lat": 12.9726, "lng": 77.5956},
    ]


def test_parse_args():
    args = parse_args(["B123", "--interval", "0.5", "--steps", "10"])
    assert args.booking_id == "B123"
    assert args.interval == 0.5
    assert args.steps == 10


def test_simulate_streams_route_then_leaves(monkeypatch):
    transports = []

    def make_transport(url):
        transport = FakeTransport()
        transport.url = url
        transports.append(transport)
        return transport

    monkeypatch.setattr(simulate_route, "WebSocketTransport", make_transport)

    sent = asyncio.run(simulate("B123", "ws://relay/ws", 0, DEFAULT_ROUTE))

    transport = transports[0]
    assert sent == 6
    assert transport.url == "ws://relay/ws"
    assert transport.kinds() == ["join_booking"] + ["send_location"] * 6 + ["leave_booking"]
    assert transport.closed is True
