from datetime import datetime, timezone

import pytest

from rtk_ntrip.session import NtripSession
from rtk_ntrip.types import ConnectionConfig, GgaFix


class FakeTimerHandle:
    def __init__(self, loop, delay, callback, args):
        self.loop = loop
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Records call_later() timers so tests can fire them by hand."""

    def __init__(self):
        self.timers = []

    def call_later(self, delay, callback, *args):
        handle = FakeTimerHandle(self, delay, callback, args)
        self.timers.append(handle)
        return handle

    def pending(self):
        return [t for t in self.timers if not t.cancelled]

    def fire(self, handle):
        assert not handle.cancelled
        handle.cancelled = True
        handle.callback(*handle.args)


class FakeTransport:
    def __init__(self, address, listener):
        self.address = address
        self.listener = listener
        self.opened = False
        self.closed = False
        self.writes = []

    def open(self):
        self.opened = True

    def write(self, data):
        if self.closed:
            raise OSError("transport is not connected")
        self.writes.append(data)

    def close(self):
        self.closed = True


class FakeTransportFactory:
    def __init__(self):
        self.created = []

    def __call__(self, address, listener):
        transport = FakeTransport(address, listener)
        self.created.append(transport)
        return transport

    @property
    def last(self):
        return self.created[-1]


class FakeResolver:
    def __init__(self):
        self.calls = []
        self.fail_hosts = set()

    def __call__(self, host, port):
        from rtk_ntrip.transport import ResolutionError

        self.calls.append((host, port))
        if host in self.fail_hosts:
            raise ResolutionError(f"unknown host {host}")
        return (2, 1, 6, "", ("127.0.0.1", port))


class FakePositionSource:
    def __init__(self, fix=None):
        self.fix = fix

    def current_fix(self):
        return self.fix


class FakeSink:
    def __init__(self):
        self.messages = []

    def deliver(self, message):
        self.messages.append(message)


@pytest.fixture
def fix():
    return GgaFix(
        lat=35.648765,
        lon=139.741234,
        alt=41.5,
        timestamp=datetime(2024, 5, 1, 12, 34, 56, tzinfo=timezone.utc),
    )


@pytest.fixture
def config():
    return ConnectionConfig(
        server="caster.example.com",
        port=2101,
        mountpoint="/TEST",
        send_position=True,
        username="user",
        password="pass",
    )


@pytest.fixture
def loop():
    return FakeLoop()


@pytest.fixture
def transports():
    return FakeTransportFactory()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def errors():
    return []


@pytest.fixture
def make_session(loop, transports, resolver, sink, errors, fix):
    def factory(position=fix, **kwargs):
        return NtripSession(
            loop,
            sink=sink,
            position_source=FakePositionSource(position),
            on_error=errors.append,
            resolver=resolver,
            transport_factory=transports,
            **kwargs,
        )

    return factory
