import asyncio

import pytest
from pytest_socket import disable_socket

from sources.base import ChannelError
from sources.tibber import SessionHandle

# Script steps understood by FakeChannel.recv()
IDLE = "<idle>"      # stay silent until the receiver gives up
CLOSED = "<closed>"  # remote closes the socket
STOP = "<stop>"      # request a cooperative stop, then stay silent


def pytest_runtest_setup():
    """
    Runs before every test.
    We disable network access. Every attempt to connect
    (HTTP, DNS, etc) will immediately raise a SocketBlockedError.
    """
    disable_socket(allow_unix_socket=True)


async def _forever():
    await asyncio.Event().wait()


class FakeChannel:
    """Scripted MessageChannel. Silent once the script runs out."""

    def __init__(self, script, on_stop=None, hang_on_close=False):
        self.script = iter(script)
        self.on_stop = on_stop
        self.hang_on_close = hang_on_close
        self.sent = []
        self.closed = False

    async def send(self, message):
        self.sent.append(message)

    async def recv(self):
        step = next(self.script, IDLE)
        if step == IDLE:
            await _forever()
        if step == CLOSED:
            raise ChannelError("Socket closed while expecting data")
        if step == STOP:
            self.on_stop()
            await _forever()
        return step

    async def close(self):
        if self.hang_on_close:
            await _forever()
        self.closed = True


class FakeConnector:
    """
    Hands out the given channels in order. None hangs the connect.
    Once they are used up it requests a stop and fails.
    """

    def __init__(self, handle, channels):
        self.handle = handle
        self.channels = list(channels)
        self.calls = []

    async def __call__(self, url, subprotocol, headers):
        self.calls.append((url, subprotocol, headers))
        if not self.channels:
            self.handle.request_stop()
            raise ChannelError("No more channels")
        channel = self.channels.pop(0)
        if channel is None:
            await _forever()
        return channel


class RecordingWriter:
    def __init__(self):
        self.points = []

    def write(self, timestamp, fields):
        self.points.append((timestamp, fields))


@pytest.fixture
def handle():
    return SessionHandle()


@pytest.fixture
def writer():
    return RecordingWriter()


@pytest.fixture
def make_channel(handle):
    def factory(*script, hang_on_close=False):
        return FakeChannel(script, on_stop=handle.request_stop, hang_on_close=hang_on_close)
    return factory


@pytest.fixture
def make_connector(handle):
    def factory(*channels):
        return FakeConnector(handle, channels)
    return factory
