import pytest
from PIL import Image

import thermal_printer


class FakeTransport:
    """
    In-memory transport. Every write stays 'pending' for drain_polls
    polls of pending_write_count() before the buffer reports empty.
    """

    def __init__(self, drain_polls=1, fail_open=None):
        self.drain_polls = drain_polls
        self.fail_open = fail_open
        self.writes = []
        self.events = []
        self.is_open = False
        self.open_calls = 0
        self.close_calls = 0
        self._pending = 0
        self._busy = 0

    def open(self):
        self.open_calls += 1
        if self.fail_open is not None:
            raise self.fail_open
        self.is_open = True

    def close(self):
        self.close_calls += 1
        self.is_open = False
        self.events.append(("close", None))

    def write_bytes(self, data):
        data = bytes(data)
        self.writes.append(data)
        self.events.append(("write", data))
        self._pending += len(data)
        self._busy = self.drain_polls
        return len(data)

    def pending_write_count(self):
        if self._busy > 0:
            self._busy -= 1
            value = self._pending
        else:
            self._pending = 0
            value = 0
        self.events.append(("poll", value))
        return value

    @property
    def sent(self):
        return b"".join(self.writes)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    """Records time.sleep calls made by the driver instead of sleeping."""
    calls = []
    monkeypatch.setattr(thermal_printer.time, "sleep", calls.append)
    return calls


@pytest.fixture
def solid_image():
    def _make(width, height, color=(0, 0, 0), mode="RGB"):
        return Image.new(mode, (width, height), color)
    return _make


@pytest.fixture
def image_file(tmp_path):
    def _make(name="logo.png", size=(400, 200), color=(0, 0, 0)):
        path = tmp_path / name
        Image.new("RGB", size, color).save(path)
        return path
    return _make
