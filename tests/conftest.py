"""Shared fixtures for the z3_dsk_tool test suite.

Stub and story data are synthetic: the stub is a repeating byte ramp
of exactly STUB_SIZE bytes, and stories are built so that every
256-byte chunk is identifiable by its fill byte.
"""

import io

import pytest

from z3_dsk_tool import SECTOR_SIZE, STUB_SIZE


def make_story(num_chunks, *, tail=b""):
    """A story whose chunk i is filled with byte (i % 256), plus `tail`."""
    return b"".join(bytes([i % 256]) * SECTOR_SIZE for i in range(num_chunks)) + tail


class TrickleReader(io.RawIOBase):
    """A readable stream that returns at most `step` bytes per read,
    the way a pipe may.
    """

    def __init__(self, data, step):
        self._data = data
        self._pos = 0
        self._step = step

    def readable(self):
        return True

    def read(self, size=-1):
        if size < 0:
            size = len(self._data)
        n = min(size, self._step)
        byts = self._data[self._pos : self._pos + n]
        self._pos += len(byts)
        return byts


class FailingReader(io.RawIOBase):
    """Returns `good_bytes` of data, then raises OSError."""

    def __init__(self, good_bytes):
        self._remaining = good_bytes

    def readable(self):
        return True

    def read(self, size=-1):
        if self._remaining <= 0:
            raise OSError(5, "Input/output error")
        n = min(size, self._remaining)
        self._remaining -= n
        return b"\xAA" * n


class FailingWriter(io.RawIOBase):
    """Accepts `good_bytes` of data, then raises OSError."""

    def __init__(self, good_bytes):
        self.data = bytearray()
        self._remaining = good_bytes

    def writable(self):
        return True

    def write(self, byts):
        if len(byts) > self._remaining:
            raise OSError(28, "No space left on device")
        self._remaining -= len(byts)
        self.data += byts
        return len(byts)


@pytest.fixture
def stub_bytes():
    return bytes(i % 256 for i in range(STUB_SIZE))


@pytest.fixture
def stub_file(tmp_path, stub_bytes):
    path = tmp_path / "info3m.bin"
    path.write_bytes(stub_bytes)
    return path


@pytest.fixture
def story_file(tmp_path):
    path = tmp_path / "minizork.z3"
    path.write_bytes(make_story(20, tail=b"\x42" * 100))
    return path
