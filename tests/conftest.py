# conftest.py
import sys
import os
import pytest
from unittest.mock import MagicMock, AsyncMock

sys.path.append(os.getcwd())

from structures import Headers, IncomingRequest

class LogCollector:
    """Stand-in for the manager callback; keeps (level, message) pairs."""

    def __init__(self):
        self.records = []

    def __call__(self, level, msg):
        self.records.append((level, str(msg)))

    def messages(self, level):
        return [m for lvl, m in self.records if lvl == level]

@pytest.fixture
def log_collector():
    return LogCollector()

@pytest.fixture
def mock_writer():
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    writer.is_closing.return_value = False
    writer.get_extra_info.return_value = ("10.0.0.1", 5555)
    return writer

def written(writer):
    """Everything passed to writer.write, joined."""
    return b"".join(c.args[0] for c in writer.write.call_args_list)

def make_request(method="GET", url="http://example.com/", headers=None,
                 remote_addr="10.0.0.1:5555", body=b""):
    return IncomingRequest(method, url, Headers(headers or []), remote_addr, body)
