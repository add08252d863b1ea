# conftest.py
import os
import sys
from typing import Callable, List

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from request_logger import RequestLogger
from structures import InboundRequest

BACKEND_URL = "http://backend.internal:3000"


@pytest.fixture
def config() -> Config:
    return Config(backend_url=BACKEND_URL, connect_timeout=0.5, total_timeout=1.0)


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "api-proxy.log"


@pytest.fixture
def request_log(log_path):
    logger = RequestLogger(str(log_path))
    yield logger
    logger.close()


def read_log_lines(path) -> List[str]:
    if not os.path.exists(path):
        return []
    with open(path, encoding="utf-8") as fh:
        return fh.read().splitlines()


@pytest.fixture
def make_request() -> Callable[..., InboundRequest]:
    def _make(method="GET", target="/", headers=None, body=None, client_addr="10.0.0.7"):
        return InboundRequest(method, target, httpx.Headers(headers or {}), body, client_addr)
    return _make


@pytest.fixture
def mock_writer():
    from unittest.mock import AsyncMock, MagicMock
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    writer.is_closing.return_value = False
    writer.get_extra_info.return_value = ("192.0.2.10", 51515)
    return writer
