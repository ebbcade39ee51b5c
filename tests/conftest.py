from datetime import datetime, timezone
from typing import Callable, List, Optional

import httpx
import pytest

from cigam_client import CigamClient

BASE_URL = "https://erp.test/integracao"
PIN = "s3cret"
FIXED_NOW = datetime(2026, 3, 14, 9, 30, 15, 123456, tzinfo=timezone.utc)


@pytest.fixture
def sent() -> List[httpx.Request]:
    """Requests captured by the mock transport"""
    return []


@pytest.fixture
def make_client(sent):
    """Build a CigamClient backed by httpx.MockTransport and a fixed clock"""

    def _make(
        response: Optional[httpx.Response] = None,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    ) -> CigamClient:
        def _handle(request: httpx.Request) -> httpx.Response:
            sent.append(request)
            if handler is not None:
                return handler(request)
            if response is not None:
                return response
            return httpx.Response(200, json=[])

        return CigamClient(
            BASE_URL + "/",
            PIN,
            transport=httpx.MockTransport(_handle),
            clock=lambda: FIXED_NOW,
        )

    return _make
