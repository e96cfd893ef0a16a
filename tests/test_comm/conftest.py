"""Fixtures for transport client tests: aiohttp is patched, never called."""

from contextlib import ExitStack
from unittest.mock import AsyncMock, Mock, patch

import pytest


class MockResponseContext:
    def __init__(self, response):
        self.response = response

    async def __aenter__(self):
        return self.response

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None


class MockSessionContext:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None


@pytest.fixture
def patch_client_session():
    """
    Patch ``aiohttp.ClientSession`` in a module.

    Returns a function taking the module path and the JSON body of the
    response, which returns the mocks to tweak.
    """
    with ExitStack() as stack:

        def patcher(module: str, json_body=None):
            mock_client_session = stack.enter_context(
                patch(f"{module}.aiohttp.ClientSession")
            )
            mock_response = AsyncMock()
            mock_response.status = 200
            mock_response.json = AsyncMock(return_value=json_body or {})
            mock_response.text = AsyncMock(return_value="")

            mock_session = Mock()
            mock_session.post = Mock(return_value=MockResponseContext(mock_response))
            mock_session.get = Mock(return_value=MockResponseContext(mock_response))
            mock_client_session.return_value = MockSessionContext(mock_session)

            return {
                "session": mock_session,
                "response": mock_response,
                "client_session": mock_client_session,
            }

        yield patcher
