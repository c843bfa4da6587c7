"""
Mock plumbing for the aiohttp-based provider adapters.
"""

from unittest.mock import AsyncMock, MagicMock


def mock_response(status=200, json_data=None, body=b"", text="", headers=None):
    """Async context manager standing in for ``ClientSession.post(...)`` / ``.get(...)``."""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=json_data if json_data is not None else {})
    response.read = AsyncMock(return_value=body)
    response.text = AsyncMock(return_value=text)
    response.headers = headers or {}

    context = MagicMock()
    context.__aenter__.return_value = response
    context.__aexit__.return_value = False
    return context
