"""
HTTP plumbing shared by the platform clients.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx


@asynccontextmanager
async def http_session(
    client: Optional[httpx.AsyncClient], timeout: float
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return

    async with httpx.AsyncClient(timeout=timeout) as session:
        yield session


def response_json(response: httpx.Response) -> dict:
    """Decode a JSON object body; anything else is treated as malformed."""
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
