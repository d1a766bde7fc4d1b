# src/content_gateway/utils/http.py

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx


@asynccontextmanager
async def http_session(
    client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[httpx.Timeout] = None,
    proxy: Optional[str] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """
    Yield the caller's shared client untouched, or a short-lived one that is
    closed on exit.
    """
    if client is not None:
        yield client
        return
    kwargs = {"timeout": timeout}
    if proxy:
        kwargs["proxy"] = proxy
    async with httpx.AsyncClient(**kwargs) as session:
        yield session
