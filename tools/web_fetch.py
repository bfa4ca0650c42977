"""Web tool - fetch a URL over HTTP."""

import asyncio

import aiohttp
from pydantic import BaseModel, Field

from tools.base_tool import Tool


MAX_BODY_CHARS = 20000


class HttpFetchParams(BaseModel):
    url: str = Field(..., pattern=r"^https?://", description="Absolute http(s) URL.")
    timeout: float = Field(default=15.0, gt=0, description="Request timeout in seconds.")


class HttpFetchTool(Tool):
    name = "http_fetch"
    description = "Fetch a web page or API endpoint with GET and return the response text."
    category = "web"
    Params = HttpFetchParams

    async def execute(self, params: HttpFetchParams) -> dict:
        timeout = aiohttp.ClientTimeout(total=params.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(params.url) as resp:
                    body = await resp.text(errors="replace")
                    return {
                        "url": params.url,
                        "status": resp.status,
                        "content_type": resp.headers.get("Content-Type", ""),
                        "body": body[:MAX_BODY_CHARS],
                        "truncated": len(body) > MAX_BODY_CHARS,
                    }
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Timed out fetching {params.url}") from e
