"""Small helpers shared by the vendor API clients."""

import logging

import aiohttp

from .errors import VendorError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=300)


async def ensure_ok(vendor: str, response: aiohttp.ClientResponse) -> None:
    """Raise VendorError for any non-2xx response"""
    if 200 <= response.status < 300:
        return

    text = await response.text()
    message = text
    if "json" in response.headers.get("Content-Type", ""):
        try:
            data = await response.json()
            if isinstance(data, dict):
                detail = data.get("detail")
                if isinstance(detail, dict):
                    detail = detail.get("message")
                message = data.get("message") or data.get("error") or detail or text
        except (aiohttp.ContentTypeError, ValueError):
            pass

    logger.warning("[%s] HTTP %s: %s", vendor, response.status, str(message)[:500])
    raise VendorError(vendor, response.status, str(message))


async def download(vendor: str, session: aiohttp.ClientSession, url: str) -> bytes:
    """Fetch a vendor-hosted asset"""
    async with session.get(url) as resp:
        await ensure_ok(vendor, resp)
        return await resp.read()
