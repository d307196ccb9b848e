"""Helpers for running vendor clients against a local aiohttp server."""

from aiohttp import web
from aiohttp.test_utils import TestServer


async def against(app: web.Application, scenario):
    """Start ``app`` on a free port and run ``scenario(base_url)`` against it"""
    server = TestServer(app)
    await server.start_server()
    try:
        return await scenario(str(server.make_url("/")).rstrip("/"))
    finally:
        await server.close()


def origin(request: web.Request) -> str:
    return str(request.url.origin())
