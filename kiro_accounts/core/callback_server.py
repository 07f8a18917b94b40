"""Loopback listener for browser redirects (in-process delivery).

Used when the OS URL-scheme handler is not available: the login is begun
with ``redirect_uri=http://127.0.0.1:<port>/authenticate-success`` and the
browser lands here. The query string is re-attached to the registered
``kiro://`` redirect so the callback reaches AuthState exactly as an
OS-delivered deep link would.
"""

import asyncio
import html
import logging
from typing import Optional

from aiohttp import web

from kiro_accounts.core.deep_link import DeepLinkRouter
from kiro_accounts.errors import KiroAccountsError

logger = logging.getLogger(__name__)

CALLBACK_PORT_RANGE = range(45200, 45300)

_SUCCESS_PAGE = (
    "<h1>Signed in</h1><p>You can close this window.</p>"
    "<script>window.close()</script>"
)


class CallbackServer:
    """aiohttp server that forwards one or more redirects to the router."""

    def __init__(self, router: DeepLinkRouter, *, host: str = "127.0.0.1"):
        self.router = router
        self.host = host
        self.port: Optional[int] = None
        self._runner: Optional[web.AppRunner] = None
        self.received = asyncio.Event()

    @property
    def callback_path(self) -> str:
        return self.router.auth_state.settings.callback_path

    @property
    def redirect_uri(self) -> str:
        if self.port is None:
            raise RuntimeError("Callback server is not running")
        return f"http://{self.host}:{self.port}{self.callback_path}"

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.callback_path, self._handle_callback)
        return app

    async def start(self, ports=CALLBACK_PORT_RANGE) -> str:
        """Bind the first free port in ``ports``. Returns the redirect URI."""
        runner = web.AppRunner(self.make_app())
        await runner.setup()
        for p in ports:
            try:
                site = web.TCPSite(runner, self.host, p)
                await site.start()
                self.port = p
                break
            except OSError:
                continue
        if self.port is None:
            await runner.cleanup()
            raise OSError(f"No available port for callback server ({ports.start}-{ports.stop - 1})")
        self._runner = runner
        logger.info("Callback server listening on port %d", self.port)
        return self.redirect_uri

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self.port = None

    async def __aenter__(self) -> "CallbackServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def canonical_url(self, query_string: str) -> str:
        settings = self.router.auth_state.settings
        return f"{settings.redirect_uri}?{query_string}" if query_string else settings.redirect_uri

    async def _handle_callback(self, request: web.Request) -> web.Response:
        url = self.canonical_url(request.query_string)
        self.received.set()
        try:
            account = await self.router.handle_local(url, provider_hint="social")
        except KiroAccountsError as exc:
            logger.error("Loopback login failed: %s", exc)
            return web.Response(
                text=f"<h1>Error</h1><p>{html.escape(exc.message)}</p>",
                content_type="text/html",
                status=exc.http_status,
            )
        if account is None:
            return web.Response(
                text="<h1>Error</h1><p>The sign-in response could not be read.</p>",
                content_type="text/html",
                status=400,
            )
        return web.Response(text=_SUCCESS_PAGE, content_type="text/html")
