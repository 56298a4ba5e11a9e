#!/usr/bin/env python3
"""
🔐 Interactive authorization dialog
Opens the Spotify authorization URL in the user's browser and waits for the
redirect on a loopback HTTP server.

- Authorization code: the code arrives in the redirect query string
- Implicit grant: the token sits in the URL fragment, which browsers never
  send to the server, so the callback page posts ``location.hash`` back

The stdlib HTTP server runs in the event loop's default executor; the
coroutine resolves with the full redirect URL, or None when the user denies
access or the wait is cancelled.
"""

import asyncio
import html
import logging
import threading
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, Optional, Protocol
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger("kaleidoplan.auth_dialog")

_PAGE = """<html>
<head><title>{title}</title></head>
<body style="font-family: Arial, sans-serif; text-align: center; margin-top: 50px;">
    <h1 style="color: {color};">{title}</h1>
    <p>{message}</p>
    {script}
</body>
</html>
"""

_FRAGMENT_SCRIPT = """<script>
    fetch(window.location.pathname, {method: "POST", body: window.location.hash.substring(1)})
        .then(function () { document.querySelector("p").textContent = "You can close this window now."; });
</script>"""


class AuthorizationDialog(Protocol):
    async def open(self, url: str) -> Optional[str]:
        """Show ``url`` and return the redirect URL, or None if the user backed out."""
        ...


class _CallbackServer(HTTPServer):
    redirect_url: Optional[str]
    callback_path: str
    done: threading.Event


class _CallbackHandler(BaseHTTPRequestHandler):
    """Handles the authorization redirect on the loopback interface."""

    server: _CallbackServer

    def _base_url(self) -> str:
        host, port = self.server.server_address[:2]
        return f"http://{host}:{port}"

    def _respond(self, status: int, title: str, message: str, color: str = "#1DB954", script: str = "") -> None:
        body = _PAGE.format(title=title, message=html.escape(message), color=color, script=script)
        self.send_response(status)
        self.send_header("Content-type", "text/html; charset=utf-8")
        self.end_headers()
        self.wfile.write(body.encode("utf-8"))

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path != self.server.callback_path:
            self._respond(404, "Not Found", "Unknown path", color="#E22134")
            return

        query = parse_qs(parsed.query)
        if "error" in query:
            self.server.redirect_url = self._base_url() + self.path
            self.server.done.set()
            self._respond(400, "Authorization Failed", f"Error: {query['error'][0]}", color="#E22134")
        elif "code" in query:
            self.server.redirect_url = self._base_url() + self.path
            self.server.done.set()
            self._respond(200, "Authorization Successful!", "You can now close this window and return to Kaleidoplan.")
        else:
            # implicit grant: hand the fragment back via POST
            self._respond(200, "Completing sign-in...", "One moment.", script=_FRAGMENT_SCRIPT)

    def do_POST(self):
        parsed = urlparse(self.path)
        if parsed.path != self.server.callback_path:
            self._respond(404, "Not Found", "Unknown path", color="#E22134")
            return
        length = int(self.headers.get("Content-Length") or 0)
        fragment = self.rfile.read(length).decode("utf-8", errors="replace") if length else ""
        self.server.redirect_url = f"{self._base_url()}{parsed.path}#{fragment}"
        self.server.done.set()
        self.send_response(204)
        self.end_headers()

    def log_message(self, format, *args):
        logger.debug("auth_dialog.request " + format, *args)


class LoopbackAuthorizationDialog:
    """Browser + loopback redirect server; the redirect URI must point at 127.0.0.1/localhost."""

    def __init__(
        self,
        redirect_uri: str,
        open_browser: Callable[[str], object] = webbrowser.open,
        poll_interval: float = 0.5,
    ) -> None:
        parsed = urlparse(redirect_uri)
        if parsed.hostname not in ("127.0.0.1", "localhost"):
            raise ValueError(f"Loopback dialog needs a local redirect URI, got {redirect_uri}")
        self.host = parsed.hostname
        self.port = parsed.port or 80
        self.callback_path = parsed.path or "/"
        self._open_browser = open_browser
        self._poll_interval = poll_interval

    def _serve(self, server: _CallbackServer) -> Optional[str]:
        try:
            while not server.done.is_set():
                server.handle_request()
            return server.redirect_url
        finally:
            server.server_close()

    async def open(self, url: str) -> Optional[str]:
        server = _CallbackServer((self.host, self.port), _CallbackHandler)
        server.timeout = self._poll_interval
        server.redirect_url = None
        server.callback_path = self.callback_path
        server.done = threading.Event()

        loop = asyncio.get_running_loop()
        serving = loop.run_in_executor(None, self._serve, server)

        logger.info("auth_dialog.open", extra={"redirect_port": self.port})
        if not self._open_browser(url):
            logger.warning("Could not open a browser; visit this URL to sign in: %s", url)

        try:
            redirect = await asyncio.shield(serving)
        except asyncio.CancelledError:
            # stop the worker thread within one poll interval
            server.done.set()
            raise

        if redirect is None:
            return None
        if "error" in parse_qs(urlparse(redirect).query):
            logger.info("auth_dialog.denied")
            return None
        return redirect
