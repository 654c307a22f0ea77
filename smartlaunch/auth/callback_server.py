"""Ephemeral localhost HTTP server capturing the OAuth2 redirect.

Serves a small result page and records the full redirect URL, which is
then handed to the OAuth2 grant unchanged so it can validate ``state``
and read either the query (code grant) or the fragment (implicit grant).
"""

# pylint: disable=logging-too-many-args

# pylint: disable=C0103,W0212

from __future__ import annotations

import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse


logger = logging.getLogger("smartlaunch.auth")

_PAGE_STYLE = """
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
  p { color: #666; }
"""

_SUCCESS_HTML = f"""<!DOCTYPE html>
<html>
<head><title>Authorization Complete</title><style>{_PAGE_STYLE}</style></head>
<body><div class="card">
  <h1>Authorization complete</h1>
  <p>You can close this window and return to the application.</p>
</div></body></html>"""

_ERROR_HTML = (
    "<!DOCTYPE html>\n<html>\n<head><title>Authorization Failed</title>"
    f"<style>{_PAGE_STYLE}</style></head>\n"
    '<body><div class="card">\n  <h1>Authorization failed</h1>\n  <p>{error}</p>\n'
    "</div></body></html>"
)

# Implicit grant tokens arrive in the fragment, which browsers never send;
# this page posts it back as a query string.
_FRAGMENT_HTML = """<!DOCTYPE html>
<html>
<head><title>Completing Authorization</title></head>
<body><script>
  if (window.location.hash.length > 1) {
    window.location.replace(
      window.location.pathname + "?__fragment=" +
      encodeURIComponent(window.location.hash.substring(1)));
  }
</script></body></html>"""


class OAuthCallbackServer:
    """Localhost HTTP server waiting for one OAuth2 redirect.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for auto-assign).
    path : str
        Path the redirect arrives on (default ``"/callback"``).
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0, path: str = "/callback") -> None:
        self._host = host
        self._port = port
        self._path = path or "/"
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._result: str | None = None
        self._result_event = threading.Event()
        self._cancelled = False
        self._actual_port: int = 0

    @property
    def redirect_uri(self) -> str:
        """The redirect URI served, e.g. ``http://127.0.0.1:54321/callback``."""
        return f"http://{self._host}:{self._actual_port}{self._path}"

    def start(self) -> str:
        """Start the server on a daemon thread.

        Returns
        -------
        str
            The redirect URI to register with the authorization server.
        """
        server_ref = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path != server_ref._path:
                    self.send_error(404)
                    return

                params = parse_qs(parsed.query)
                if not params:
                    self._send_html(_FRAGMENT_HTML)
                    return

                fragment = params.get("__fragment", [None])[0]
                if fragment is not None:
                    url = f"{server_ref.redirect_uri}#{fragment}"
                    params = parse_qs(fragment)
                else:
                    url = f"{server_ref.redirect_uri}?{parsed.query}"

                if server_ref._result_event.is_set():
                    self._send_html(_SUCCESS_HTML)
                    return

                server_ref._result = url
                error = params.get("error", [None])[0]
                if error:
                    message = params.get("error_description", [error])[0]
                    self._send_html(_ERROR_HTML.format(error=html.escape(message, quote=True)))
                else:
                    self._send_html(_SUCCESS_HTML)
                server_ref._result_event.set()
                threading.Thread(target=server_ref._shutdown, daemon=True).start()

            def _send_html(self, content: str) -> None:
                encoded = content.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                if args:
                    logger.debug("OAuth callback server: %s", args[0] % args[1:])

        self._server = HTTPServer((self._host, self._port), _CallbackHandler)
        self._actual_port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

        logger.debug("OAuth callback server started on %s", self.redirect_uri)
        return self.redirect_uri

    def _shutdown(self) -> None:
        if self._server:
            self._server.shutdown()

    def wait_for_callback(self, timeout: float = 120.0) -> str | None:
        """Block until the redirect arrives, is cancelled, or ``timeout`` expires.

        Returns
        -------
        str or None
            The full redirect URL, or None on timeout or cancellation.
        """
        if self._result_event.wait(timeout=timeout):
            return self._result
        return None

    @property
    def cancelled(self) -> bool:
        """Whether :meth:`cancel` ended the wait before a redirect arrived."""
        return self._cancelled and self._result is None

    def cancel(self) -> None:
        """Wake up a pending :meth:`wait_for_callback` without a result."""
        self._cancelled = True
        self._result_event.set()

    def stop(self) -> None:
        """Force-shutdown the server, waking any waiter."""
        self._result_event.set()
        if self._server:
            self._server.shutdown()
            self._server.server_close()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
