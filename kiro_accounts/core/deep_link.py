"""Deep-link router: every way a ``kiro://`` redirect can reach us ends in
AuthState.complete_login().

Three delivery shapes:
- event:    a payload from an event bus, possibly JSON-encoded twice
            (``"\\"kiro://...\\""``), or the bare URL when nothing wrapped it
- relaunch: the argv of a second application instance started by the OS
            URL-scheme handler; the URL is the last of ``[url]``,
            ``[flag, url]`` or ``[flag, separator, url]``
- local:    the in-process loopback listener (callback_server.py)

The router only finds the URL. Query parameters are AuthState's business.
Unrecognizable input and malformed callback URLs are logged and dropped.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from kiro_accounts.core.auth_state import AuthState
from kiro_accounts.core.database import Account
from kiro_accounts.errors import ParseError

logger = logging.getLogger(__name__)

_MAX_DECODE_DEPTH = 3


@dataclass(frozen=True)
class DeepLinkEvent:
    """A canonical callback URL plus where it came from."""

    url: str
    source: str
    provider_hint: Optional[str] = None


def decode_event_payload(payload: Any) -> Optional[str]:
    """Unwrap an event payload into a string, tolerating double encoding.

    >>> decode_event_payload('"\\\\"kiro://cb?state=abc\\\\""')
    'kiro://cb?state=abc'
    >>> decode_event_payload('"kiro://cb?state=abc"')
    'kiro://cb?state=abc'
    >>> decode_event_payload('kiro://cb?state=abc')
    'kiro://cb?state=abc'
    >>> decode_event_payload('{"url": "kiro://cb?state=abc"}')
    'kiro://cb?state=abc'
    """
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")

    value = payload
    for _ in range(_MAX_DECODE_DEPTH):
        if not isinstance(value, str):
            break
        try:
            value = json.loads(value)
        except ValueError:
            break
    if isinstance(value, dict):
        value = value.get("url")
    if isinstance(value, str) and value.strip():
        return value.strip()

    # Structured decoding produced nothing usable: use the raw payload
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return None


def _strip_quotes(arg: str) -> str:
    arg = arg.strip()
    if len(arg) >= 2 and arg[0] == arg[-1] and arg[0] in "\"'":
        return arg[1:-1]
    return arg


def extract_url_from_args(argv: Sequence[str], scheme: str = "kiro") -> Optional[str]:
    """Find the callback URL in a relaunched instance's argv.

    ``argv[0]`` is the executable. Layouts are tried most specific first:
    ``[flag, separator, url]``, ``[flag, url]``, ``[url]``; failing those,
    the first argument with the scheme prefix anywhere wins.

    >>> extract_url_from_args(["app", "--open-url", "--", "kiro://cb?state=abc"])
    'kiro://cb?state=abc'
    >>> extract_url_from_args(["app", "--open-url", "kiro://cb?state=abc"])
    'kiro://cb?state=abc'
    >>> extract_url_from_args(["app", "kiro://cb?state=abc"])
    'kiro://cb?state=abc'
    >>> extract_url_from_args(["app", "--minimized"]) is None
    True
    """
    prefix = f"{scheme}://".lower()
    args = [_strip_quotes(a) for a in list(argv)[1:] if isinstance(a, str)]

    def matches(arg: str) -> bool:
        return arg.lower().startswith(prefix)

    for width in (3, 2, 1):
        if len(args) >= width and matches(args[width - 1]):
            return args[width - 1]
    for arg in args:
        if matches(arg):
            return arg
    return None


class DeepLinkRouter:
    """Funnels all callback deliveries into one complete_login entry point."""

    def __init__(
        self,
        auth_state: AuthState,
        *,
        focus: Optional[Callable[[], None]] = None,
    ):
        self.auth_state = auth_state
        self.scheme = auth_state.settings.url_scheme
        self._focus = focus

    def set_focus_hook(self, focus: Optional[Callable[[], None]]) -> None:
        self._focus = focus

    def _recognize(self, candidate: Optional[str], source: str) -> Optional[DeepLinkEvent]:
        if not candidate or not candidate.lower().startswith(f"{self.scheme}://"):
            logger.info("Dropped %s delivery with no %s:// URL", source, self.scheme)
            return None
        return DeepLinkEvent(url=candidate, source=source)

    async def dispatch(self, event: DeepLinkEvent) -> Optional[Account]:
        """Hand a canonical URL to AuthState. ParseError is logged and dropped."""
        logger.debug("Dispatching %s callback (provider hint: %s)", event.source, event.provider_hint)
        try:
            return await self.auth_state.complete_login(event.url)
        except ParseError as exc:
            logger.warning("Ignoring malformed %s callback: %s", event.source, exc)
            return None

    async def handle_event(self, payload: Any) -> Optional[Account]:
        event = self._recognize(decode_event_payload(payload), "event")
        if event is None:
            return None
        return await self.dispatch(event)

    async def handle_relaunch(self, argv: Sequence[str]) -> Optional[Account]:
        """Second-instance argv. The focus hook runs whatever the outcome."""
        try:
            event = self._recognize(extract_url_from_args(argv, self.scheme), "relaunch")
            if event is None:
                return None
            return await self.dispatch(event)
        finally:
            if self._focus is not None:
                self._focus()

    async def handle_local(self, url: str, provider_hint: Optional[str] = None) -> Optional[Account]:
        event = self._recognize(url, "local")
        if event is None:
            return None
        if provider_hint:
            event = DeepLinkEvent(url=event.url, source=event.source, provider_hint=provider_hint)
        return await self.dispatch(event)
