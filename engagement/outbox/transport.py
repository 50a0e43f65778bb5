from typing import Protocol, Tuple, Optional

import httpx

from engagement.settings import settings
from engagement.core.errors import TransportError
from engagement.observability.logging import log


class Transport(Protocol):
    """Outbound adapter contract: WhatsApp/Telegram bridges implement this."""

    def send(self, destination: str, text: str) -> bool:
        ...


def send_message_http(url: str, destination: str, text: str, timeout: float) -> Tuple[bool, int, Optional[str]]:
    """
    POST one rendered message to a messaging gateway.
    Returns (success, status_code, error_message); never raises.
    """
    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.post(url, json={"destination": destination, "text": text})
        if 200 <= resp.status_code < 300:
            return True, int(resp.status_code), None
        return False, int(resp.status_code), (resp.text or "")[:500]
    except httpx.HTTPError as e:
        return False, 0, f"{type(e).__name__}: {str(e)[:300]}"


class HttpTransport:
    """Gateway adapter: the bot process exposes an HTTP send endpoint."""

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        self.url = url if url is not None else settings.TRANSPORT_URL
        self.timeout = float(timeout if timeout is not None else settings.TRANSPORT_TIMEOUT_SEC)

    def send(self, destination: str, text: str) -> bool:
        if not self.url:
            raise TransportError("TRANSPORT_URL is not set")
        ok, code, err = send_message_http(self.url, destination, text, self.timeout)
        if not ok:
            log(event="transport_send_failed", level="warning", statusCode=code, error=err)
            raise TransportError(f"gateway returned {code}: {err or 'no body'}")
        return True
