"""
HTTP plumbing: the HTTP_GET builtin, remote module fetches and the
JSON control channel used for remote procedures.
"""
import asyncio
from typing import Any, Dict, Optional

import httpx

from rexa.rexa_resolver import ControlChannel
from rexa.rexa_serialize import deserialize

RESPONSE_MODES = ('lite', 'full', 'none')


def normalize_response_mode(cfg: dict) -> Optional[str]:
    """One of 'lite' | 'full' | 'none' from cfg['response-mode'], or None when unset."""
    mode = cfg.get('response-mode', cfg.get('response_mode'))
    if mode is None:
        if cfg.get('lite') is True:
            return 'lite'
        if cfg.get('full') is True:
            return 'full'
        return None
    s = str(mode).strip().lower()
    return s if s in RESPONSE_MODES else None


def _client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True)


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


async def http_request(method: str, url: str, *, config: Optional[Dict] = None, data: Any = None,
                       raw: bool = False) -> Any:
    """
    Send one request, retrying transport failures and 5xx replies.

    config keys: timeout, retries, backoff, headers, params, response-mode.
      - `lite` / `full` -> `(status, value, headers)`; never raises on status
      - unset / `none`  -> the decoded body; non-2xx raises RuntimeError
    With `raw=True` the body is returned as text without decoding.
    """
    cfg = dict(config or {})
    timeout = float(cfg.get('timeout', 5.0))
    retries = int(cfg.get('retries', 2))
    backoff = float(cfg.get('backoff', 0.2))
    headers = dict(cfg.get('headers') or {})
    params = dict(cfg.get('params') or {})
    mode = normalize_response_mode(cfg)

    content = data.encode('utf-8') if isinstance(data, str) else data
    if content is not None:
        headers.setdefault("Content-Type", "text/plain; charset=utf-8")

    def decode(resp: httpx.Response):
        if raw:
            return resp.text
        return deserialize(resp.content, content_type=resp.headers.get("Content-Type"))

    attempt = 0
    async with _client(timeout) as client:
        while True:
            try:
                resp = await client.request(method.upper(), url, headers=headers, params=params, content=content)
                if mode in ('lite', 'full'):
                    return resp.status_code, decode(resp), {k.lower(): v for k, v in resp.headers.items()}
                resp.raise_for_status()
                return decode(resp)
            except httpx.HTTPError as e:
                if attempt < retries and _retryable(e):
                    await asyncio.sleep(backoff * (2 ** attempt))
                    attempt += 1
                    continue
                if isinstance(e, httpx.HTTPStatusError):
                    preview = (e.response.text or "")[:200]
                    raise RuntimeError(f"HTTP {e.response.status_code} for {url}: {preview}") from e
                raise RuntimeError(f"HTTP request to {url} failed: {e}") from e


async def http_get(url: str, config: Optional[Dict] = None) -> Any:
    return await http_request('GET', url, config=config)


async def fetch_text(url: str, config: Optional[Dict] = None) -> str:
    """GET a source file (module bodies) as text."""
    return await http_request('GET', url, config=config, raw=True)


def _channel_error(message: str) -> Dict[str, Any]:
    return {"success": False, "error": {"kind": "ChannelError", "message": message}}


class HttpControlChannel(ControlChannel):
    """A ControlChannel that POSTs each request as JSON to an orchestrator endpoint."""

    def __init__(self, url: str, *, timeout: float = 30.0, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout = timeout
        self.headers = dict(headers or {})

    async def request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        async with _client(self.timeout) as client:
            try:
                resp = await client.post(self.url, json=message, headers=self.headers)
            except httpx.HTTPError as e:
                return _channel_error(str(e))
        if not resp.is_success:
            return _channel_error(f"HTTP {resp.status_code} from {self.url}")
        try:
            reply = resp.json()
        except ValueError:
            return _channel_error("reply is not JSON")
        # Bare results are accepted as successes
        return reply if isinstance(reply, dict) else {"success": True, "result": reply}
