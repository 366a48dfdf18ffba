import asyncio
import os
from typing import Any, Dict, List, Optional

import httpx

from slashscript.slash_runtime import LLMCapability
from slashscript.slash_serialize import deserialize

DEFAULT_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4o-mini"


async def http_request(method: str, url: str, *, config: Optional[Dict] = None,
                       json_body: Any = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> Any:
    """
    Core HTTP helper: returns the deserialized body of a 2xx response and
    raises on anything else. Transport failures, 429 and 5xx responses are
    retried with exponential backoff; other statuses fail at once.

    config keys: timeout, retries, backoff, headers, params.
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 30.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    headers = dict(cfg.pop('headers', {}))
    params = dict(cfg.pop('params', {}))

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=transport) as client:
        for attempt in range(retries + 1):
            try:
                resp = await client.request(method.upper(), url, headers=headers, params=params, json=json_body)
            except httpx.TransportError:
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise
            if 200 <= resp.status_code < 300:
                return deserialize(resp.content, content_type=resp.headers.get("Content-Type"))
            # only rate limiting and server errors are worth another attempt
            if _retryable(resp.status_code) and attempt < retries:
                await asyncio.sleep(backoff * (2 ** attempt))
                continue
            preview = (resp.text or "")[:200]
            raise RuntimeError(f"HTTP {resp.status_code} for {url}: {preview}")


def _retryable(status: int) -> bool:
    return status == 429 or status >= 500


class HttpLLM(LLMCapability):
    """An LLM capability for OpenAI-compatible chat completion endpoints.

    Replies that are JSON objects or arrays come back as structured values;
    everything else is returned as text.
    """

    def __init__(self, url: str = DEFAULT_URL, model: str = DEFAULT_MODEL,
                 api_key: Optional[str] = None, system: Optional[str] = None,
                 config: Optional[Dict] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.model = model
        self.api_key = api_key
        self.system = system
        self.config = dict(config or {})
        self.transport = transport

    @classmethod
    def from_env(cls, **kwargs) -> 'HttpLLM':
        return cls(
            url=os.environ.get("SLASH_LLM_URL", DEFAULT_URL),
            model=os.environ.get("SLASH_LLM_MODEL", DEFAULT_MODEL),
            api_key=os.environ.get("SLASH_LLM_API_KEY"),
            **kwargs,
        )

    def _messages(self, prompt: str) -> List[Dict[str, str]]:
        messages = []
        if self.system:
            messages.append({"role": "system", "content": self.system})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def invoke(self, prompt: str) -> Any:
        cfg = dict(self.config)
        headers = dict(cfg.pop('headers', {}))
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        cfg['headers'] = headers
        body = {"model": self.model, "messages": self._messages(prompt)}
        reply = await http_request('POST', self.url, config=cfg, json_body=body, transport=self.transport)
        try:
            content = reply["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise RuntimeError(f"unexpected completion payload: {str(reply)[:200]}") from None
        if isinstance(content, str):
            return deserialize(content.strip())
        return content
