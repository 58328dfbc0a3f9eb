import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Protocol

import httpx

from errors import LLMGenerationError

logger = logging.getLogger(__name__)


class ChatClient(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, str]],
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
    ) -> str:
        ...

    def stream(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        ...


def system_message(content: str) -> Dict[str, str]:
    return {"role": "system", "content": content}


def user_message(content: str) -> Dict[str, str]:
    return {"role": "user", "content": content}


def assistant_message(content: str) -> Dict[str, str]:
    return {"role": "assistant", "content": content}


class OpenAIChatClient:
    """Chat completions against any OpenAI compatible endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
        max_attempts: int = 3,
        temperature: float = 0.2,
        default_max_tokens: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.temperature = temperature
        self.default_max_tokens = default_max_tokens
        self.transport = transport

    def _payload(self, messages: List[Dict[str, str]], stream: bool, max_tokens: Optional[int]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": stream,
        }
        token_limit = max_tokens or self.default_max_tokens
        if token_limit:
            payload["max_tokens"] = token_limit
        return payload

    def _headers(self, accept: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": accept,
        }

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
    ) -> str:
        if not self.api_key:
            raise LLMGenerationError("LLM API key is not configured")
        payload = self._payload(messages, stream=False, max_tokens=max_tokens)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                logger.info(
                    "llm_attempt model=%s attempt=%s/%s json_mode=%s",
                    self.model,
                    attempt,
                    self.max_attempts,
                    json_mode,
                )
                async with self._http_client() as client:
                    response = await client.post(
                        f"{self.base_url}/chat/completions",
                        headers=self._headers("application/json"),
                        json=payload,
                    )
                    response.raise_for_status()
                    data = response.json()
                content = (
                    data.get("choices", [{}])[0]
                    .get("message", {})
                    .get("content", "")
                )
                if not isinstance(content, str) or not content.strip():
                    raise ValueError("Empty LLM response")
                logger.info("llm_success model=%s attempt=%s", self.model, attempt)
                return content
            except httpx.HTTPStatusError as e:
                status = e.response.status_code if e.response is not None else "unknown"
                body = e.response.text[:300] if e.response is not None else str(e)
                last_error = f"HTTP {status}: {body}"
                logger.warning(
                    "LLM status error attempt %s/%s: %s",
                    attempt,
                    self.max_attempts,
                    last_error,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(min(8.0, 0.8 * attempt))
            except httpx.TimeoutException:
                last_error = f"timed out after {self.timeout_seconds}s"
                logger.warning(
                    "LLM attempt %s/%s timed out after %ss",
                    attempt,
                    self.max_attempts,
                    self.timeout_seconds,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(min(4.0, 0.6 * attempt))
            except Exception as e:
                last_error = str(e)
                logger.warning(
                    "LLM attempt %s/%s failed: %s",
                    attempt,
                    self.max_attempts,
                    last_error,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(0.75 * attempt)

        logger.error("llm_failed model=%s attempts=%s error=%s", self.model, self.max_attempts, last_error)
        raise LLMGenerationError()

    async def stream(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas as the endpoint produces them. A failed stream is not retried."""
        if not self.api_key:
            raise LLMGenerationError("LLM API key is not configured")
        payload = self._payload(messages, stream=True, max_tokens=max_tokens)
        chunks = 0
        logger.info("llm_stream_started model=%s", self.model)
        try:
            async with self._http_client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    headers=self._headers("text/event-stream"),
                    json=payload,
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        data = sse_data(line)
                        if data is None:
                            continue
                        if data == STREAM_DONE:
                            break
                        delta = _stream_delta(data)
                        if delta:
                            chunks += 1
                            yield delta
        except httpx.HTTPStatusError as e:
            logger.error("llm_stream_failed model=%s status=%s", self.model, e.response.status_code)
            raise LLMGenerationError() from e
        except httpx.HTTPError as e:
            logger.error("llm_stream_failed model=%s error=%s", self.model, e)
            raise LLMGenerationError() from e
        logger.info("llm_stream_finished model=%s chunks=%s", self.model, chunks)


STREAM_DONE = "[DONE]"


def sse_data(line: str) -> Optional[str]:
    """Payload of a ``data:`` line, or None for comments, blanks and other fields."""
    if not line.startswith("data:"):
        return None
    data = line[5:]
    return data[1:] if data.startswith(" ") else data


def _stream_delta(data: str) -> Optional[str]:
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("llm_stream_bad_event length=%s", len(data))
        return None
    if not isinstance(event, dict):
        return None
    choices = event.get("choices") or [{}]
    content = (choices[0].get("delta") or {}).get("content")
    return content if isinstance(content, str) else None


def build_chat_client(
    api_key: Optional[str],
    model: str,
    base_url: str,
    timeout_seconds: float = 60.0,
    max_attempts: int = 3,
    temperature: float = 0.2,
    max_tokens: Optional[int] = None,
) -> ChatClient:
    return OpenAIChatClient(
        api_key=(api_key or "").strip(),
        model=model,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        max_attempts=max_attempts,
        temperature=temperature,
        default_max_tokens=max_tokens,
    )


_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_DECODER = json.JSONDecoder()


def parse_llm_json_output(text: str) -> Any:
    """Pull the first JSON object or array out of a model reply.

    Bare JSON, a fenced markdown block and JSON wrapped in prose are all accepted.
    Trailing commas and a reply cut off before its closing brackets are patched
    once before giving up with ValueError.
    """
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValueError("Empty LLM output")

    for candidate in _json_candidates(cleaned):
        parsed = _decode_container(candidate)
        if parsed is not None:
            return parsed
        patched = _close_brackets(_TRAILING_COMMA_RE.sub(r"\1", candidate))
        parsed = _decode_container(patched)
        if parsed is not None:
            logger.warning("llm_json_patched length=%s", len(candidate))
            return parsed

    raise ValueError("LLM returned non-JSON output")


def _json_candidates(text: str) -> Iterator[str]:
    fenced = _FENCED_BLOCK_RE.search(text)
    if fenced:
        yield fenced.group(1).strip()
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if starts:
        yield text[min(starts):]


def _decode_container(candidate: str) -> Optional[Any]:
    # Trailing prose after the first value is ignored.
    try:
        parsed, _end = _DECODER.raw_decode(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, (dict, list)) else None


def _close_brackets(text: str) -> str:
    closers: List[str] = []
    in_string = escaped = False
    for ch in text:
        if escaped:
            escaped = False
        elif in_string:
            if ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            closers.append("}")
        elif ch == "[":
            closers.append("]")
        elif closers and ch == closers[-1]:
            closers.pop()
    return text + ('"' if in_string else "") + "".join(reversed(closers))
