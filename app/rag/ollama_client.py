"""
Ollama model-server client for the Dewey chat backend.

Async wrapper over the Ollama REST API (/api/tags, /api/show, /api/generate).
Streaming generate responses arrive as newline-delimited JSON; they are parsed
lazily line by line and malformed lines are skipped rather than aborting the
stream.
"""
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Dict, List, Optional
import json
import time

import httpx

from app.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"

# Metadata checks are fast (no inference), so they get short timeouts
MODEL_CHECK_TIMEOUT = 10.0
MONITOR_CHECK_TIMEOUT = 5.0

# Non-streaming generate (summaries) may run for a while on large histories
DEFAULT_TIMEOUT = httpx.Timeout(120.0, connect=10.0)


class OllamaError(Exception):
    """Raised when the model server is unreachable or returns an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OllamaTimeoutError(OllamaError):
    """Raised when a bounded request to the model server times out."""


@dataclass
class GenerateChunk:
    """One partial-response event from a streaming generate call."""
    response: str = ""
    done: bool = False


async def parse_ndjson_stream(lines: AsyncIterable[str]) -> AsyncIterator[GenerateChunk]:
    """
    Parse an NDJSON generate stream into GenerateChunk events.

    Blank and malformed lines are skipped. Iteration stops after the first
    chunk flagged done, or when the underlying lines run out.

    Args:
        lines: Async iterable of raw text lines

    Yields:
        GenerateChunk for every well-formed JSON object line
    """
    async for line in lines:
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed stream line: {line[:200]!r}")
            continue
        if not isinstance(data, dict):
            continue

        if data.get("error"):
            raise OllamaError(str(data["error"]))

        fragment = data.get("response")
        chunk = GenerateChunk(
            response=fragment if isinstance(fragment, str) else "",
            done=bool(data.get("done"))
        )
        yield chunk
        if chunk.done:
            return


def _model_names(payload: Dict) -> List[str]:
    """Extract model names from a /api/tags payload ({models: [{name}, ...]})."""
    models = payload.get("models")
    if not isinstance(models, list):
        return []

    names = []
    for m in models:
        if isinstance(m, dict):
            name = m.get("name") or m.get("model")
        else:
            name = m
        if name:
            names.append(str(name))
    return names


class OllamaClient:
    """
    Async client for one Ollama base URL.

    Handles:
    - Listing models (tags)
    - Fetching model metadata (show), optionally with a bounded timeout
    - Non-streaming and streaming generation
    """

    def __init__(
            self,
            base_url: Optional[str] = None,
            timeout: httpx.Timeout = DEFAULT_TIMEOUT,
            transport: Optional[httpx.AsyncBaseTransport] = None
            ):
        """
        Args:
            base_url: Ollama API URL (default: http://localhost:11434)
            timeout: Default timeout for non-streaming requests
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = (base_url or DEFAULT_OLLAMA_URL).strip().rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)


    async def tags(self) -> List[str]:
        """List available model names."""
        try:
            response = await self._client.get("/api/tags")
        except httpx.TimeoutException as e:
            raise OllamaTimeoutError(f"Timed out listing models at {self.base_url}: {e}")
        except httpx.HTTPError as e:
            raise OllamaError(f"Could not connect to Ollama at {self.base_url}: {e}")

        return _model_names(self._parse_response(response, "/api/tags"))


    async def show(self, model: str, timeout: Optional[float] = None) -> Dict:
        """
        Fetch model metadata.

        Args:
            model: Model name as listed by tags()
            timeout: Optional bounded wait in seconds (overrides the client default)

        Returns:
            Raw /api/show payload
        """
        return await self._post_json("/api/show", {"name": model}, timeout=timeout)


    async def verify_model(self, model: str, timeout: float = MODEL_CHECK_TIMEOUT) -> Dict:
        """Check that a model is available; raises OllamaError if not."""
        data = await self.show(model, timeout=timeout)
        if not (data.get("name") or "modelfile" in data):
            raise OllamaError("Model metadata invalid or missing")
        return data


    async def generate(self, model: str, prompt: str) -> str:
        """Run a non-streaming generate call and return the response text ("" if absent)."""
        data = await self._post_json("/api/generate", {"model": model, "prompt": prompt, "stream": False})
        text = data.get("response")
        return text if isinstance(text, str) else ""


    async def generate_stream(self, model: str, prompt: str) -> AsyncIterator[GenerateChunk]:
        """
        Stream a generate call as GenerateChunk events.

        The stream has no read timeout; it ends when the server flags done or
        closes the connection.
        """
        payload = {"model": model, "prompt": prompt, "stream": True}
        stream_start = time.time()
        try:
            async with self._client.stream(
                "POST",
                "/api/generate",
                json=payload,
                timeout=httpx.Timeout(10.0, read=None)
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._parse_response(response, "/api/generate")

                async for chunk in parse_ndjson_stream(response.aiter_lines()):
                    yield chunk
        except httpx.TimeoutException as e:
            raise OllamaTimeoutError(f"Generate request timed out: {e}")
        except httpx.HTTPError as e:
            raise OllamaError(f"Generate request failed: {e}")

        stream_time = (time.time() - stream_start) * 1000
        logger.info(f"Generate stream time: {stream_time:.0f}ms")


    async def aclose(self) -> None:
        await self._client.aclose()


    async def _post_json(self, path: str, payload: Dict, timeout: Optional[float] = None) -> Dict:
        kwargs = {}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = await self._client.post(path, json=payload, **kwargs)
        except httpx.TimeoutException as e:
            raise OllamaTimeoutError(f"Request to {path} timed out: {e}")
        except httpx.HTTPError as e:
            raise OllamaError(f"Could not connect to Ollama at {self.base_url}: {e}")

        return self._parse_response(response, path)


    def _parse_response(self, response: httpx.Response, path: str) -> Dict:
        """Return the JSON body, raising OllamaError on non-2xx or invalid JSON."""
        if response.status_code >= 400:
            try:
                detail = response.json().get("error")
            except (ValueError, AttributeError):
                detail = None
            logger.error(f"Ollama {path} failed with status {response.status_code}: {detail or response.text[:500]}")
            raise OllamaError(detail or f"HTTP {response.status_code}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise OllamaError(f"Invalid JSON from {path}", status_code=response.status_code)

        if not isinstance(data, dict):
            raise OllamaError(f"Unexpected payload from {path}", status_code=response.status_code)
        return data
