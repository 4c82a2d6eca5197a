"""
RAG server client for the Dewey chat backend.

Queries the retrieval server for scored snippets, keeps the top results by
similarity, and turns them into (a) the numbered context block injected into
the prompt and (b) one citation source per unique document.
"""
from typing import Dict, List, Optional
from urllib.parse import quote, urlparse
import re
import time

import httpx

from app.models import CitationSource, RAGResult
from app.logging_config import get_logger

logger = get_logger(__name__)

RAG_TOP_N = 8
RAG_THRESHOLD_DEFAULT = 0.6
RAG_DEFAULT_PORT = 9042
DEFAULT_TIMEOUT = httpx.Timeout(60.0, connect=10.0)

RAG_CONTEXT_HEADER = (
    "\n\nRelevant context retrieved from documents appears below. "
    "Use it in developing your answer, but don't refer to the documents "
    "either individually or as a group in any way.\n\n"
)


class RAGError(Exception):
    """Raised when the RAG server is unreachable or returns an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def derive_rag_url(ollama_url: str) -> str:
    """Default RAG URL: same host as the model server, port 9042."""
    try:
        parsed = urlparse(ollama_url)
    except ValueError:
        parsed = None
    if not parsed or not parsed.scheme or not parsed.hostname:
        return f"http://localhost:{RAG_DEFAULT_PORT}"
    return f"{parsed.scheme}://{parsed.hostname}:{RAG_DEFAULT_PORT}"


def parse_result(raw: Dict) -> RAGResult:
    """Build a RAGResult from one server result, tolerating camelCase keys."""
    similarity = raw.get("similarity")
    if isinstance(similarity, bool) or not isinstance(similarity, (int, float)):
        similarity = None

    return RAGResult(
        text=str(raw.get("text") or ""),
        source_name=str(raw.get("source_name") or raw.get("sourceName") or raw.get("source") or "Unknown"),
        source_url=raw.get("source_url") or raw.get("sourceUrl") or None,
        similarity=float(similarity) if similarity is not None else None,
        group=raw.get("group") or None
    )


def select_top_results(results: List[RAGResult], top_n: int = RAG_TOP_N) -> List[RAGResult]:
    """Sort by similarity descending (missing similarity counts as 0) and keep top_n."""
    ranked = sorted(results, key=lambda r: r.similarity or 0, reverse=True)
    return ranked[:top_n]


def build_rag_context(results: List[RAGResult]) -> str:
    """Numbered context block for the prompt; empty string when there are no results."""
    if not results:
        return ""

    context = RAG_CONTEXT_HEADER
    for idx, result in enumerate(results):
        context += f"{idx + 1}. {result.text}\n\n"
    return context


def resolve_citation_url(rag_base_url: str, path: str) -> str:
    """Join a relative source path to the RAG base URL; absolute URLs pass through."""
    p = (path or "").strip()
    if not p or p == "#":
        return "#"
    if re.match(r"^https?://", p, re.IGNORECASE):
        return p

    base = (rag_base_url or "").rstrip("/")
    if not base:
        return p
    return f"{base}/{p.lstrip('/')}"


def collect_sources(results: List[RAGResult], rag_base_url: str) -> List[CitationSource]:
    """
    Derive one citation source per unique document.

    When the server omits source_url but reports a group, the document is
    linked through the RAG server's fetch path. Duplicates keep the highest
    similarity; first-seen order is preserved.
    """
    sources: Dict[str, CitationSource] = {}
    for result in results:
        source_name = result.source_name or "Unknown"
        path = result.source_url or ""
        if not path and result.group and source_name != "Unknown":
            path = f"/fetch/{quote(result.group, safe='')}/{quote(source_name, safe='')}"

        url = resolve_citation_url(rag_base_url, path)
        key = url if url != "#" else source_name
        similarity = result.similarity if result.similarity is not None else 0.0

        existing = sources.get(key)
        if existing is None:
            sources[key] = CitationSource(source_name=source_name, url=url, similarity=similarity)
        elif similarity > (existing.similarity or 0.0):
            existing.similarity = similarity

    return list(sources.values())


class RAGClient:
    """
    Async client for one RAG server base URL.

    Handles:
    - Listing document collections
    - Querying collections with an optional conversation history for query expansion
    """

    def __init__(
            self,
            base_url: str,
            timeout: httpx.Timeout = DEFAULT_TIMEOUT,
            transport: Optional[httpx.AsyncBaseTransport] = None
            ):
        self.base_url = (base_url or "").strip().rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)


    async def list_collections(self) -> List[str]:
        """Return the collection names the RAG server exposes."""
        data = await self._request("GET", "/rags")
        collections = data.get("collections")
        if not isinstance(collections, list):
            return []
        return [str(c) for c in collections]


    async def query(
            self,
            prompt: str,
            collections: List[str],
            threshold: float = RAG_THRESHOLD_DEFAULT,
            history: Optional[str] = None
            ) -> List[RAGResult]:
        """
        Query the RAG server.

        Args:
            prompt: Current user message
            collections: Selected collection names (sent as "group")
            threshold: Minimum similarity; filtering happens server-side
            history: Optional "User: ...\\nAssistant: ..." transcript for query expansion

        Returns:
            Parsed results in server order
        """
        payload = {
            "prompt": prompt,
            "group": list(collections),
            "threshold": threshold,
            "limit_chunk_role": True
        }
        if history and history.strip():
            payload["history"] = history

        query_start = time.time()
        data = await self._request("POST", "/query", json=payload)
        query_time = (time.time() - query_start) * 1000

        raw_results = data.get("results")
        if not isinstance(raw_results, list):
            raw_results = []
        results = [parse_result(r) for r in raw_results if isinstance(r, dict)]
        logger.info(f"RAG query returned {len(results)} results in {query_time:.0f}ms")
        return results


    async def aclose(self) -> None:
        await self._client.aclose()


    async def _request(self, method: str, path: str, **kwargs) -> Dict:
        if not self.base_url:
            raise RAGError("No RAG server URL configured")

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RAGError(f"Could not reach RAG server at {self.base_url}: {e}")

        if response.status_code >= 400:
            logger.error(f"RAG {path} failed: {response.status_code} {response.text[:500]}")
            raise RAGError(f"HTTP {response.status_code}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise RAGError(f"Invalid JSON from RAG {path}", status_code=response.status_code)
        return data if isinstance(data, dict) else {}
