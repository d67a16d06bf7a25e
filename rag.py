"""Content ingestion primitives for the retrieval pipeline.

The module implements the offline-friendly half of the RAG pipeline:
- load local learning materials (text/markdown/json files, markdown with
  YAML front matter carrying curriculum metadata),
- split them into overlapping, word-aligned chunks, and
- turn text into vectors through a registry of embedding backends with
  bounded, retried calls and an LRU cache.

Heavy backends (sentence-transformers, remote embedding APIs) are resolved
lazily so the default deterministic hashing backend works everywhere. Tests
rely on it to avoid large model downloads.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
import re
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple

import requests
import yaml
from pydantic import ValidationError

from engines.caching import EmbeddingCache
from env_validation import get_env_float, get_env_int
from errors import EmbeddingUnavailable, InvalidParameters
from schemas import ChunkDraft, ChunkMetadata

logger = logging.getLogger(__name__)

HASHING_MODEL = "hashing-v1"
DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 200
MIN_STEP_MINUTES = 5


def default_embed_model() -> str:
    return os.getenv("EMBED_MODEL") or HASHING_MODEL


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


@dataclass
class Document:
    source: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def curriculum(self) -> ChunkMetadata:
        """Typed curriculum metadata declared by the document."""
        known = {key: value for key, value in self.metadata.items() if key in ChunkMetadata.model_fields}
        known.setdefault("source", self.source)
        try:
            return ChunkMetadata.model_validate(known)
        except ValidationError as exc:
            raise InvalidParameters(
                f"Invalid curriculum metadata in {self.source}",
                details={"source": self.source, "errors": exc.errors(include_url=False)},
            ) from exc


_FRONT_MATTER = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.S)


def split_front_matter(text: str, *, source: str = "<memory>") -> Tuple[Dict[str, Any], str]:
    """Separate a leading YAML block from markdown content."""
    match = _FRONT_MATTER.match(text)
    if not match:
        return {}, text
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.warning("Ignoring malformed front matter in %s: %s", source, exc)
        return {}, text
    if not isinstance(data, dict):
        return {}, text
    return data, text[match.end():]


def load_learning_materials(base_path: str, patterns: Sequence[str] = (".md", ".txt", ".json")) -> List[Document]:
    """Recursively load learning materials from a directory or single file."""

    documents: List[Document] = []
    root = Path(base_path)
    if not root.exists():
        return documents

    paths: Iterable[Path]
    if root.is_file():
        paths = [root]
    else:
        paths = sorted(path for path in root.rglob("*") if path.is_file())

    for file_path in paths:
        suffix = file_path.suffix.lower()
        if patterns and suffix not in patterns:
            continue
        try:
            content = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            logger.warning("Skipping non UTF-8 file %s", file_path)
            continue

        if suffix == ".json":
            documents.extend(_documents_from_json(content, source=str(file_path)))
            continue

        metadata: Dict[str, Any] = {}
        if suffix == ".md":
            metadata, content = split_front_matter(content, source=str(file_path))
        if not content.strip():
            continue
        documents.append(Document(source=str(file_path), content=content, metadata=metadata))
    return documents


def _documents_from_json(payload: str, *, source: str) -> List[Document]:
    """Parse a JSON payload into documents.

    Supports arrays of objects/strings or single objects with a
    ``content``/``text``/``body`` field.
    """

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return [Document(source=source, content=payload)]

    documents: List[Document] = []

    def _build_document(content: str, metadata: Dict[str, Any], *, idx: int) -> None:
        doc_source = source
        if "id" in metadata:
            doc_source = f"{source}#{metadata['id']}"
        elif "slug" in metadata:
            doc_source = f"{source}#{metadata['slug']}"
        elif idx >= 0:
            doc_source = f"{source}#{idx}"
        documents.append(Document(source=doc_source, content=content, metadata=metadata))

    if isinstance(data, list):
        for idx, entry in enumerate(data):
            if isinstance(entry, str):
                _build_document(entry, {}, idx=idx)
            elif isinstance(entry, dict):
                text = _extract_text(entry)
                if not text:
                    continue
                metadata = {k: v for k, v in entry.items() if k not in {"content", "body", "text"}}
                _build_document(text, metadata, idx=idx)
    elif isinstance(data, dict):
        text = _extract_text(data)
        if text:
            metadata = {k: v for k, v in data.items() if k not in {"content", "body", "text"}}
            _build_document(text, metadata, idx=-1)

    return documents or [Document(source=source, content=payload)]


def _extract_text(entry: Dict[str, Any]) -> Optional[str]:
    for key in ("content", "body", "text"):
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

_SENTENCE_END = re.compile(r"[.!?][\"')\]]*\s+")
# Preferred cut points must keep at least this share of the target size.
_MIN_FILL = 0.5


def check_chunk_parameters(target_size: int, overlap: int) -> None:
    if target_size <= 0:
        raise InvalidParameters("target_size must be positive", details={"target_size": target_size})
    if overlap < 0:
        raise InvalidParameters("overlap must not be negative", details={"overlap": overlap})
    if overlap >= target_size:
        raise InvalidParameters(
            "overlap must be smaller than target_size",
            details={"target_size": target_size, "overlap": overlap},
        )


def _is_word_boundary(text: str, index: int) -> bool:
    if index <= 0 or index >= len(text):
        return True
    return text[index - 1].isspace() or text[index].isspace()


def _find_cut(text: str, start: int, hard_end: int, target_size: int) -> int:
    """Pick the end offset of the segment starting at ``start``."""
    min_end = start + max(1, int(target_size * _MIN_FILL))
    window = text[start:hard_end]

    paragraph = window.rfind("\n\n")
    if paragraph != -1 and start + paragraph + 2 >= min_end:
        return start + paragraph + 2

    sentence_end = None
    for match in _SENTENCE_END.finditer(window):
        sentence_end = start + match.end()
    if sentence_end is not None and sentence_end >= min_end:
        return sentence_end

    for index in range(hard_end, start, -1):
        if _is_word_boundary(text, index):
            return index
    # A single word longer than the target size.
    return hard_end


def _overlap_start(text: str, start: int, end: int, overlap: int) -> int:
    """Start of the next segment: ``overlap`` back from ``end``, snapped forward to a word start."""
    if overlap == 0:
        return end
    index = max(end - overlap, start + 1)
    while index < end:
        if text[index - 1].isspace() and not text[index].isspace():
            return index
        index += 1
    return end


def _iter_chunks(document: str, target_size: int, overlap: int) -> Iterator[ChunkDraft]:
    length = len(document)
    start = 0
    position = 0
    while start < length:
        hard_end = start + target_size
        end = length if hard_end >= length else _find_cut(document, start, hard_end, target_size)
        yield ChunkDraft(position=position, start=start, end=end, text=document[start:end])
        if end >= length:
            return
        start = _overlap_start(document, start, end, overlap)
        position += 1


def chunk_document(
    document: str,
    target_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> Iterator[ChunkDraft]:
    """Lazily split ``document`` into overlapping character segments.

    Parameters are checked eagerly so callers see ``InvalidParameters`` at
    call time rather than on first iteration. Cuts prefer paragraph breaks,
    then sentence ends, then whitespace; a word is only split when it alone
    exceeds ``target_size``. Every draft satisfies
    ``draft.text == document[draft.start:draft.end]`` and each segment starts
    at or before the previous end, so the drafts cover the whole document.
    """
    check_chunk_parameters(target_size, overlap)
    return _iter_chunks(document, target_size, overlap)


class Chunker:
    """Restartable view over the chunks of one document."""

    def __init__(self, document: str, target_size: int = DEFAULT_CHUNK_SIZE, overlap: int = DEFAULT_CHUNK_OVERLAP):
        check_chunk_parameters(target_size, overlap)
        self.document = document
        self.target_size = target_size
        self.overlap = overlap

    def __iter__(self) -> Iterator[ChunkDraft]:
        return _iter_chunks(self.document, self.target_size, self.overlap)

    def __repr__(self) -> str:
        return f"Chunker(len={len(self.document)}, target_size={self.target_size}, overlap={self.overlap})"


def estimate_minutes(text: str, words_per_minute: Optional[int] = None) -> int:
    """Reading time for ``text``, never below ``MIN_STEP_MINUTES``."""
    wpm = words_per_minute or get_env_int("READING_WORDS_PER_MINUTE", 200)
    words = len(text.split())
    return max(MIN_STEP_MINUTES, math.ceil(words / max(1, wpm)))


# ---------------------------------------------------------------------------
# Embedding backends
# ---------------------------------------------------------------------------


class TransientBackendError(Exception):
    """A backend failure worth retrying (timeouts, rate limits, 5xx)."""


class EmbeddingBackend(Protocol):
    """Simple protocol implemented by embedding backends."""

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError("EmbeddingBackend implementations must define embed().")


_TOKEN = re.compile(r"\w+", re.UNICODE)


class HashEmbeddingBackend:
    """Deterministic embedding using hashed token frequencies."""

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = max(8, dimensions)

    def _tokenize(self, text: str) -> List[str]:
        return _TOKEN.findall(text.lower())

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in self._tokenize(text):
            bucket = int(hashlib.sha256(token.encode("utf-8")).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm:
            vector = [value / norm for value in vector]
        return vector


class SentenceTransformerBackend:
    """Wrapper around `sentence-transformers`, imported on first construction."""

    def __init__(self, model_name: str):
        from sentence_transformers import SentenceTransformer

        self._model = SentenceTransformer(model_name)

    def embed(self, text: str) -> List[float]:  # pragma: no cover - heavy dependency
        vector = self._model.encode([text], convert_to_numpy=True)[0]
        return vector.astype(float).tolist()

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:  # pragma: no cover - heavy dependency
        vectors = self._model.encode(list(texts), convert_to_numpy=True)
        return [vector.astype(float).tolist() for vector in vectors]


class HTTPEmbeddingBackend:
    """OpenAI-compatible ``/v1/embeddings`` client."""

    def __init__(
        self,
        url: str,
        model: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self._session.post(
                self.url,
                json={"model": self.model, "input": list(texts)},
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientBackendError(str(exc)) from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientBackendError(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ValueError(f"embedding request rejected with HTTP {response.status_code}")
        try:
            data = response.json()["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("malformed embedding response") from exc
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        vectors = [[float(value) for value in item["embedding"]] for item in ordered]
        if len(vectors) != len(texts):
            raise ValueError("embedding response size does not match request")
        return vectors


# ---------------------------------------------------------------------------
# Embedder
# ---------------------------------------------------------------------------

BackendFactory = Callable[[], EmbeddingBackend]


class Embedder:
    """Registry of embedding models with bounded, retried backend calls.

    Vectors are cached per ``(model, text)``. Every backend call runs on a
    worker thread and is abandoned after ``timeout`` seconds; timeouts and
    ``TransientBackendError`` are retried with exponential backoff, other
    failures surface immediately as ``EmbeddingUnavailable``.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        cache_size: int = 5000,
        max_workers: int = 4,
    ) -> None:
        self.timeout = timeout if timeout is not None else get_env_float("EMBED_TIMEOUT_SECONDS", 10.0)
        self.max_retries = max(0, max_retries if max_retries is not None else get_env_int("EMBED_MAX_RETRIES", 2))
        self.retry_backoff = (
            retry_backoff if retry_backoff is not None else get_env_float("EMBED_RETRY_BACKOFF", 0.5)
        )
        self._factories: Dict[str, BackendFactory] = {}
        self._backends: Dict[str, EmbeddingBackend] = {}
        self._dimensions: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._cache = EmbeddingCache(max_size=cache_size)
        # Fan-out for embed_many and the per-call timeout pool are separate so
        # batch workers waiting on a call can never starve it of a thread.
        self._batch_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="embed-batch")
        self._call_executor = ThreadPoolExecutor(max_workers=max_workers * 2, thread_name_prefix="embed-call")

    # ---- registry ----
    def register(self, model: str, backend: EmbeddingBackend | BackendFactory) -> None:
        """Register a backend instance, or a zero-argument factory resolved on first use."""
        with self._lock:
            if hasattr(backend, "embed"):
                self._backends[model] = backend  # type: ignore[assignment]
                self._factories.pop(model, None)
            else:
                self._factories[model] = backend  # type: ignore[assignment]
                self._backends.pop(model, None)
            self._dimensions.pop(model, None)

    def models(self) -> List[str]:
        with self._lock:
            return sorted(set(self._factories) | set(self._backends))

    def is_registered(self, model: str) -> bool:
        with self._lock:
            return model in self._backends or model in self._factories

    def backend(self, model: str) -> EmbeddingBackend:
        with self._lock:
            existing = self._backends.get(model)
            if existing is not None:
                return existing
            factory = self._factories.get(model)
        if factory is None:
            raise EmbeddingUnavailable(model, "model is not registered")
        try:
            created = factory()
        except (ImportError, OSError, RuntimeError, ValueError) as exc:
            logger.warning("Failed to load embedding model %s: %s", model, exc)
            raise EmbeddingUnavailable(model, f"model could not be loaded: {exc}") from exc
        with self._lock:
            return self._backends.setdefault(model, created)

    # ---- calls ----
    def _call(self, model: str, fn: Callable[..., Any], *args: Any) -> Any:
        attempts = self.max_retries + 1
        reason = "unknown error"
        for attempt in range(1, attempts + 1):
            future = self._call_executor.submit(fn, *args)
            try:
                return future.result(timeout=self.timeout)
            except FuturesTimeout:
                future.cancel()
                reason = f"timed out after {self.timeout}s"
            except TransientBackendError as exc:
                reason = str(exc) or exc.__class__.__name__
            except EmbeddingUnavailable:
                raise
            except (ValueError, TypeError, KeyError, RuntimeError) as exc:
                raise EmbeddingUnavailable(model, str(exc)) from exc
            if attempt < attempts:
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Embedding call for %s failed (%s); retry %d/%d in %.2fs",
                    model,
                    reason,
                    attempt,
                    self.max_retries,
                    delay,
                )
                time.sleep(delay)
        raise EmbeddingUnavailable(model, f"{reason} after {attempts} attempts")

    def _check_vector(self, model: str, vector: Sequence[float]) -> List[float]:
        values = [float(value) for value in vector]
        if not values:
            raise EmbeddingUnavailable(model, "backend returned an empty vector")
        with self._lock:
            expected = self._dimensions.setdefault(model, len(values))
        if expected != len(values):
            raise EmbeddingUnavailable(
                model, f"backend returned {len(values)} dimensions, expected {expected}"
            )
        return values

    @staticmethod
    def _check_text(text: Any) -> str:
        if not isinstance(text, str):
            raise InvalidParameters("Embedding input must be a string", details={"type": type(text).__name__})
        return text

    def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        model = model or default_embed_model()
        text = self._check_text(text)
        cached = self._cache.get(model, text)
        if cached is not None:
            return cached
        backend = self.backend(model)
        vector = self._check_vector(model, self._call(model, backend.embed, text))
        self._cache.add(model, text, vector)
        return vector

    def embed_batch(self, texts: Sequence[str], model: Optional[str] = None) -> List[List[float]]:
        """Embed ``texts`` preserving order; any failure fails the whole batch."""
        model = model or default_embed_model()
        texts = [self._check_text(text) for text in texts]
        results: List[Optional[List[float]]] = [self._cache.get(model, text) for text in texts]
        missing = [index for index, vector in enumerate(results) if vector is None]
        if missing:
            backend = self.backend(model)
            batch_fn = getattr(backend, "embed_batch", None)
            if batch_fn is not None:
                vectors = list(self._call(model, batch_fn, [texts[index] for index in missing]))
                if len(vectors) != len(missing):
                    raise EmbeddingUnavailable(
                        model, f"backend returned {len(vectors)} vectors for {len(missing)} inputs"
                    )
                for index, vector in zip(missing, vectors):
                    results[index] = self._check_vector(model, vector)
                    self._cache.add(model, texts[index], results[index])
            else:
                by_index = self._fan_out({index: texts[index] for index in missing}, model)
                for index, vector in by_index.items():
                    results[index] = vector
        return results  # type: ignore[return-value]

    def embed_many(self, items: Mapping[str, str], model: Optional[str] = None) -> Dict[str, List[float]]:
        """Embed ``chunk_id -> text`` in parallel, joined back by chunk id."""
        model = model or default_embed_model()
        if not items:
            return {}
        self.backend(model)
        return self._fan_out(dict(items), model)

    def _fan_out(self, items: Mapping[Any, str], model: str) -> Dict[Any, List[float]]:
        futures = {key: self._batch_executor.submit(self.embed, text, model) for key, text in items.items()}
        done, pending = wait(futures.values(), return_when=FIRST_EXCEPTION)
        for future in done:
            exc = future.exception()
            if exc is not None:
                for other in pending:
                    other.cancel()
                raise exc
        return {key: future.result() for key, future in futures.items()}

    def cache_info(self) -> Dict[str, int]:
        return {"size": len(self._cache), "hits": self._cache.hits, "misses": self._cache.misses}

    def close(self) -> None:
        self._batch_executor.shutdown(wait=False, cancel_futures=True)
        self._call_executor.shutdown(wait=False, cancel_futures=True)


SENTENCE_TRANSFORMER_MODELS = ("all-MiniLM-L6-v2", "all-mpnet-base-v2")
HTTP_EMBEDDING_MODELS = ("text-embedding-ada-002", "text-embedding-3-small")


def register_default_backends(embedder: Embedder) -> Embedder:
    """Register the hashing backend plus lazily loaded optional backends."""
    embedder.register(HASHING_MODEL, HashEmbeddingBackend(256))
    for name in SENTENCE_TRANSFORMER_MODELS:
        embedder.register(name, lambda name=name: SentenceTransformerBackend(name))

    api_url = os.getenv("EMBED_API_URL")
    if api_url:
        api_key = os.getenv("EMBED_API_KEY")
        remote = list(HTTP_EMBEDDING_MODELS)
        configured = default_embed_model()
        if configured not in remote and not embedder.is_registered(configured):
            remote.append(configured)
        for name in remote:
            embedder.register(
                name,
                lambda name=name: HTTPEmbeddingBackend(api_url, name, api_key=api_key, timeout=embedder.timeout),
            )
    return embedder


_default_embedder: Optional[Embedder] = None
_default_lock = threading.Lock()


def get_embedder() -> Embedder:
    """Process-wide embedder with the default backends registered."""
    global _default_embedder
    with _default_lock:
        if _default_embedder is None:
            _default_embedder = register_default_backends(Embedder())
        return _default_embedder


def set_embedder(embedder: Optional[Embedder]) -> None:
    """Replace the process-wide embedder (tests inject fakes here)."""
    global _default_embedder
    with _default_lock:
        _default_embedder = embedder


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; zero vectors score 0.

    Raises InvalidParameters when the vectors differ in length.
    """
    if len(vec_a) != len(vec_b):
        raise InvalidParameters(
            "Vectors must have the same number of dimensions",
            details={"dimensions": [len(vec_a), len(vec_b)]},
        )
    if not vec_a:
        return 0.0
    dot = sum(x * y for x, y in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(x * x for x in vec_a))
    norm_b = math.sqrt(sum(y * y for y in vec_b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))
