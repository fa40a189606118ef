"""lodestar_rag.retrieval.embedder

Text and image embedding for indexing and retrieval.

Chunks are embedded in ``"document"`` mode when indexed and queries in
``"query"`` mode when searched; providers that distinguish the two return
different vectors for the same text. Each embedder wraps a LlamaIndex
embedding model and translates provider and transport failures into
:class:`~lodestar_rag.common.errors.EmbeddingFailed`.

The DashScope integration talks to the provider's native HTTP endpoints with
typed pydantic request and response models.

Classes
-------
BaseEmbedder
    Interface used by the indexer and the retrieval engine.
DashScopeEmbedding
    LlamaIndex multi-modal embedding calling the DashScope native endpoints.
DashScopeEmbedder
    Embedder backed by :class:`DashScopeEmbedding`.
MockEmbedder
    Constant-vector embedder for local wiring checks.

Functions
---------
sanitize_text
    Normalise text before sending it to a provider.
create_embedder
    Create an embedder from the ``embedder`` configuration section.
"""

import asyncio
import base64
import logging
import re
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Any, Dict, List, Literal, Mapping, Optional

import requests
import yaml
from llama_index.core.base.embeddings.base import BaseEmbedding as LlamaIndexBaseEmbedding
from llama_index.core.bridge.pydantic import Field, PrivateAttr
from llama_index.core.callbacks.base import CallbackManager
from llama_index.core.embeddings import MockEmbedding
from llama_index.core.embeddings.multi_modal_base import MultiModalEmbedding
from pydantic import BaseModel, ValidationError

from lodestar_rag.common.errors import EmbeddingFailed, LodestarError

logger = logging.getLogger(__name__)

EmbedMode = Literal["query", "document"]

DEFAULT_DASHSCOPE_BASE_URL = "https://dashscope.aliyuncs.com/api/v1"
DEFAULT_TEXT_MODEL = "text-embedding-v4"
DEFAULT_IMAGE_MODEL = "tongyi-embedding-vision-plus"
DEFAULT_DIMENSION = 1024
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 60.0

TEXT_EMBEDDING_PATH = "/services/embeddings/text-embedding/text-embedding"
MULTIMODAL_EMBEDDING_PATH = "/services/embeddings/multimodal-embedding/multimodal-embedding"

EMPTY_TEXT_PLACEHOLDER = "无有效内容"
_PLACEHOLDER_API_KEYS = {"YOUR_DASHSCOPE_API_KEY"}

_LINE_BREAKS = re.compile(r"[\r\n\t\u3000]")
_INVISIBLE = re.compile(r"[\x00-\x1f\x7f-\x9f\u200b\u200c\u200d]")
_WHITESPACE_RUN = re.compile(r"\s+")


def sanitize_text(text: Optional[str]) -> str:
    """Normalise text so that it is safe to send to an embedding provider.

    Line breaks, tabs and full-width spaces become spaces; remaining control
    and zero-width characters are removed; whitespace runs collapse to one
    space. Text that ends up empty is replaced by a fixed placeholder because
    providers reject empty input.

    Parameters
    ----------
    text : str or None
        Raw text.

    Returns
    -------
    str
        Cleaned, non-empty text.
    """
    if not text:
        return EMPTY_TEXT_PLACEHOLDER
    clean = _LINE_BREAKS.sub(" ", text)
    clean = _INVISIBLE.sub("", clean)
    clean = _WHITESPACE_RUN.sub(" ", clean).strip()
    return clean or EMPTY_TEXT_PLACEHOLDER


class BaseEmbedder(ABC):
    """Abstract interface for text and image embedding.

    Concrete implementations wrap a provider-specific LlamaIndex embedding and
    expose a small, consistent API. Provider and transport exceptions are
    translated into :class:`~lodestar_rag.common.errors.EmbeddingFailed`.
    """

    @abstractmethod
    def get_embedder(self) -> LlamaIndexBaseEmbedding:
        """
        Return the LlamaIndex embedding instance.

        Returns
        -------
        LlamaIndexBaseEmbedding
            The underlying LlamaIndex embedding.
        """
        pass

    @classmethod
    def from_config(
            cls,
            config_path: str,
            callback_manager: Optional[CallbackManager] = None
        ) -> "BaseEmbedder":
        """Create an embedder from a YAML configuration file.

        Parameters
        ----------
        config_path : str
            Path to the YAML configuration file.
        callback_manager : CallbackManager, optional
            Optional LlamaIndex callback manager for tracing.

        Returns
        -------
        BaseEmbedder
            An initialised embedder implementation.
        """
        with open(config_path, 'r') as f:
            cfg = yaml.safe_load(f) or {}
        return cls.from_config_dict(cfg, callback_manager)

    @classmethod
    @abstractmethod
    def from_config_dict(
            cls,
            config: Dict[str, Any],
            callback_manager: Optional[CallbackManager] = None
        ) -> "BaseEmbedder":
        """Create an embedder from a configuration mapping.

        Parameters
        ----------
        config : dict[str, Any]
            Configuration mapping.
        callback_manager : CallbackManager, optional
            Optional LlamaIndex callback manager for tracing.

        Returns
        -------
        BaseEmbedder
            An initialised embedder implementation.

        Raises
        ------
        KeyError
            If required configuration keys are missing.
        """
        pass

    @property
    def model_name(self) -> str:
        return getattr(self.get_embedder(), "model_name", "unknown")

    def embed(self, text: str, mode: EmbedMode = "query") -> List[float]:
        """Embed a single text.

        Parameters
        ----------
        text : str
            Text to embed.
        mode : {"query", "document"}, optional
            ``"query"`` for search-time text, ``"document"`` for indexing. Some
            providers compute different vectors for each. Defaults to ``"query"``.

        Returns
        -------
        list[float]
            Embedding vector.

        Raises
        ------
        ValueError
            If ``mode`` is not recognised.
        EmbeddingFailed
            If the provider fails.
        """
        if mode not in ("query", "document"):
            raise ValueError(f"Unknown embedding mode: {mode!r}. Use 'query' or 'document'.")

        embedder = self.get_embedder()
        try:
            if mode == "query":
                return list(embedder.get_query_embedding(text))
            return list(embedder.get_text_embedding(text))
        except LodestarError:
            raise
        except Exception as exc:
            raise EmbeddingFailed(str(exc), model=self.model_name) from exc

    def embed_query(self, query: str) -> List[float]:
        """Embed a single query string."""
        return self.embed(query, mode="query")

    def embed_documents(self, documents: List[str]) -> List[List[float]]:
        """Embed multiple texts in ``"document"`` mode, batching where supported.

        Raises
        ------
        EmbeddingFailed
            If the provider fails or returns the wrong number of vectors.
        """
        if not documents:
            return []
        embedder = self.get_embedder()
        try:
            vectors = embedder.get_text_embedding_batch(list(documents))
        except LodestarError:
            raise
        except Exception as exc:
            raise EmbeddingFailed(str(exc), model=self.model_name) from exc

        if len(vectors) != len(documents):
            raise EmbeddingFailed(
                f"Provider returned {len(vectors)} embeddings for {len(documents)} texts",
                model=self.model_name,
            )
        return [list(v) for v in vectors]

    def embed_image(self, data: bytes) -> List[float]:
        """Embed raw image bytes.

        Raises
        ------
        EmbeddingFailed
            If the provider does not support images or the request fails.
        """
        embedder = self.get_embedder()
        if not isinstance(embedder, MultiModalEmbedding):
            raise EmbeddingFailed(
                f"Embedding model {self.model_name!r} does not support images",
                model=self.model_name,
            )
        try:
            return list(embedder.get_image_embedding(BytesIO(data)))
        except LodestarError:
            raise
        except Exception as exc:
            raise EmbeddingFailed(str(exc), model=self.model_name) from exc

    async def aembed(self, text: str, mode: EmbedMode = "query") -> List[float]:
        """Asynchronously embed a single text in a thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.embed, text, mode)

    async def aembed_documents(self, texts: List[str]) -> List[List[float]]:
        """Asynchronously embed a batch of texts in a thread pool.

        Parameters
        ----------
        texts : list[str]
            Texts to embed.

        Returns
        -------
        list[list[float]]
            Embedding vectors for each text.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.embed_documents, texts)


# ----------------- DashScope -----------------

class TextEmbeddingInput(BaseModel):
    texts: List[str]


class TextEmbeddingParameters(BaseModel):
    dimension: int
    text_type: EmbedMode


class TextEmbeddingRequest(BaseModel):
    """Body of the DashScope native text embedding endpoint."""
    model: str
    input: TextEmbeddingInput
    parameters: TextEmbeddingParameters


class ImageContent(BaseModel):
    image: str


class MultiModalEmbeddingInput(BaseModel):
    contents: List[ImageContent]


class MultiModalEmbeddingRequest(BaseModel):
    """Body of the DashScope multi-modal embedding endpoint."""
    model: str
    input: MultiModalEmbeddingInput


class EmbeddingItem(BaseModel):
    embedding: List[float]
    text_index: Optional[int] = None
    index: Optional[int] = None


class EmbeddingOutput(BaseModel):
    embeddings: List[EmbeddingItem] = []


class EmbeddingResponse(BaseModel):
    """Response shared by both DashScope embedding endpoints."""
    output: Optional[EmbeddingOutput] = None
    request_id: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None


class DashScopeEmbedding(MultiModalEmbedding):
    """LlamaIndex embedding backed by the DashScope native embedding API.

    Query and text embeddings use ``text_type="query"`` and
    ``text_type="document"`` respectively. Image embeddings are sent to the
    multi-modal endpoint as base64 data URLs.
    """

    api_key: Optional[str] = Field(default=None, description="DashScope API key.")
    base_url: str = Field(default=DEFAULT_DASHSCOPE_BASE_URL, description="DashScope API base URL.")
    image_model_name: str = Field(default=DEFAULT_IMAGE_MODEL, description="Multi-modal model.")
    dimension: int = Field(default=DEFAULT_DIMENSION, description="Output vector dimension.", gt=0)
    connect_timeout: float = Field(default=DEFAULT_CONNECT_TIMEOUT, description="Connect timeout (s).")
    read_timeout: float = Field(default=DEFAULT_READ_TIMEOUT, description="Read timeout (s).")

    _session: requests.Session = PrivateAttr()

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("model_name", DEFAULT_TEXT_MODEL)
        super().__init__(**kwargs)
        self._session = requests.Session()

    @classmethod
    def class_name(cls) -> str:
        return "DashScopeEmbedding"

    def _check_api_key(self) -> str:
        key = (self.api_key or "").strip()
        if not key or key in _PLACEHOLDER_API_KEYS:
            raise EmbeddingFailed("DashScope API key is missing or invalid", model=self.model_name)
        return key

    def _post(self, path: str, body: BaseModel, model: str) -> List[List[float]]:
        api_key = self._check_api_key()
        url = self.base_url.rstrip("/") + path
        try:
            response = self._session.post(
                url,
                json=body.model_dump(),
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json; charset=utf-8",
                    "Accept-Encoding": "identity",
                },
                timeout=(self.connect_timeout, self.read_timeout),
            )
        except requests.RequestException as exc:
            raise EmbeddingFailed(f"DashScope request failed: {exc}", model=model) from exc

        try:
            parsed = EmbeddingResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise EmbeddingFailed(
                f"DashScope returned an unreadable response (status {response.status_code})",
                model=model,
            ) from exc

        if response.status_code != 200:
            raise EmbeddingFailed(
                f"DashScope returned {response.status_code}: {parsed.message or parsed.code}",
                model=model,
                details={"status_code": response.status_code, "request_id": parsed.request_id},
            )
        if parsed.output is None or not parsed.output.embeddings:
            raise EmbeddingFailed("DashScope response contained no embeddings", model=model)

        items = parsed.output.embeddings
        if all(item.text_index is not None for item in items):
            items = sorted(items, key=lambda item: item.text_index)
        return [item.embedding for item in items]

    def _embed_texts(self, texts: List[str], text_type: EmbedMode) -> List[List[float]]:
        body = TextEmbeddingRequest(
            model=self.model_name,
            input=TextEmbeddingInput(texts=[sanitize_text(t) for t in texts]),
            parameters=TextEmbeddingParameters(dimension=self.dimension, text_type=text_type),
        )
        vectors = self._post(TEXT_EMBEDDING_PATH, body, self.model_name)
        logger.debug("Embedded %d texts (text_type=%s)", len(vectors), text_type)
        return vectors

    def _get_query_embedding(self, query: str) -> List[float]:
        return self._embed_texts([query], "query")[0]

    def _get_text_embedding(self, text: str) -> List[float]:
        return self._embed_texts([text], "document")[0]

    def _get_text_embeddings(self, texts: List[str]) -> List[List[float]]:
        return self._embed_texts(texts, "document")

    async def _aget_query_embedding(self, query: str) -> List[float]:
        return self._get_query_embedding(query)

    async def _aget_text_embedding(self, text: str) -> List[float]:
        return self._get_text_embedding(text)

    def _get_image_embedding(self, img_file_path: Any) -> List[float]:
        if isinstance(img_file_path, BytesIO):
            data_url = "data:image/jpeg;base64," + base64.b64encode(img_file_path.getvalue()).decode("ascii")
        elif isinstance(img_file_path, str) and img_file_path.startswith("data:"):
            data_url = img_file_path
        else:
            with open(img_file_path, "rb") as f:
                data_url = "data:image/jpeg;base64," + base64.b64encode(f.read()).decode("ascii")

        body = MultiModalEmbeddingRequest(
            model=self.image_model_name,
            input=MultiModalEmbeddingInput(contents=[ImageContent(image=data_url)]),
        )
        return self._post(MULTIMODAL_EMBEDDING_PATH, body, self.image_model_name)[0]

    async def _aget_image_embedding(self, img_file_path: Any) -> List[float]:
        return self._get_image_embedding(img_file_path)


class DashScopeEmbedder(BaseEmbedder):
    """Embedder backed by the DashScope native embedding API.

    Parameters
    ----------
    api_key : str
        DashScope API key. A missing or placeholder key fails every request
        with :class:`~lodestar_rag.common.errors.EmbeddingFailed` before any
        network call is made.
    model_name : str, optional
        Text embedding model. Defaults to ``"text-embedding-v4"``.
    image_model_name : str, optional
        Multi-modal embedding model. Defaults to ``"tongyi-embedding-vision-plus"``.
    base_url : str, optional
        API base URL.
    dimension : int, optional
        Output dimension requested for text embeddings. Defaults to ``1024``.
    connect_timeout, read_timeout : float, optional
        HTTP timeouts in seconds. Default to 30 and 60.
    embed_batch_size : int, optional
        Texts per request in batch mode. Defaults to ``10``.
    callback_manager : CallbackManager, optional
        Optional LlamaIndex callback manager for tracing.
    """

    def __init__(
            self,
            api_key: Optional[str],
            *,
            model_name: str = DEFAULT_TEXT_MODEL,
            image_model_name: str = DEFAULT_IMAGE_MODEL,
            base_url: str = DEFAULT_DASHSCOPE_BASE_URL,
            dimension: int = DEFAULT_DIMENSION,
            connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
            read_timeout: float = DEFAULT_READ_TIMEOUT,
            embed_batch_size: int = 10,
            callback_manager: Optional[CallbackManager] = None,
        ):
        self.embedder = DashScopeEmbedding(
            api_key=api_key,
            model_name=model_name,
            image_model_name=image_model_name,
            base_url=base_url,
            dimension=dimension,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            embed_batch_size=embed_batch_size,
            callback_manager=callback_manager or CallbackManager([]),
        )

    def get_embedder(self) -> LlamaIndexBaseEmbedding:
        return self.embedder

    @classmethod
    def from_config_dict(
            cls,
            config: Dict[str, Any],
            callback_manager: Optional[CallbackManager] = None
        ) -> "DashScopeEmbedder":
        """Create a DashScope embedder from a configuration mapping.

        Recognised keys: ``api_key``, ``model_name``, ``image_model_name``,
        ``base_url`` (or ``api_base``), ``dimension``, ``connect_timeout``,
        ``read_timeout``, ``embed_batch_size``.
        """
        return cls(
            api_key=config.get("api_key"),
            model_name=config.get("model_name", DEFAULT_TEXT_MODEL),
            image_model_name=config.get("image_model_name", DEFAULT_IMAGE_MODEL),
            base_url=config.get("base_url", config.get("api_base", DEFAULT_DASHSCOPE_BASE_URL)),
            dimension=int(config.get("dimension", DEFAULT_DIMENSION)),
            connect_timeout=float(config.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)),
            read_timeout=float(config.get("read_timeout", DEFAULT_READ_TIMEOUT)),
            embed_batch_size=int(config.get("embed_batch_size", 10)),
            callback_manager=callback_manager,
        )


class MockEmbedder(BaseEmbedder):
    """Constant-vector embedder for wiring checks without a provider."""

    def __init__(self, dimension: int = DEFAULT_DIMENSION, callback_manager: Optional[CallbackManager] = None):
        self.embedder = MockEmbedding(embed_dim=dimension, callback_manager=callback_manager)

    def get_embedder(self) -> LlamaIndexBaseEmbedding:
        return self.embedder

    @classmethod
    def from_config_dict(
            cls,
            config: Dict[str, Any],
            callback_manager: Optional[CallbackManager] = None
        ) -> "MockEmbedder":
        return cls(
            dimension=int(config.get("dimension", DEFAULT_DIMENSION)),
            callback_manager=callback_manager,
        )


_EMBEDDERS = {
    "dashscope": DashScopeEmbedder,
    "mock": MockEmbedder,
}


def _embedder_kind(cfg: Mapping[str, Any]) -> str:
    """Return the normalised ``type`` (or ``kind``) of an embedder section.

    ``"DashScope"``, ``"dash-scope"`` and ``"dash_scope"`` all map to
    ``"dashscope"``. An empty string means no discriminator was given.
    """
    raw = cfg.get("type", cfg.get("kind")) or ""
    return re.sub(r"[\s_\-]+", "", str(raw)).lower()


def create_embedder(
    config: Mapping[str, Any],
    callback_manager: Optional[CallbackManager] = None,
) -> BaseEmbedder:
    """Create an embedder from the ``embedder`` configuration section.

    Parameters
    ----------
    config : Mapping[str, Any]
        Embedder section. ``type`` selects the implementation (``"dashscope"``
        or ``"mock"``) and defaults to DashScope.
    callback_manager : CallbackManager, optional
        Optional LlamaIndex callback manager for tracing.

    Returns
    -------
    BaseEmbedder
        An initialised embedder.

    Raises
    ------
    TypeError
        If ``config`` is not a mapping.
    ValueError
        If ``type`` names an unsupported provider.
    """
    if not isinstance(config, Mapping):
        raise TypeError(f"Embedder configuration must be a mapping, got {type(config).__name__}")

    kind = _embedder_kind(config) or "dashscope"
    cls = _EMBEDDERS.get(kind)
    if cls is None:
        raise ValueError(
            f"Unknown embedder type {config.get('type', config.get('kind'))!r}. "
            f"Supported: {sorted(_EMBEDDERS)}."
        )

    return cls.from_config_dict(dict(config), callback_manager=callback_manager)


__all__ = [
    "BaseEmbedder",
    "DashScopeEmbedding",
    "DashScopeEmbedder",
    "MockEmbedder",
    "sanitize_text",
    "create_embedder",
]
