"""Tests for the embedding client and the OpenAI-compatible provider."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import openai
import pytest

from lessonrag.config import Settings
from lessonrag.indexer.embedder import (
    EMBEDDING_DIMENSION,
    EMBEDDING_MODEL,
    EmbeddingClient,
    OpenAIEmbeddingProvider,
    TaskType,
    _translate_openai_error,
    get_embedding_client,
)
from lessonrag.indexer.errors import (
    ConfigurationError,
    DimensionMismatchError,
    TerminalProviderError,
    TransientProviderError,
)
from lessonrag.indexer.models import Vector


def _response(vector):
    return SimpleNamespace(data=[SimpleNamespace(embedding=vector)])


def _status_error(cls, status_code: int, message: str = "error"):
    request = httpx.Request("POST", "https://api.example.com/v1/embeddings")
    response = httpx.Response(status_code, request=request)
    return cls(message, response=response, body=None)


class TestVectorValidated:
    """Tests for Vector.validated."""

    def test_accepts_exact_dimension(self):
        vector = Vector.validated([0.1, 0.2, 0.3], 3)
        assert vector.values == (0.1, 0.2, 0.3)
        assert vector.dimension == 3

    def test_accepts_integers(self):
        assert Vector.validated([1, 2], 2).values == (1.0, 2.0)

    @pytest.mark.parametrize("length", [0, 2, 4])
    def test_rejects_wrong_length(self, length):
        with pytest.raises(DimensionMismatchError) as exc_info:
            Vector.validated([0.5] * length, 3)
        assert exc_info.value.expected == 3
        assert exc_info.value.actual == length

    @pytest.mark.parametrize("raw", [None, "abc", b"abc", {"a": 1}, 42])
    def test_rejects_non_vectors(self, raw):
        with pytest.raises(DimensionMismatchError):
            Vector.validated(raw, 3)

    def test_rejects_non_numeric_components(self):
        with pytest.raises(DimensionMismatchError):
            Vector.validated([0.1, "x", 0.3], 3)
        with pytest.raises(DimensionMismatchError):
            Vector.validated([0.1, True, 0.3], 3)

    def test_rejects_non_finite_components(self):
        with pytest.raises(DimensionMismatchError):
            Vector.validated([0.1, float("nan"), 0.3], 3)
        with pytest.raises(DimensionMismatchError):
            Vector.validated([0.1, float("inf"), 0.3], 3)

    def test_rejects_zero_vector(self):
        with pytest.raises(DimensionMismatchError) as exc_info:
            Vector.validated([0.0, 0, 0.0], 3)
        assert "zero-magnitude" in str(exc_info.value)


class TestEmbeddingClient:
    """Tests for EmbeddingClient."""

    def test_passes_dimension_and_task_type(self):
        provider = MagicMock()
        provider.embed.return_value = [0.1] * 4
        client = EmbeddingClient(provider, dimension=4)

        vector = client.embed("hello")

        provider.embed.assert_called_once_with("hello", 4, TaskType.RETRIEVAL_DOCUMENT)
        assert len(vector) == 4

    def test_for_task_changes_default_task(self):
        provider = MagicMock()
        provider.embed.return_value = [0.1] * 4
        client = EmbeddingClient(provider, dimension=4).for_task(TaskType.RETRIEVAL_QUERY)

        client.embed("question")

        provider.embed.assert_called_once_with("question", 4, TaskType.RETRIEVAL_QUERY)

    def test_wrong_dimension_is_rejected(self):
        provider = MagicMock()
        provider.embed.return_value = [0.1] * 3
        client = EmbeddingClient(provider, dimension=4)

        with pytest.raises(DimensionMismatchError):
            client.embed("hello")

    def test_unknown_transient_exception_is_classified(self):
        provider = MagicMock()
        provider.embed.side_effect = RuntimeError("503 Service Unavailable")
        client = EmbeddingClient(provider, dimension=4)

        with pytest.raises(TransientProviderError):
            client.embed("hello")

    def test_unknown_terminal_exception_is_classified(self):
        provider = MagicMock()
        provider.embed.side_effect = RuntimeError("invalid input")
        client = EmbeddingClient(provider, dimension=4)

        with pytest.raises(TerminalProviderError):
            client.embed("hello")

    def test_timeout_is_transient(self):
        provider = MagicMock()
        provider.embed.side_effect = TimeoutError()
        client = EmbeddingClient(provider, dimension=4)

        with pytest.raises(TransientProviderError):
            client.embed("hello")

    def test_rejects_non_positive_dimension(self):
        with pytest.raises(ConfigurationError):
            EmbeddingClient(MagicMock(), dimension=0)


class TestOpenAIEmbeddingProvider:
    """Tests for OpenAIEmbeddingProvider."""

    def test_calls_embeddings_api(self):
        client = MagicMock()
        client.embeddings.create.return_value = _response([0.5] * 4)
        provider = OpenAIEmbeddingProvider(client, model="text-embedding-3-small")

        result = provider.embed("chunk", 4, TaskType.RETRIEVAL_DOCUMENT)

        assert result == [0.5] * 4
        client.embeddings.create.assert_called_once_with(
            model="text-embedding-3-small", input=["chunk"], dimensions=4
        )

    def test_omits_dimensions_when_disabled(self):
        client = MagicMock()
        client.embeddings.create.return_value = _response([0.5] * 4)
        provider = OpenAIEmbeddingProvider(client, send_dimensions=False)

        provider.embed("chunk", 4, TaskType.RETRIEVAL_DOCUMENT)

        assert "dimensions" not in client.embeddings.create.call_args.kwargs

    def test_nomic_models_get_task_prefix(self):
        client = MagicMock()
        client.embeddings.create.return_value = _response([0.5] * 4)
        provider = OpenAIEmbeddingProvider(client, model="nomic-embed-text-v1.5")

        provider.embed("what is x", 4, TaskType.RETRIEVAL_QUERY)
        provider.embed("x is y", 4, TaskType.RETRIEVAL_DOCUMENT)

        inputs = [c.kwargs["input"][0] for c in client.embeddings.create.call_args_list]
        assert inputs == ["search_query: what is x", "search_document: x is y"]

    def test_empty_response_is_dimension_mismatch(self):
        client = MagicMock()
        client.embeddings.create.return_value = SimpleNamespace(data=[])
        provider = OpenAIEmbeddingProvider(client)

        with pytest.raises(DimensionMismatchError):
            provider.embed("chunk", 4, TaskType.RETRIEVAL_DOCUMENT)

    def test_rate_limit_is_translated(self):
        client = MagicMock()
        client.embeddings.create.side_effect = _status_error(openai.RateLimitError, 429)
        provider = OpenAIEmbeddingProvider(client)

        with pytest.raises(TransientProviderError):
            provider.embed("chunk", 4, TaskType.RETRIEVAL_DOCUMENT)


class TestTranslateOpenAIError:
    """Tests for _translate_openai_error."""

    @pytest.mark.parametrize(
        "cls,status",
        [
            (openai.RateLimitError, 429),
            (openai.InternalServerError, 500),
            (openai.InternalServerError, 503),
        ],
    )
    def test_transient_statuses(self, cls, status):
        assert isinstance(_translate_openai_error(_status_error(cls, status)), TransientProviderError)

    @pytest.mark.parametrize(
        "cls,status",
        [
            (openai.AuthenticationError, 401),
            (openai.PermissionDeniedError, 403),
            (openai.BadRequestError, 400),
            (openai.NotFoundError, 404),
        ],
    )
    def test_terminal_statuses(self, cls, status):
        assert isinstance(_translate_openai_error(_status_error(cls, status)), TerminalProviderError)

    def test_generic_status_error_408_is_transient(self):
        error = _status_error(openai.APIStatusError, 408)
        assert isinstance(_translate_openai_error(error), TransientProviderError)

    def test_generic_status_error_418_is_terminal(self):
        error = _status_error(openai.APIStatusError, 418)
        assert isinstance(_translate_openai_error(error), TerminalProviderError)

    def test_connection_error_is_transient(self):
        request = httpx.Request("POST", "https://api.example.com/v1/embeddings")
        error = openai.APIConnectionError(request=request)
        assert isinstance(_translate_openai_error(error), TransientProviderError)


class TestGetEmbeddingClient:
    """Tests for get_embedding_client."""

    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            get_embedding_client(Settings(api_key=""))

    def test_builds_client_from_settings(self):
        settings = Settings(
            api_key="sk-test",
            api_base_url="https://embeddings.example.com/v1",
            embedding_model="custom-embed",
            embedding_dimension=256,
            embedding_request_dimensions=True,
        )
        with patch("lessonrag.indexer.embedder.OpenAI") as mock_openai:
            client = get_embedding_client(settings)

        kwargs = mock_openai.call_args.kwargs
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["base_url"] == "https://embeddings.example.com/v1"
        assert kwargs["max_retries"] == 0
        assert client.dimension == 256
        assert client.provider.model == "custom-embed"
        assert client.provider.send_dimensions is True

    def test_defaults(self):
        assert EMBEDDING_MODEL == "text-embedding-3-small"
        assert EMBEDDING_DIMENSION == 768
