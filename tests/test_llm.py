"""Tests for the LLM module."""

import sys
from unittest.mock import AsyncMock, MagicMock, PropertyMock, patch

import httpx
import pytest

from postmortem_kg.llm import (
    BaseLLM,
    LLMAuthenticationError,
    LLMConnectionError,
    LLMModelNotFoundError,
    LLMProviderNotConfiguredError,
    LLMRateLimitError,
    LLMResponseError,
    LLMTimeoutError,
    OllamaLLM,
    get_available_providers,
    get_llm,
    get_provider,
)
from postmortem_kg.llm.providers.claude import ClaudeLLM
from postmortem_kg.llm.providers.gemini import GeminiLLM


def _mock_client(mock_client_class, response=None, post_error=None, get_error=None):
    mock_client = AsyncMock()
    mock_client.post = AsyncMock(return_value=response, side_effect=post_error)
    mock_client.get = AsyncMock(return_value=response, side_effect=get_error)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_class.return_value = mock_client
    return mock_client


def _response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = ""
    response.headers = {}
    return response


class TestOllamaLLM:
    """Tests for OllamaLLM."""

    def test_init_custom_values(self):
        """Test initialization with custom values."""
        llm = OllamaLLM(
            base_url="http://localhost:11434",
            model="custom-model",
            timeout=60.0,
        )
        assert llm.base_url == "http://localhost:11434"
        assert llm.model == "custom-model"
        assert llm.timeout == 60.0

    def test_base_url_trailing_slash_removed(self):
        """Test that trailing slash is removed from base URL."""
        llm = OllamaLLM(base_url="http://localhost:11434/")
        assert llm.base_url == "http://localhost:11434"

    @pytest.mark.asyncio
    async def test_generate_success(self):
        """Test successful text generation."""
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = _mock_client(
                mock_client_class, _response(payload={"response": "Hello, World!"})
            )

            llm = OllamaLLM(base_url="http://localhost:11434")
            result = await llm.generate("Say hello", max_tokens=100)

            assert result == "Hello, World!"
            mock_client.post.assert_called_once()
            body = mock_client.post.call_args.kwargs["json"]
            assert body["options"] == {"num_predict": 100}
            assert body["stream"] is False

    @pytest.mark.asyncio
    async def test_generate_model_not_found(self):
        """Test a 404 maps to LLMModelNotFoundError."""
        with patch("httpx.AsyncClient") as mock_client_class:
            _mock_client(mock_client_class, _response(status_code=404))

            llm = OllamaLLM(base_url="http://localhost:11434", model="missing")
            with pytest.raises(LLMModelNotFoundError) as exc_info:
                await llm.generate("prompt")
            assert exc_info.value.provider == "ollama"

    @pytest.mark.asyncio
    async def test_generate_timeout(self):
        """Test a transport timeout maps to LLMTimeoutError."""
        with patch("httpx.AsyncClient") as mock_client_class:
            _mock_client(mock_client_class, post_error=httpx.ReadTimeout("slow"))

            llm = OllamaLLM(base_url="http://localhost:11434")
            with pytest.raises(LLMTimeoutError):
                await llm.generate("prompt")

    @pytest.mark.asyncio
    async def test_check_health_success(self):
        """Test health check returns True when Ollama is available."""
        with patch("httpx.AsyncClient") as mock_client_class:
            _mock_client(mock_client_class, _response(status_code=200))

            llm = OllamaLLM(base_url="http://localhost:11434")
            assert await llm.check_health() is True

    @pytest.mark.asyncio
    async def test_check_health_failure(self):
        """Test health check returns False when Ollama is unavailable."""
        with patch("httpx.AsyncClient") as mock_client_class:
            _mock_client(mock_client_class, get_error=httpx.ConnectError("Connection refused"))

            llm = OllamaLLM(base_url="http://localhost:11434")
            assert await llm.check_health() is False

    @pytest.mark.asyncio
    async def test_check_health_without_url(self):
        """Test health check is False when no URL is configured."""
        assert await OllamaLLM(base_url="").check_health() is False

    @pytest.mark.asyncio
    async def test_is_available_checks_base_url(self):
        """Test is_available checks that base_url is truthy."""
        assert await OllamaLLM(base_url="http://localhost:11434").is_available() is True
        assert await OllamaLLM(base_url="").is_available() is False


class TestClaudeLLM:
    """Tests for ClaudeLLM."""

    @pytest.mark.asyncio
    async def test_generate_joins_text_blocks(self):
        """Test text blocks are concatenated and other blocks ignored."""
        payload = {
            "content": [
                {"type": "text", "text": "Hello, "},
                {"type": "tool_use", "id": "x"},
                {"type": "text", "text": "World!"},
            ],
            "usage": {"input_tokens": 3, "output_tokens": 2},
        }
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = _mock_client(mock_client_class, _response(payload=payload))

            llm = ClaudeLLM(api_key="test-key", model="test-model")
            result = await llm.generate("Say hello", max_tokens=50)

            assert result == "Hello, World!"
            kwargs = mock_client.post.call_args.kwargs
            assert kwargs["headers"]["x-api-key"] == "test-key"
            assert kwargs["json"]["max_tokens"] == 50

    @pytest.mark.asyncio
    async def test_generate_without_key(self):
        """Test a missing API key fails before any request."""
        with patch("postmortem_kg.llm.providers.claude.settings") as mock_settings:
            mock_settings.ANTHROPIC_API_KEY = ""
            mock_settings.ANTHROPIC_MODEL = "test-model"
            mock_settings.LLM_TIMEOUT = 10.0
            llm = ClaudeLLM()

        with pytest.raises(LLMAuthenticationError):
            await llm.generate("prompt")

    @pytest.mark.asyncio
    async def test_invalid_key(self):
        """Test a 401 maps to LLMAuthenticationError."""
        with patch("httpx.AsyncClient") as mock_client_class:
            _mock_client(mock_client_class, _response(status_code=401))

            with pytest.raises(LLMAuthenticationError):
                await ClaudeLLM(api_key="bad").generate("prompt")

    @pytest.mark.asyncio
    async def test_rejected_request(self):
        """Test other client errors map to LLMResponseError."""
        with patch("httpx.AsyncClient") as mock_client_class:
            _mock_client(mock_client_class, _response(status_code=400))

            with pytest.raises(LLMResponseError):
                await ClaudeLLM(api_key="key").generate("prompt")


class TestBaseLLM:
    """Tests for BaseLLM abstract class."""

    def test_cannot_instantiate_directly(self):
        """Test that BaseLLM cannot be instantiated directly."""
        with pytest.raises(TypeError):
            BaseLLM()


class TestLLMFactory:
    """Tests for LLM factory and provider selection."""

    def test_get_available_providers(self):
        """Test that all built-in providers are registered."""
        providers = get_available_providers()
        assert {"claude", "gemini", "ollama"} <= set(providers)

    def test_get_provider_case_insensitive(self):
        """Test that provider names are case insensitive."""
        llm = get_provider("OLLAMA")
        assert llm.provider_name == "ollama"

    def test_get_provider_unknown_raises(self):
        """Test that unknown provider raises exception."""
        with pytest.raises(LLMProviderNotConfiguredError) as exc_info:
            get_provider("unknown_provider")
        assert "unknown_provider" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_get_llm_uses_config_provider(self):
        """Test that get_llm uses LLM_PROVIDER from config."""
        with patch("postmortem_kg.llm.factory.settings") as factory_settings, \
             patch("postmortem_kg.llm.base.settings") as base_settings:
            factory_settings.LLM_PROVIDER = "ollama"
            base_settings.OLLAMA_BASE_URL = "http://test:11434"
            base_settings.OLLAMA_LLM_MODEL = "test-model"
            base_settings.LLM_TIMEOUT = 10.0

            llm = await get_llm()
            assert llm.provider_name == "ollama"

    @pytest.mark.asyncio
    async def test_get_llm_auto_selects_claude_with_api_key(self):
        """Test that get_llm auto-selects Claude when API key is set."""
        with patch("postmortem_kg.llm.factory.settings") as factory_settings, \
             patch("postmortem_kg.llm.providers.claude.settings") as claude_settings:
            factory_settings.LLM_PROVIDER = ""
            factory_settings.ANTHROPIC_API_KEY = "test-api-key"

            claude_settings.ANTHROPIC_API_KEY = "test-api-key"
            claude_settings.ANTHROPIC_MODEL = "test-model"
            claude_settings.LLM_TIMEOUT = 10.0

            llm = await get_llm()
            assert llm.provider_name == "claude"

    @pytest.mark.asyncio
    async def test_get_llm_falls_back_to_ollama(self):
        """Test that get_llm falls back to Ollama when no Claude key or project."""
        with patch("postmortem_kg.llm.factory.settings") as factory_settings, \
             patch("postmortem_kg.llm.base.settings") as base_settings:
            factory_settings.LLM_PROVIDER = ""
            factory_settings.ANTHROPIC_API_KEY = ""
            factory_settings.vertex_project = ""
            factory_settings.OLLAMA_BASE_URL = "http://test:11434"
            base_settings.OLLAMA_BASE_URL = "http://test:11434"
            base_settings.OLLAMA_LLM_MODEL = "test-model"
            base_settings.LLM_TIMEOUT = 10.0

            llm = await get_llm()
            assert llm.provider_name == "ollama"

    @pytest.mark.asyncio
    async def test_get_llm_nothing_configured(self):
        """Test get_llm raises when no provider can be selected."""
        with patch("postmortem_kg.llm.factory.settings") as factory_settings:
            factory_settings.LLM_PROVIDER = ""
            factory_settings.ANTHROPIC_API_KEY = ""
            factory_settings.vertex_project = ""
            factory_settings.OLLAMA_BASE_URL = ""

            with pytest.raises(LLMProviderNotConfiguredError):
                await get_llm()


class TestGeminiLLM:
    """Tests for GeminiLLM configuration and error mapping."""

    @pytest.mark.asyncio
    async def test_is_available_requires_project(self):
        """Test availability follows the configured project."""
        assert await GeminiLLM(project="ops-prod", location="us-central1").is_available() is True
        with patch("postmortem_kg.llm.providers.gemini.settings") as mock_settings:
            mock_settings.vertex_project = ""
            mock_settings.VERTEX_AI_LOCATION = "us-central1"
            mock_settings.VERTEX_AI_LLM_MODEL = "gemini-test"
            assert await GeminiLLM().is_available() is False

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("429 Quota exceeded", LLMRateLimitError),
            ("403 Permission denied on resource", LLMAuthenticationError),
            ("504 Deadline Exceeded", LLMTimeoutError),
            ("503 Service unavailable", LLMConnectionError),
        ],
    )
    def test_error_mapping(self, message, expected):
        """Test Google API errors map to typed LLM errors."""
        llm = GeminiLLM(project="ops-prod")
        with pytest.raises(expected) as exc_info:
            llm._handle_error(RuntimeError(message))
        assert exc_info.value.provider == "gemini"

    def test_blocked_response_is_typed(self):
        """Test a candidate without text raises LLMResponseError, not ValueError."""

        class BlockedResponse:
            candidates = [MagicMock(finish_reason="SAFETY")]

            @property
            def text(self):
                raise ValueError("Cannot get the response text: candidate has no parts (SAFETY)")

        llm = GeminiLLM(project="ops-prod")
        with pytest.raises(LLMResponseError) as exc_info:
            llm._response_text(BlockedResponse())
        assert exc_info.value.provider == "gemini"
        assert "SAFETY" in str(exc_info.value)

    def test_empty_candidates_is_typed(self):
        """Test a response without candidates raises LLMResponseError."""
        response = MagicMock(candidates=[])
        with pytest.raises(LLMResponseError):
            GeminiLLM(project="ops-prod")._response_text(response)

    @pytest.mark.asyncio
    async def test_generate_blocked_response(self):
        """Test generate surfaces a blocked completion as LLMResponseError."""
        blocked = MagicMock(candidates=[MagicMock()])
        type(blocked).text = PropertyMock(side_effect=ValueError("candidate has no parts"))

        llm = GeminiLLM(project="ops-prod")
        llm._initialized = True
        llm._model = MagicMock()
        llm._model.generate_content.return_value = blocked

        vertex = MagicMock()
        with patch.dict(
            sys.modules, {"vertexai": vertex, "vertexai.generative_models": vertex.generative_models}
        ):
            with pytest.raises(LLMResponseError):
                await llm.generate("Summarize the outage")
        llm._model.generate_content.assert_called_once()
