"""Tests for provider adapters, answer extraction and model discovery."""

import dataclasses
import json

import httpx
import pytest

from config import ConfigError
from providers import (
    ClaudeProvider,
    EmptyResponseError,
    GLMProvider,
    KimiProvider,
    OpenAIProvider,
    ParseError,
    ProviderError,
    SiliconFlowProvider,
    TransportError,
    check_connection,
    describe_status,
    extract_answer,
    get_provider,
    list_models,
)


def completion(content) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestExtractAnswer:

    def test_delimited_answer(self):
        text = "Let me think about the screenshot...\n<answer>A code editor with main.py open.</answer>"
        assert extract_answer(text) == "A code editor with main.py open."

    def test_last_delimited_answer_wins(self):
        text = "<answer>draft</answer> on reflection <answer>final</answer>"
        assert extract_answer(text) == "final"

    def test_unclosed_tag_runs_to_end(self):
        assert extract_answer("thinking\n<answer>A browser showing docs") == "A browser showing docs"

    def test_answer_marker(self):
        text = "The window title reads settings.\nAnswer: The user is editing settings."
        assert extract_answer(text) == "The user is editing settings."

    def test_last_marker_rest_of_line(self):
        text = "Answer: first guess\nWait, look again.\nFinal Answer: A terminal.\n(confidence: high)"
        assert extract_answer(text) == "A terminal."

    def test_marker_mid_line(self):
        text = "The prompt is visible, so the Answer: A terminal running pytest."
        assert extract_answer(text) == "A terminal running pytest."

    def test_marker_ending_its_line(self):
        assert extract_answer("**Answer:**\nA browser on GitHub.") == "A browser on GitHub."

    def test_chinese_marker_full_width_colon(self):
        assert extract_answer("分析画面……\n答案：用户正在浏览网页") == "用户正在浏览网页"

    def test_verbatim_when_nothing_to_extract(self):
        assert extract_answer("  A spreadsheet with quarterly numbers.  ") == "A spreadsheet with quarterly numbers."

    def test_empty(self):
        assert extract_answer("") == ""


class TestRequestBuilding:

    def test_openai_image_request(self, config):
        request = OpenAIProvider(config).build_request("QUJD", "Describe this.")

        assert request["model"] == "gpt-4o"
        assert request["temperature"] == 0.3
        assert request["max_tokens"] == 500
        [message] = request["messages"]
        assert message["role"] == "user"
        text, image = message["content"]
        assert text == {"type": "text", "text": "Describe this."}
        assert image["image_url"]["url"] == "data:image/jpeg;base64,QUJD"

    def test_summary_request_has_system_turn(self, config):
        request = OpenAIProvider(config).build_summary_request("descriptions", "be brief", 800)

        assert [m["role"] for m in request["messages"]] == ["system", "user"]
        assert request["max_tokens"] == 800

    def test_claude_image_request(self, config):
        claude = dataclasses.replace(config, provider="claude", model="claude-sonnet-4-5")
        request = ClaudeProvider(claude).build_request("QUJD", "Describe this.")

        image = request["messages"][0]["content"][1]
        assert image["type"] == "image"
        assert image["source"] == {"type": "base64", "media_type": "image/jpeg", "data": "QUJD"}

    def test_default_base_urls(self, config):
        assert OpenAIProvider(config).endpoint == "https://api.openai.com/v1/chat/completions"
        assert GLMProvider(config).endpoint == "https://open.bigmodel.cn/api/paas/v4/chat/completions"
        custom = dataclasses.replace(config, base_url="http://localhost:8000/v1/")
        assert SiliconFlowProvider(custom).endpoint == "http://localhost:8000/v1/chat/completions"


class TestParseResponse:

    def test_content_parts_joined(self, config):
        raw = completion([{"type": "text", "text": "part one"}, {"type": "text", "text": "part two"}])
        assert OpenAIProvider(config).parse_response(raw) == "part one\npart two"

    def test_missing_choices(self, config):
        with pytest.raises(ParseError):
            OpenAIProvider(config).parse_response({"id": "x"})

    def test_not_an_object(self, config):
        with pytest.raises(ParseError):
            OpenAIProvider(config).parse_response(["choices"])

    @pytest.mark.parametrize("content", ["", "   ", None, "<answer></answer>"])
    def test_empty_content(self, config, content):
        with pytest.raises(EmptyResponseError):
            OpenAIProvider(config).parse_response(completion(content))


class TestSend:

    @pytest.mark.asyncio
    async def test_describe_image_success(self, config):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=completion("<answer>An IDE.</answer>"))

        async with mock_client(handler) as client:
            answer = await OpenAIProvider(config, client=client).describe_image("QUJD")

        assert answer == "An IDE."
        [request] = seen
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        body = json.loads(request.content)
        assert body["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_401_is_provider_error(self, config):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

        async with mock_client(handler) as client:
            with pytest.raises(ProviderError) as excinfo:
                await OpenAIProvider(config, client=client).describe_image("QUJD")

        assert excinfo.value.status == 401
        assert "Invalid API key" in str(excinfo.value)
        assert "Incorrect API key provided" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_non_json_body(self, config):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        async with mock_client(handler) as client:
            with pytest.raises(ParseError):
                await OpenAIProvider(config, client=client).describe_image("QUJD")

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self, config):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        async with mock_client(handler) as client:
            with pytest.raises(TransportError, match="timed out"):
                await OpenAIProvider(config, client=client).describe_image("QUJD", timeout=5)

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_error(self, config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_client(handler) as client:
            with pytest.raises(TransportError, match="Network error"):
                await OpenAIProvider(config, client=client).complete("text")


class TestStatusMessages:

    @pytest.mark.parametrize("status,expected", [
        (401, "Invalid API key"),
        (403, "Access denied"),
        (404, "endpoint not found"),
        (502, "Server error"),
        (418, "Request failed"),
    ])
    def test_describe_status(self, status, expected):
        message = describe_status(status)
        assert expected in message
        assert f"HTTP {status}" in message


class TestVisionModels:

    @pytest.mark.parametrize("provider_cls,model_id,expected", [
        (OpenAIProvider, "gpt-4o-mini", True),
        (OpenAIProvider, "gpt-4-vision-preview", True),
        (OpenAIProvider, "gpt-3.5-turbo", False),
        (OpenAIProvider, "text-embedding-3-small", False),
        (SiliconFlowProvider, "Qwen/Qwen2.5-VL-72B-Instruct", True),
        (SiliconFlowProvider, "deepseek-ai/DeepSeek-V3", False),
        (GLMProvider, "glm-4v-plus", True),
        (GLMProvider, "glm-4-plus", False),
        (KimiProvider, "moonshot-v1-8k", True),
        (ClaudeProvider, "claude-sonnet-4-5", True),
    ])
    def test_is_vision_model(self, config, provider_cls, model_id, expected):
        assert provider_cls(config).is_vision_model(model_id) is expected


class TestModelDiscovery:

    @pytest.mark.asyncio
    async def test_list_models_keeps_vision_models(self, config):
        def handler(request):
            assert request.url.path == "/v1/models"
            return httpx.Response(200, json={"data": [
                {"id": "gpt-4o"}, {"id": "text-embedding-3-small"}, {"id": "whisper-1"},
            ]})

        async with mock_client(handler) as client:
            models, message = await list_models(config, client=client)

        assert models == ["gpt-4o"]
        assert "1 vision" in message

    @pytest.mark.asyncio
    async def test_list_models_falls_back_to_everything(self, config):
        def handler(request):
            return httpx.Response(200, json={"data": [{"id": "davinci-002"}, {"id": "babbage-002"}]})

        async with mock_client(handler) as client:
            models, message = await list_models(config, client=client)

        assert models == ["davinci-002", "babbage-002"]
        assert "supports images" in message

    @pytest.mark.asyncio
    async def test_list_models_needs_no_model(self, config):
        def handler(request):
            return httpx.Response(200, json={"data": [{"id": "gpt-4o"}]})

        async with mock_client(handler) as client:
            models, _ = await list_models(dataclasses.replace(config, model=""), client=client)

        assert models == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_list_models_without_endpoint_uses_known_models(self, config):
        def handler(request):
            return httpx.Response(404, json={"error": {"message": "not found"}})

        glm = dataclasses.replace(config, provider="glm", base_url="")
        async with mock_client(handler) as client:
            models, message = await list_models(glm, client=client)

        assert models == list(GLMProvider.default_models)
        assert message.startswith("Zhipu AI (GLM):")

    @pytest.mark.asyncio
    async def test_check_connection_does_not_accept_missing_endpoint(self, config):
        def handler(request):
            return httpx.Response(404, json={"error": {"message": "not found"}})

        async with mock_client(handler) as client:
            ok, message = await check_connection(config, client=client)

        assert ok is False
        assert "endpoint not found" in message

    @pytest.mark.asyncio
    async def test_check_connection_names_provider(self, config):
        def handler(request):
            return httpx.Response(200, json={"data": [{"id": "gpt-4o"}, {"id": "gpt-4o-mini"}]})

        async with mock_client(handler) as client:
            ok, message = await check_connection(config, client=client)

        assert ok is True
        assert message == "Connected. OpenAI: found 2 vision models"

    @pytest.mark.asyncio
    async def test_check_connection_reports_bad_key(self, config):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        async with mock_client(handler) as client:
            ok, message = await check_connection(config, client=client)

        assert ok is False
        assert "Invalid API key" in message

    @pytest.mark.asyncio
    async def test_check_connection_without_key(self, config):
        ok, message = await check_connection(dataclasses.replace(config, api_key=""))

        assert ok is False
        assert "api_key" in message


class TestRegistry:

    @pytest.mark.parametrize("name,cls", [
        ("openai", OpenAIProvider),
        ("siliconflow", SiliconFlowProvider),
        ("glm", GLMProvider),
        ("kimi", KimiProvider),
        ("claude", ClaudeProvider),
    ])
    def test_get_provider(self, config, name, cls):
        assert isinstance(get_provider(dataclasses.replace(config, provider=name)), cls)

    def test_unknown_provider(self, config):
        with pytest.raises(ConfigError, match="Unknown provider"):
            get_provider(dataclasses.replace(config, provider="acme"))

    def test_missing_model(self, config):
        with pytest.raises(ConfigError, match="model"):
            get_provider(dataclasses.replace(config, model=""))
