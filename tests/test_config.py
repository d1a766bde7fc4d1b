import pytest

from content_gateway.available_models import (
    MAINLINE_CODER,
    get_available_models_for_auth_type,
)
from content_gateway.config import (
    DEFAULT_DINGTALK_BASE_URL,
    DEFAULT_MODEL,
    DEFAULT_OPENAI_MODEL,
    DINGTALK_OAUTH_DYNAMIC_TOKEN,
    AuthType,
    ContentGeneratorConfig,
    GatewayConfig,
    create_content_generator_config,
)
from content_gateway.error_handler import (
    ContentGeneratorError,
    ModelFetchError,
    ModelFetchErrorCode,
)


class TestAuthType:
    def test_parse(self):
        assert AuthType.parse("Dingtalk-OAuth ") == AuthType.DINGTALK_OAUTH
        assert AuthType.parse("openai") == AuthType.USE_OPENAI
        assert AuthType.parse("") is None

    def test_parse_unknown(self):
        with pytest.raises(ContentGeneratorError, match="Unsupported authType: vertex"):
            AuthType.parse("vertex")


class TestGatewayConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("GATEWAY_MODEL", "glm-4.6")
        monkeypatch.setenv("GATEWAY_AUTH_TYPE", "openai")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("GATEWAY_TEMPERATURE", "0.5")
        monkeypatch.setenv("GATEWAY_MAX_TOKENS", "not-a-number")
        monkeypatch.setenv("NO_BROWSER", "true")

        config = GatewayConfig.from_env()

        assert config.get_model() == "glm-4.6"
        assert config.get_auth_type() == AuthType.USE_OPENAI
        assert config.api_key == "sk-env"
        assert config.sampling_params == {"temperature": 0.5}
        assert config.is_browser_launch_suppressed()

    def test_model_fetch_error_is_per_auth_type(self):
        config = GatewayConfig()
        error = ModelFetchError(ModelFetchErrorCode.NO_TOKEN, "none")

        config.set_model_fetch_error(AuthType.DINGTALK_OAUTH, error)

        assert config.get_model_fetch_error(AuthType.DINGTALK_OAUTH) == error
        assert config.get_model_fetch_error(AuthType.USE_OPENAI) is None
        config.set_model_fetch_error(AuthType.DINGTALK_OAUTH, None)
        assert config.get_model_fetch_error(AuthType.DINGTALK_OAUTH) is None

    def test_available_models_are_copied(self):
        config = GatewayConfig()
        models = ["a"]
        config.set_available_models_for_auth(AuthType.DINGTALK_OAUTH, models)
        models.append("b")

        assert config.get_available_models_for_auth(AuthType.DINGTALK_OAUTH) == ["a"]


class TestCreateContentGeneratorConfig:
    def test_dingtalk_defaults(self):
        config = create_content_generator_config(GatewayConfig(), AuthType.DINGTALK_OAUTH)

        assert config.model == DEFAULT_MODEL
        assert config.api_key == DINGTALK_OAUTH_DYNAMIC_TOKEN
        assert config.base_url == DEFAULT_DINGTALK_BASE_URL

    def test_openai_requires_key(self):
        with pytest.raises(ContentGeneratorError):
            create_content_generator_config(GatewayConfig(), AuthType.USE_OPENAI)

    def test_openai_defaults(self):
        config = create_content_generator_config(
            GatewayConfig(api_key="sk", proxy="http://proxy:3128"), AuthType.USE_OPENAI
        )

        assert config.model == DEFAULT_OPENAI_MODEL
        assert config.proxy == "http://proxy:3128"

    def test_generation_config_is_respected(self):
        base = ContentGeneratorConfig(model="custom", api_key="sk", max_retries=5)

        config = create_content_generator_config(
            GatewayConfig(proxy="http://p"), AuthType.USE_OPENAI, base
        )

        assert config.model == "custom"
        assert config.max_retries == 5
        assert config.auth_type == AuthType.USE_OPENAI
        assert config.proxy == "http://p"
        assert base.auth_type is None


class TestAvailableModels:
    def test_dingtalk_uses_discovered_models(self):
        models = get_available_models_for_auth_type(
            AuthType.DINGTALK_OAUTH, ["qwen3-coder-plus"]
        )

        assert [(m.id, m.label) for m in models] == [("qwen3-coder-plus", "qwen3-coder-plus")]

    def test_dingtalk_without_discovery_is_empty(self):
        assert get_available_models_for_auth_type(AuthType.DINGTALK_OAUTH) == []

    def test_other_auth_types_get_mainline_model(self):
        assert get_available_models_for_auth_type(AuthType.USE_OPENAI) == [MAINLINE_CODER]
        assert get_available_models_for_auth_type(None) == [MAINLINE_CODER]
