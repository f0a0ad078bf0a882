"""
Integration tests for LLM Enhance components.

These tests verify that components work together correctly and catch
common integration issues like missing methods or incompatible interfaces.
"""

import inspect
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from click.testing import CliRunner

from conftest import RecordingHandler, mock_client
from llm_enhance import __version__
from llm_enhance.config import AIConfiguration, ProviderDefaults
from llm_enhance.enhancement.errors import APIKeyInvalidError
from llm_enhance.enhancement.retry import RequestScheduler
from llm_enhance.enhancement.service import EnhancementResult, EnhancementService
from llm_enhance.main import EnhanceApp, build_cli_configuration, cli
from llm_enhance.ui.terminal import TerminalUI
from llm_enhance.validation.service import (
    ConfigurationValidationError,
    ConfigurationValidationService,
)


def _chat(content: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json={"choices": [{"message": {"content": content}}]})


def _app(handler, fake_clock) -> EnhanceApp:
    return EnhanceApp(
        defaults=ProviderDefaults(),
        profile_service=MagicMock(),
        ui=MagicMock(spec=TerminalUI),
        http_client=mock_client(handler),
        scheduler=RequestScheduler(clock=fake_clock, sleep=fake_clock.sleep),
    )


def _groq() -> AIConfiguration:
    return AIConfiguration(name="groq", provider="GROQ", model="llama-3.3-70b-versatile", api_key="gsk")


class TestMethodExistence:
    """Test that all required methods exist on components."""

    def test_enhancement_service_methods(self):
        assert inspect.iscoroutinefunction(EnhancementService.enhance)
        assert inspect.iscoroutinefunction(EnhancementService.make_request)
        assert not inspect.iscoroutinefunction(EnhancementService.build_system_message)

    def test_validation_service_methods(self):
        assert not inspect.iscoroutinefunction(ConfigurationValidationService.switch_to_configuration)
        assert not inspect.iscoroutinefunction(ConfigurationValidationService.cancel_validation)
        assert inspect.iscoroutinefunction(ConfigurationValidationService.validate_configuration)

    def test_terminal_ui_methods(self):
        """Test that TerminalUI has the methods EnhanceApp calls."""
        ui = TerminalUI()
        for name in ('show_progress', 'show_result', 'show_error', 'show_success',
                     'show_session_state', 'show_profiles', 'show_configuration'):
            assert callable(getattr(ui, name, None))

    def test_enhance_app_methods(self):
        app = EnhanceApp(profile_service=MagicMock())
        assert inspect.iscoroutinefunction(app.run_enhancement)
        assert inspect.iscoroutinefunction(app.run_validation)
        assert inspect.iscoroutinefunction(app.activate)


class TestCliConfiguration:

    def test_fills_model_and_key_from_defaults(self):
        defaults = ProviderDefaults(api_keys={})
        config = build_cli_configuration(defaults, "Gemini", api_key="k")

        assert config.model == "gemini-2.5-flash-lite"
        assert config.get_api_key() == "k"
        assert config.is_valid

    def test_bedrock_region_from_defaults(self):
        defaults = ProviderDefaults(bedrock_region="eu-north-1")
        config = build_cli_configuration(defaults, "AWS Bedrock", aws_profile="dev")

        assert config.region == "eu-north-1"
        assert config.auth_method == "aws_profile"


@pytest.mark.asyncio
class TestMockedIntegration:
    """Test component integration with a mocked network and UI."""

    async def test_full_pipeline(self, fake_clock):
        handler = RecordingHandler(_chat("Hello world, this is a test."))
        app = _app(handler, fake_clock)
        await app.activate(_groq())

        with patch('pyperclip.copy') as mock_clipboard:
            result = await app.run_enhancement("um, hello world, uh, this is a test", copy=True)

        assert result.text == "Hello world, this is a test."
        app.ui.show_progress.assert_called_once()
        app.ui.show_result.assert_called_once_with(result)
        app.ui.show_success.assert_called_once_with("Hello world, this is a test.")
        mock_clipboard.assert_called_once_with("Hello world, this is a test.")

    async def test_error_handling(self, fake_clock):
        handler = RecordingHandler(httpx.Response(401, json={"error": "bad key"}))
        app = _app(handler, fake_clock)
        await app.activate(_groq())

        assert await app.run_enhancement("text") is None

        app.ui.show_error.assert_called_once()
        assert isinstance(app.ui.show_error.call_args[0][0], APIKeyInvalidError)
        app.ui.show_result.assert_not_called()

    async def test_validation_switches_configuration(self, fake_clock):
        handler = RecordingHandler(_chat("ok"))
        app = _app(handler, fake_clock)
        config = _groq()

        assert await app.run_validation(config) is True

        assert app.store.active_id == config.id
        assert app.coordinator.active_session.model == config.model
        app.ui.show_configuration.assert_called_once_with(config)

    async def test_validation_failure(self, fake_clock):
        handler = RecordingHandler(httpx.Response(401, json={"error": {"message": "nope"}}))
        app = _app(handler, fake_clock)

        assert await app.run_validation(_groq()) is False

        app.ui.show_error.assert_called_once_with(
            ConfigurationValidationError.invalid_credentials("GROQ")
        )
        assert app.store.active_id is None


class TestCommandLine:

    def test_version(self):
        result = CliRunner().invoke(cli, ['--version'])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_profiles(self, aws_files, monkeypatch):
        credentials_path, config_path = aws_files
        monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(credentials_path))
        monkeypatch.setenv("AWS_CONFIG_FILE", str(config_path))

        result = CliRunner().invoke(cli, ['profiles'])

        assert result.exit_code == 0
        assert "sso-only" in result.output
        assert "default" in result.output

    def test_enhance_reads_stdin(self):
        with patch.object(EnhanceApp, 'run_enhancement', new_callable=AsyncMock) as run:
            run.return_value = EnhancementResult("Hello there.", 0.1, "Default")
            result = CliRunner().invoke(cli, ['enhance', '--api-key', 'k'], input="hello there\n")

        assert result.exit_code == 0
        run.assert_awaited_once_with("hello there", copy=False)

    def test_enhance_without_key_fails(self):
        result = CliRunner().invoke(cli, ['enhance', 'some text'])
        assert result.exit_code == 1
        assert "not configured" in result.output

    def test_validate_invalid_configuration(self):
        result = CliRunner().invoke(cli, ['validate', '--provider', 'GROQ'])
        assert result.exit_code == 1
        assert "API key is required" in result.output
