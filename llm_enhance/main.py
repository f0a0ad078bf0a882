"""
Main application entry point for LLM Enhance.

This module provides the command-line interface and wires configuration,
session coordination, enhancement and validation together.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
import httpx
import pyperclip

from . import __version__
from .aws.profiles import AWSProfileService
from .aws.signer import SigningError
from .config import AIConfiguration, AIProvider, ConfigurationStore, ProviderDefaults
from .enhancement.errors import EnhancementError
from .enhancement.retry import RequestScheduler
from .enhancement.service import (
    DEFAULT_PROMPT,
    EnhancementPrompt,
    EnhancementResult,
    EnhancementService,
)
from .enhancement.session import SessionCoordinator
from .ui.terminal import TerminalUI
from .validation.service import ConfigurationValidationService


class EnhanceApp:
    """
    Main application class that coordinates all components.

    Owns the configuration store, session coordinator, enhancement service
    and validator, and reports outcomes through the terminal UI.
    """

    def __init__(
        self,
        defaults: Optional[ProviderDefaults] = None,
        profile_service: Optional[AWSProfileService] = None,
        ui: Optional[TerminalUI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        scheduler: Optional[RequestScheduler] = None,
        prompt: Optional[EnhancementPrompt] = DEFAULT_PROMPT,
    ):
        self.ui = ui or TerminalUI()
        self.defaults = defaults or ProviderDefaults()
        self.profile_service = profile_service or AWSProfileService()
        self.store = ConfigurationStore()
        self.coordinator = SessionCoordinator(self.defaults, self.profile_service, self.store)
        self.service = EnhancementService(
            self.coordinator,
            scheduler=scheduler,
            prompt=prompt,
            http_client=http_client,
        )
        self.validator = ConfigurationValidationService(
            self.store,
            self.coordinator,
            self.profile_service,
            http_client=http_client,
        )

    async def activate(self, config: AIConfiguration) -> None:
        """Make ``config`` active without validating it."""
        self.store.add(config)
        self.store.set_active(config.id)
        pending = self.coordinator.apply_configuration(config)
        if pending is not None:
            await pending

    async def run_enhancement(self, text: str, copy: bool = False) -> Optional[EnhancementResult]:
        """
        Enhance text and display the result.

        Returns:
            The result, or None if enhancement failed (the error is shown).
        """
        try:
            with self.ui.show_progress("Enhancing text..."):
                result = await self.service.enhance(text)
        except (EnhancementError, SigningError) as e:
            self.ui.show_error(e)
            return None

        self.ui.show_result(result)
        if copy and result.text:
            if self._copy_to_clipboard(result.text):
                self.ui.show_success(result.text)
        return result

    async def run_validation(self, config: AIConfiguration) -> bool:
        """Validate ``config`` and switch to it on success."""
        self.store.add(config)
        with self.ui.show_progress(f"Validating {config.summary}..."):
            pending = self.validator.switch_to_configuration(config.id)
            if pending is not None:
                await pending
            await self.coordinator.wait_for_pending()

        if self.validator.validation_error is not None:
            self.ui.show_error(self.validator.validation_error)
            return False
        if self.store.active_id != config.id:
            return False

        self.ui.show_configuration(config)
        self.ui.show_session_state(self.coordinator.state)
        self.ui.show_success(f"Configuration '{config.name}' is valid")
        return True

    def _copy_to_clipboard(self, text: str) -> bool:
        """
        Copy text to system clipboard.

        Args:
            text: Text to copy
        """
        try:
            pyperclip.copy(text)
            return True
        except pyperclip.PyperclipException as e:
            self.ui.console.print(f"[yellow]⚠️  Could not copy to clipboard: {e}[/yellow]")
            return False

    async def aclose(self) -> None:
        await self.service.aclose()


def build_cli_configuration(
    defaults: ProviderDefaults,
    provider: str,
    model: Optional[str] = None,
    region: Optional[str] = None,
    aws_profile: Optional[str] = None,
    api_key: Optional[str] = None,
    aws_access_key_id: Optional[str] = None,
    aws_secret_access_key: Optional[str] = None,
    base_url: Optional[str] = None,
) -> AIConfiguration:
    """Configuration from command-line options, filling gaps from provider defaults."""
    provider_enum = AIProvider(provider)
    if provider_enum is AIProvider.AWS_BEDROCK:
        region = region or defaults.bedrock_region
    return AIConfiguration(
        name="command-line",
        provider=provider_enum.value,
        model=model or provider_enum.default_model,
        api_key=api_key or defaults.api_key(provider_enum) or None,
        aws_profile_name=aws_profile,
        aws_access_key_id=aws_access_key_id,
        aws_secret_access_key=aws_secret_access_key,
        region=region,
        base_url=base_url,
    )


def configuration_options(func):
    """Options shared by the commands that build a configuration."""
    options = [
        click.option(
            '--provider',
            default=AIProvider.GEMINI.value,
            show_default=True,
            help='AI provider',
            type=click.Choice([p.value for p in AIProvider], case_sensitive=False),
        ),
        click.option('--model', default=None, help='Model id (provider default when omitted)'),
        click.option('--region', default=None, help='AWS region for Bedrock'),
        click.option('--aws-profile', default=None, help='AWS profile name for Bedrock'),
        click.option('--aws-access-key-id', default=None, help='AWS access key id for Bedrock'),
        click.option(
            '--aws-secret-access-key', default=None, help='AWS secret access key for Bedrock'
        ),
        click.option(
            '--api-key',
            default=None,
            envvar='LLM_ENHANCE_API_KEY',
            help="API key (falls back to the provider's environment variable)",
        ),
        click.option('--base-url', default=None, help='Endpoint for the Custom provider'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__)
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose: bool) -> None:
    """
    LLM Enhance - AI cleanup for transcribed speech.

    Sends transcripts to OpenAI-compatible providers, Anthropic or AWS
    Bedrock and prints the enhanced text.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


@cli.command()
@click.argument('text', required=False)
@configuration_options
@click.option(
    '--prompt-file',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='System prompt to use instead of the default',
)
@click.option('--user-profile', default='', help='Context about the speaker')
@click.option('--clipboard-context', is_flag=True, help='Send the clipboard as context')
@click.option('--copy/--no-copy', default=False, help='Copy the result to the clipboard')
def enhance(
    text: Optional[str],
    provider: str,
    model: Optional[str],
    region: Optional[str],
    aws_profile: Optional[str],
    aws_access_key_id: Optional[str],
    aws_secret_access_key: Optional[str],
    api_key: Optional[str],
    base_url: Optional[str],
    prompt_file: Optional[Path],
    user_profile: str,
    clipboard_context: bool,
    copy: bool,
) -> None:
    """Enhance TEXT (read from stdin when omitted)."""
    if text is None:
        text = sys.stdin.read().strip()

    prompt = DEFAULT_PROMPT
    if prompt_file is not None:
        prompt = EnhancementPrompt(title=prompt_file.stem, prompt_text=prompt_file.read_text())

    async def run() -> bool:
        app = EnhanceApp(prompt=prompt)
        app.service.user_profile_context = user_profile
        app.service.use_clipboard_context = clipboard_context
        if clipboard_context:
            app.service.capture_clipboard_context()
        try:
            config = build_cli_configuration(
                app.defaults, provider, model, region, aws_profile, api_key,
                aws_access_key_id, aws_secret_access_key, base_url,
            )
            await app.activate(config)
            return await app.run_enhancement(text, copy=copy) is not None
        finally:
            await app.aclose()

    if not asyncio.run(run()):
        sys.exit(1)


@cli.command()
def profiles() -> None:
    """List AWS profiles from the shared credentials and config files."""
    ui = TerminalUI()
    ui.show_profiles(AWSProfileService().list_profiles())


@cli.command()
@configuration_options
def validate(
    provider: str,
    model: Optional[str],
    region: Optional[str],
    aws_profile: Optional[str],
    aws_access_key_id: Optional[str],
    aws_secret_access_key: Optional[str],
    api_key: Optional[str],
    base_url: Optional[str],
) -> None:
    """Check that a configuration can reach its provider."""

    async def run() -> bool:
        app = EnhanceApp()
        try:
            config = build_cli_configuration(
                app.defaults, provider, model, region, aws_profile, api_key,
                aws_access_key_id, aws_secret_access_key, base_url,
            )
            return await app.run_validation(config)
        finally:
            await app.aclose()

    if not asyncio.run(run()):
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
