"""
AWS profile and credential resolution.

Reads ~/.aws/credentials and ~/.aws/config for static keys, and falls back to
``aws configure export-credentials`` for profiles that use SSO, assume-role
or a credential process. The external command runs under a hard timeout and
is killed, not abandoned, when it overruns.
"""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..config import DEFAULT_CREDENTIAL_CLI_TIMEOUT

logger = logging.getLogger(__name__)

EXPORT_CREDENTIALS_COMMAND = ("aws", "configure", "export-credentials")

# Grace period between terminate() and kill() for an overrunning CLI
_TERMINATE_GRACE = 1.0


@dataclass(frozen=True)
class AWSCredentials:
    """Resolved AWS credentials. Never logged or persisted."""
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    region: Optional[str] = None


class AWSProfileError(Exception):
    """Base exception for AWS profile and credential errors."""

    recovery_suggestion = "Check your AWS profile configuration."


class CredentialsFileNotFoundError(AWSProfileError):
    def __init__(self, path: Optional[Path] = None):
        self.path = path
        super().__init__(f"AWS credentials file not found at {path or '~/.aws/credentials'}")


class ProfileNotFoundError(AWSProfileError):
    def __init__(self, profile: str):
        self.profile = profile
        super().__init__(f"AWS profile '{profile}' not found")


class InvalidCredentialsError(AWSProfileError):
    def __init__(self, profile: str):
        self.profile = profile
        super().__init__(f"Invalid credentials for profile '{profile}'")


class ParseError(AWSProfileError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Failed to parse AWS credentials: {detail}")


def parse_ini(content: str) -> Dict[str, Dict[str, str]]:
    """
    Parse AWS-style INI content into ``{section: {key: value}}``.

    Blank lines and lines starting with ``#`` or ``;`` are skipped. A ``[...]``
    line opens a section; ``key=value`` lines split on the first ``=`` and
    populate the current section. Anything outside a section is ignored.
    """
    result: Dict[str, Dict[str, str]] = {}
    current: Optional[str] = None

    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")):
            continue

        if stripped.startswith("[") and stripped.endswith("]"):
            current = stripped[1:-1]
            result[current] = {}
            continue

        if current is not None and "=" in stripped:
            key, _, value = stripped.partition("=")
            result[current][key.strip()] = value.strip()

    return result


def parse_profile_names(content: str, is_config_file: bool) -> List[str]:
    """Section names as profile names; ``[profile x]`` maps to ``x`` in config files."""
    profiles: List[str] = []
    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            name = stripped[1:-1]
            if is_config_file and name.startswith("profile "):
                name = name[len("profile "):]
            profiles.append(name)
    return profiles


def parse_export_output(output: str) -> Dict[str, str]:
    """Collect ``export KEY=VALUE`` lines, stripping surrounding quotes from values."""
    exported: Dict[str, str] = {}
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped.startswith("export "):
            continue
        key, sep, value = stripped[len("export "):].partition("=")
        if not sep:
            continue
        exported[key] = value.strip("\"'")
    return exported


def config_section_name(profile: str) -> str:
    return "default" if profile == "default" else f"profile {profile}"


class AWSProfileService:
    """
    Resolves credentials for named AWS profiles.

    Args:
        credentials_path: Override for ~/.aws/credentials
        config_path: Override for ~/.aws/config
        export_command: Credential-export command; ``--profile NAME --format env``
            is appended
        cli_timeout: Hard wall-clock limit for the export command in seconds
    """

    def __init__(
        self,
        credentials_path: Optional[Path] = None,
        config_path: Optional[Path] = None,
        export_command: Sequence[str] = EXPORT_CREDENTIALS_COMMAND,
        cli_timeout: float = DEFAULT_CREDENTIAL_CLI_TIMEOUT,
    ):
        self.credentials_path = Path(
            credentials_path
            or os.getenv("AWS_SHARED_CREDENTIALS_FILE")
            or Path.home() / ".aws" / "credentials"
        )
        self.config_path = Path(
            config_path
            or os.getenv("AWS_CONFIG_FILE")
            or Path.home() / ".aws" / "config"
        )
        self.export_command = tuple(export_command)
        self.cli_timeout = cli_timeout

    def _read(self, path: Path) -> Optional[str]:
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

    def list_profiles(self) -> List[str]:
        """Sorted, de-duplicated profile names from both files. Never raises."""
        profiles = set()

        content = self._read(self.credentials_path)
        if content is not None:
            profiles.update(parse_profile_names(content, is_config_file=False))

        content = self._read(self.config_path)
        if content is not None:
            profiles.update(parse_profile_names(content, is_config_file=True))

        if profiles:
            logger.info(f"Found {len(profiles)} AWS profiles")
        else:
            logger.info("No AWS profiles found in credentials or config file")
        return sorted(profiles)

    def profile_exists(self, profile: str) -> bool:
        return profile in self.list_profiles()

    def region_for_profile(self, profile: str) -> Optional[str]:
        content = self._read(self.config_path)
        if content is None:
            return None
        section = parse_ini(content).get(config_section_name(profile), {})
        return section.get("region") or None

    def get_credentials(self, profile: str) -> AWSCredentials:
        """
        Static credentials for a profile from the credentials file.

        Raises:
            CredentialsFileNotFoundError: The credentials file does not exist
            ProfileNotFoundError: No ``[profile]`` section
            InvalidCredentialsError: Section lacks an access key or secret
        """
        content = self._read(self.credentials_path)
        if content is None:
            raise CredentialsFileNotFoundError(self.credentials_path)

        section = parse_ini(content).get(profile)
        if section is None:
            raise ProfileNotFoundError(profile)

        access_key_id = section.get("aws_access_key_id")
        secret_access_key = section.get("aws_secret_access_key")
        if not access_key_id or not secret_access_key:
            raise InvalidCredentialsError(profile)

        logger.info(f"Loaded credentials for profile: {profile}")
        return AWSCredentials(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=section.get("aws_session_token") or None,
            region=self.region_for_profile(profile),
        )

    async def resolve_credentials(self, profile: str) -> AWSCredentials:
        """Static credentials when present, otherwise the credential-export CLI."""
        try:
            return self.get_credentials(profile)
        except AWSProfileError as e:
            logger.debug(f"No static credentials for '{profile}' ({e}); trying AWS CLI")
        return await self._resolve_via_cli(profile)

    async def _resolve_via_cli(self, profile: str) -> AWSCredentials:
        if not self.export_command or shutil.which(self.export_command[0]) is None:
            raise ParseError(
                "AWS CLI not found. Please install AWS CLI to use AWS Profile authentication."
            )

        args = [*self.export_command, "--profile", profile, "--format", "env"]
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ParseError(f"Failed to run AWS CLI: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.cli_timeout
            )
        except asyncio.TimeoutError:
            await self._terminate(process)
            raise ParseError(
                "AWS CLI timed out. Check your network connection or SSO session."
            ) from None
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        stderr_text = stderr.decode("utf-8", errors="replace")
        if process.returncode != 0:
            raise self._error_from_stderr(profile, stderr_text)

        exported = parse_export_output(stdout.decode("utf-8", errors="replace"))
        access_key_id = exported.get("AWS_ACCESS_KEY_ID")
        secret_access_key = exported.get("AWS_SECRET_ACCESS_KEY")
        if not access_key_id or not secret_access_key:
            raise InvalidCredentialsError(profile)

        logger.info(f"Resolved credentials for profile via AWS CLI: {profile}")
        return AWSCredentials(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=exported.get("AWS_SESSION_TOKEN") or None,
            region=self.region_for_profile(profile),
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
        logger.warning(f"Terminated credential export process (pid {process.pid})")

    @staticmethod
    def _error_from_stderr(profile: str, stderr: str) -> AWSProfileError:
        if "SSO" in stderr and "expired" in stderr:
            return ParseError(
                f"SSO session expired. Run 'aws sso login --profile {profile}' to refresh."
            )
        if "SSO" in stderr:
            return ParseError(
                f"SSO login required. Run 'aws sso login --profile {profile}' first."
            )
        if stderr.strip():
            return ParseError(stderr.strip().splitlines()[0].strip())
        return InvalidCredentialsError(profile)
