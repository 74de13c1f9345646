"""
Centralized configuration for the webhook service.

Values come from ``MONOHOOK_*`` environment variables (a ``.env`` file is
honoured) and can be overridden by command line flags, see ``monohook.cli``.
"""
from __future__ import annotations

import os
import shutil
from typing import Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_PREFIX: str = "MONOHOOK_"

EXIT_BAD_ARGUMENTS: int = 1
EXIT_COMMAND_NOT_FOUND: int = 2

TRUE_WORDS: Tuple[str, ...] = ("1", "y", "yes", "t", "true")
FALSE_WORDS: Tuple[str, ...] = ("0", "n", "no", "f", "false")

DEFAULT_BUFFER = 10
DEFAULT_CONCURRENCY = 1
DEFAULT_PORT = 5000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_UNAUTHORIZED_STATUS = 401


class ConfigurationError(Exception):
    """Fatal startup error; the process exits with ``exit_code``."""

    def __init__(self, message: str, exit_code: int = EXIT_BAD_ARGUMENTS) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


class HookConfig(BaseModel):
    """Immutable runtime configuration handed to the app factory."""

    model_config = ConfigDict(frozen=True)

    command: str
    args: Tuple[str, ...] = ()
    authorization: str = ""
    buffer: int = Field(default=DEFAULT_BUFFER, ge=0)
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=0)
    cwd: Optional[str] = None
    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=0, le=65535)
    quiet: bool = False
    forward_request_body: bool = False
    forward_request_headers: bool = False
    forward_request_url: bool = False
    unauthorized_status: int = DEFAULT_UNAUTHORIZED_STATUS

    @field_validator("unauthorized_status")
    @classmethod
    def _check_unauthorized_status(cls, value: int) -> int:
        if value not in (401, 403):
            raise ValueError("unauthorized status must be 401 or 403")
        return value

    @field_validator("cwd")
    @classmethod
    def _blank_cwd_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


def env_var_name(name: str) -> str:
    return ENV_PREFIX + name


def env_string(name: str, default: str = "", environ: Optional[Mapping[str, str]] = None) -> str:
    """Free-form text option; an empty variable keeps the default."""
    environ = os.environ if environ is None else environ
    value = environ.get(env_var_name(name), "")
    return value if value != "" else default


def env_bool(name: str, default: bool = False, environ: Optional[Mapping[str, str]] = None) -> bool:
    """
    Boolean option. Accepts 0/n/no/f/false and 1/y/yes/t/true; anything else
    non-empty is rejected as a bad option value.
    """
    environ = os.environ if environ is None else environ
    var = env_var_name(name)
    value = environ.get(var, "").strip().lower()
    if value in TRUE_WORDS:
        return True
    if value in FALSE_WORDS:
        return False
    if value:
        raise ConfigurationError(
            f"environment variable ${var} must be one of: {', '.join(FALSE_WORDS + TRUE_WORDS)}"
        )
    return default


def env_uint(
    name: str,
    default: int,
    maximum: Optional[int] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    """Unsigned integer option, optionally bounded above."""
    environ = os.environ if environ is None else environ
    var = env_var_name(name)
    value = environ.get(var, "").strip()
    if not value:
        return default
    parsed = parse_uint(value, maximum)
    if parsed is None:
        if maximum is None:
            raise ConfigurationError(
                f"environment variable ${var} must be an integer greater than or equal to zero"
            )
        raise ConfigurationError(
            f"environment variable ${var} must be an integer between 0 and {maximum}"
        )
    return parsed


def parse_uint(value: str, maximum: Optional[int] = None) -> Optional[int]:
    """Decimal digits only; returns None when the value is not acceptable."""
    text = value.strip()
    if not (text.isascii() and text.isdigit()):
        return None
    parsed = int(text)
    if maximum is not None and parsed > maximum:
        return None
    return parsed


def resolve_command(name: str) -> str:
    """Resolve an executable the way a shell would, as an absolute path."""
    resolved = shutil.which(name)
    if not resolved:
        raise ConfigurationError(
            f'could not find command "{name}"', exit_code=EXIT_COMMAND_NOT_FOUND
        )
    return os.path.abspath(resolved)
