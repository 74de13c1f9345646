"""
Command line entry point.

Usage:
  monohook [OPTION...] [--] [EXEC...]

Every option can also be set with a MONOHOOK_* environment variable (or a
.env file); flags win over the environment.
"""
from __future__ import annotations

import argparse
import sys
from typing import List, Optional, Sequence, Tuple

from dotenv import load_dotenv
from pydantic import ValidationError

from monohook.main import configure_logging, create_app
from monohook.settings import (
    DEFAULT_BUFFER,
    DEFAULT_CONCURRENCY,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_UNAUTHORIZED_STATUS,
    EXIT_BAD_ARGUMENTS,
    ConfigurationError,
    HookConfig,
    env_bool,
    env_string,
    env_uint,
    parse_uint,
    resolve_command,
)

TERMINATOR = "--"

USAGE = "%(prog)s [OPTION...] [--] [EXEC...]"

DESCRIPTION = "monohook exposes a single HTTP webhook endpoint that executes a command."

EPILOG = """\
Examples:
  Update a file when the hook is triggered:
    monohook -- touch hooked.txt
  Deploy an application when the hook is triggered:
    monohook -a letmein -- deploy-stuff.sh
"""


class _Parser(argparse.ArgumentParser):
    """argparse exits with 2 on bad input; bad arguments are exit code 1 here."""

    def error(self, message: str):
        raise ConfigurationError(message, exit_code=EXIT_BAD_ARGUMENTS)


def _uint(maximum: Optional[int] = None):
    def convert(value: str) -> int:
        parsed = parse_uint(value, maximum)
        if parsed is None:
            if maximum is None:
                raise argparse.ArgumentTypeError("must be an integer greater than or equal to zero")
            raise argparse.ArgumentTypeError(f"must be an integer between 0 and {maximum}")
        return parsed

    return convert


def split_terminator(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Options before the first ``--``, command and arguments after it."""
    argv = list(argv)
    if TERMINATOR in argv:
        index = argv.index(TERMINATOR)
        return argv[:index], argv[index + 1:]
    return argv, []


def build_parser() -> argparse.ArgumentParser:
    """Parser whose defaults come from the environment."""
    parser = _Parser(
        prog="monohook",
        usage=USAGE,
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-a", "--authorization",
        default=env_string("AUTHORIZATION"),
        help="Authentication token that must be sent as a Bearer token in the 'Authorization' "
        "header or as the 'authorization' URL query parameter",
    )
    parser.add_argument(
        "-b", "--buffer",
        type=_uint(),
        default=env_uint("BUFFER", DEFAULT_BUFFER),
        help="Maximum number of requests to queue before refusing subsequent ones until the "
        "queue is freed (zero for infinite, default %(default)s)",
    )
    parser.add_argument(
        "-c", "--concurrency",
        type=_uint(),
        default=env_uint("CONCURRENCY", DEFAULT_CONCURRENCY),
        help="Maximum number of times the command should be executed in parallel "
        "(zero for infinite concurrency, default %(default)s)",
    )
    parser.add_argument(
        "-B", "--forward-request-body",
        action="store_true",
        default=env_bool("FORWARD_REQUEST_BODY"),
        help="Whether to forward each HTTP request's body to the command's standard input",
    )
    parser.add_argument(
        "-H", "--forward-request-headers",
        action="store_true",
        default=env_bool("FORWARD_REQUEST_HEADERS"),
        help="Whether to forward each HTTP request's headers to the command as environment "
        "variables (e.g. Content-Type becomes $MONOHOOK_REQUEST_HEADER_CONTENT_TYPE)",
    )
    parser.add_argument(
        "-U", "--forward-request-url",
        action="store_true",
        default=env_bool("FORWARD_REQUEST_URL"),
        help="Whether to forward each HTTP request's URL to the command as the "
        "$MONOHOOK_REQUEST_URL environment variable",
    )
    parser.add_argument(
        "-C", "--cwd",
        default=env_string("CWD") or None,
        help="Working directory in which to run the command",
    )
    parser.add_argument(
        "-p", "--port",
        type=_uint(65535),
        default=env_uint("PORT", DEFAULT_PORT, maximum=65535),
        help="Port on which to listen to (default %(default)s)",
    )
    parser.add_argument(
        "--host",
        default=env_string("HOST", DEFAULT_HOST),
        help="Interface on which to listen (default %(default)s)",
    )
    parser.add_argument(
        "--unauthorized-status",
        type=int,
        choices=(401, 403),
        default=env_uint("UNAUTHORIZED_STATUS", DEFAULT_UNAUTHORIZED_STATUS),
        help="HTTP status answered to unauthorized requests (default %(default)s)",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        default=env_bool("QUIET"),
        help="Do not print anything except the command's standard output and error streams",
    )
    parser.add_argument("extra", nargs="*", help=argparse.SUPPRESS)
    return parser


def parse_config(argv: Sequence[str]) -> HookConfig:
    """Turn command line arguments into a validated HookConfig."""
    options, exec_argv = split_terminator(argv)

    # Option and environment errors win over a missing command.
    namespace = build_parser().parse_args(options)
    if namespace.extra:
        raise ConfigurationError(
            "no argument expected before the terminator (put -- before the command to execute)"
        )
    command = resolve_command(exec_argv[0]) if exec_argv else ""
    if not command:
        raise ConfigurationError("no command to execute was provided")

    try:
        return HookConfig(
            command=command,
            args=tuple(exec_argv[1:]),
            authorization=namespace.authorization,
            buffer=namespace.buffer,
            concurrency=namespace.concurrency,
            cwd=namespace.cwd,
            host=namespace.host,
            port=namespace.port,
            quiet=namespace.quiet,
            forward_request_body=namespace.forward_request_body,
            forward_request_headers=namespace.forward_request_headers,
            forward_request_url=namespace.forward_request_url,
            unauthorized_status=namespace.unauthorized_status,
        )
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


# Short options that take a value; the rest of a bundle after one is that value.
VALUE_SHORT_OPTIONS = frozenset("abcCp")


def _quiet_requested(argv: Sequence[str]) -> bool:
    """Best-effort scan for -q when the arguments could not be parsed."""
    options, _ = split_terminator(argv)
    skip_next = False
    for option in options:
        if skip_next:
            skip_next = False
            # argparse never takes a dash-prefixed token as an option value.
            if not option.startswith("-"):
                continue
        if len(option) > 2 and "--quiet".startswith(option):
            return True
        if option.startswith("--") or not option.startswith("-"):
            continue
        for index, flag in enumerate(option[1:], start=1):
            if flag == "q":
                return True
            if flag in VALUE_SHORT_OPTIONS:
                skip_next = index == len(option) - 1
                break
    try:
        return env_bool("QUIET")
    except ConfigurationError:
        return False


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    argv = sys.argv[1:] if argv is None else list(argv)

    try:
        config = parse_config(argv)
    except ConfigurationError as exc:
        if not _quiet_requested(argv):
            print(f"Error: {exc.message}", file=sys.stderr)
        return exc.exit_code

    import uvicorn

    configure_logging(config.quiet)
    app = create_app(config)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_config=None,
        access_log=False,
        timeout_keep_alive=5,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
