"""Process entrypoint: maps CLI outcomes and uncaught errors onto exit codes."""

from __future__ import annotations

import sys
import traceback
from collections.abc import Iterator, Sequence
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    REJECTED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and always return one of the ``ExitCode`` values.

    Bad input anywhere in an exception chain (config, request documents,
    unreadable files) maps to ``CONFIG_ERROR`` with a one-line message.
    Anything else is ``INTERNAL_ERROR`` and prints the traceback.
    """

    from policy_engine.ui import cli

    try:
        return _as_exit_code(cli.run_cli(argv))
    except SystemExit as exc:
        return _as_exit_code(exc.code)
    except Exception as exc:
        if _is_input_error(exc):
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
            return ExitCode.CONFIG_ERROR
        traceback.print_exception(exc, file=sys.stderr)
        return ExitCode.INTERNAL_ERROR


def _as_exit_code(code: object) -> int:
    if code is None:
        return ExitCode.SUCCESS
    if isinstance(code, int) and code in set(ExitCode):
        return code
    if isinstance(code, str) and code.strip():
        print(code.strip(), file=sys.stderr)
    return ExitCode.INTERNAL_ERROR


def _is_input_error(exc: BaseException) -> bool:
    from policy_engine.config import ConfigLoadError, ConfigValidationError
    from policy_engine.domain.errors import InvalidRequest

    input_errors = (
        ConfigLoadError,
        ConfigValidationError,
        InvalidRequest,
        FileNotFoundError,
        NotADirectoryError,
        PermissionError,
    )
    return any(isinstance(item, input_errors) for item in _chain(exc))


def _chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or (
            None if current.__suppress_context__ else current.__context__
        )


__all__ = ["ExitCode", "cli_entrypoint"]
