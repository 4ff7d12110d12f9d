"""Command-line interface router for policy-engine.

Commands::

    policy-engine classify request.yaml      does this change need a plan?
    policy-engine validate-plan plan.yaml    is this plan complete? (exit 1 if not)
    policy-engine policies                   resilience policy per operation kind
    policy-engine config                     effective configuration, secrets redacted

Every command accepts ``--config``, ``--profile``, ``--json`` and
``--log-session``. Handlers return an exit code; input problems surface as
``CLIError`` with exit code 2.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

from policy_engine.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
    resilience_policies,
)
from policy_engine.control_plane import PolicyEngine
from policy_engine.domain.errors import InvalidRequest
from policy_engine.domain.models import DANGER_CATEGORY_BY_KIND, OperationKind
from policy_engine.observability.logging import (
    configure_structlog,
    setup_logging,
    shutdown_logging,
)
from policy_engine.planning import TRIGGER_RULES, load_change_request, load_plan_artifact, validate
from policy_engine.planning.loaders import render_yaml
from policy_engine.resilience import backoff_schedule
from policy_engine.ui.render import CLIRenderer

EXIT_SUCCESS: Final[int] = 0
EXIT_REJECTED: Final[int] = 1
EXIT_INPUT_ERROR: Final[int] = 2

Handler = Callable[[argparse.Namespace, Mapping[str, Any]], int]


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """CLI failure carrying the exit code to return."""

    message: str
    exit_code: int = EXIT_REJECTED

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class _Command:
    name: str
    summary: str
    handler: Handler
    document: tuple[str, str] | None = None


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse ``argv``, run the chosen command and return its exit code."""

    args = build_parser().parse_args(argv)

    # stdout carries command output only; decision logs need --log-session.
    configure_structlog()
    try:
        config = _load_config(args)
        if args.log_session:
            setup_logging(config["observability"], session_id=args.log_session)
        try:
            return int(args.handler(args, config))
        finally:
            if args.log_session:
                shutdown_logging()
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="policy-engine",
        description="Plan -> Build -> Verify policy checks for automated code changes.",
    )
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument(
        "--config",
        dest="config_path",
        help="TOML config file (default: ./policy_engine.toml when present)",
    )
    shared.add_argument("--profile", help="config profile overlay (built-in: strict, lenient)")
    shared.add_argument("--json", action="store_true", help="emit machine-readable JSON")
    shared.add_argument(
        "--log-session",
        metavar="SESSION",
        help="write JSON-lines decision logs to <log_dir>/SESSION/ for this run",
    )

    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    for command in _COMMANDS:
        sub = commands.add_parser(
            command.name, parents=[shared], help=command.summary, description=command.summary
        )
        if command.document is not None:
            dest, help_text = command.document
            sub.add_argument(dest, help=help_text)
        sub.set_defaults(handler=command.handler)
    return parser


def _classify(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    request = _read_document(load_change_request, args.request_path)
    engine = PolicyEngine(config)
    snapshot = engine.describe(engine.submit(request))
    decision = snapshot.decision

    if args.json:
        _print_json(
            {
                "command": "classify",
                "change_request_id": request.id,
                "required": decision.required,
                "rationale": list(decision.rationale),
                "state": snapshot.state.value,
            }
        )
        return EXIT_SUCCESS

    out = CLIRenderer()
    out.kv("Change request", request.id)
    out.kv("Planning required", _yes_no(decision.required))
    out.kv("Initial state", snapshot.state.value)
    if decision.rationale:
        descriptions = {rule.name: rule.description for rule in TRIGGER_RULES}
        out.section("Matched rules:")
        out.items([f"{name}: {descriptions[name]}" for name in decision.rationale])
    return EXIT_SUCCESS


def _validate_plan(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    result = validate(_read_document(load_plan_artifact, args.plan_path))
    code = EXIT_SUCCESS if result.valid else EXIT_REJECTED

    if args.json:
        _print_json({"command": "validate-plan", **result.to_dict()})
        return code

    out = CLIRenderer()
    out.kv("Plan complete", _yes_no(result.valid))
    sections = (("Missing sections:", sorted(result.missing)), ("Issues:", list(result.issues)))
    for title, entries in sections:
        if entries:
            out.section(title)
            out.items(list(entries))
    return code


def _policies(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    policies = resilience_policies(config)
    rows = []
    for kind in OperationKind:
        category = DANGER_CATEGORY_BY_KIND.get(kind)
        rows.append(
            {
                "kind": kind.value,
                "danger_category": category.value if category is not None else None,
                **policies[kind].to_dict(),
                "backoff_schedule": list(backoff_schedule(policies[kind])),
            }
        )

    if args.json:
        _print_json({"command": "policies", "profile": args.profile, "policies": rows})
        return EXIT_SUCCESS

    CLIRenderer().table(
        ("kind", "attempts", "retry delays", "jitter", "timeout", "danger category"),
        [
            (
                row["kind"],
                str(row["max_attempts"]),
                ", ".join(f"{delay:g}s" for delay in row["backoff_schedule"]) or "-",
                str(row["jitter_ratio"]),
                f"{row['timeout_seconds']}s",
                row["danger_category"] or "-",
            )
            for row in rows
        ],
        title=f"Resilience policies (profile: {args.profile or 'default'})",
    )
    return EXIT_SUCCESS


def _config(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    redacted = effective_config(config)
    if args.json:
        _print_json({"command": "config", "active_profile": args.profile, "config": redacted})
        return EXIT_SUCCESS

    out = CLIRenderer()
    out.kv("Active profile", args.profile or "(default)")
    out.text(render_yaml(redacted).rstrip("\n"))
    return EXIT_SUCCESS


_COMMANDS: Final[tuple[_Command, ...]] = (
    _Command(
        "classify",
        "classify a change request and report whether planning is required",
        _classify,
        ("request_path", "change request document (YAML or JSON)"),
    ),
    _Command(
        "validate-plan",
        "check a plan artifact for completeness; exit 1 when incomplete",
        _validate_plan,
        ("plan_path", "plan artifact document (YAML or JSON)"),
    ),
    _Command("policies", "show the effective resilience policy per operation kind", _policies),
    _Command("config", "show the effective configuration with secrets redacted", _config),
)


def _load_config(args: argparse.Namespace) -> dict[str, Any]:
    try:
        return load_config(args.config_path, profile=args.profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_INPUT_ERROR) from exc


def _read_document(loader: Callable[[str], Any], path: str) -> Any:
    try:
        return loader(path)
    except InvalidRequest as exc:
        raise CLIError(str(exc), exit_code=EXIT_INPUT_ERROR) from exc


def _print_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


__all__ = ["CLIError", "build_parser", "run_cli"]
