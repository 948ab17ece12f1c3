"""Command-line entry point: one-shot questions and the interactive REPL."""

import argparse
import logging
import os
import sys
import threading
from importlib import metadata

from . import fmt
from .client import LiteLLMClient
from .config import (
    _UNSET,
    PROVIDERS,
    REASONING_EFFORTS,
    apply_config_to_args,
    config_from_args,
    generate_config,
    load_config,
)
from .events import EventBus
from .history import ChatHistory
from .model import Model, StopReason
from .report import (
    AgentError,
    CancelledError,
    ConfigError,
    IterationLimitExceeded,
    ReportCollector,
)
from .tools import build_registry

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_EXHAUSTED = 3
EXIT_INTERRUPTED = 130

FLUSH_TIMEOUT = 5.0


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, ConfigError):
        return EXIT_CONFIG
    if isinstance(exc, (CancelledError, KeyboardInterrupt)):
        return EXIT_INTERRUPTED
    if isinstance(exc, IterationLimitExceeded):
        return EXIT_EXHAUSTED
    return EXIT_ERROR


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="gptx",
        usage="%(prog)s [options] <prompt>\n       %(prog)s --repl [options] [prompt]",
        description="Talk to a language model from the command line, with optional local tools.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="*",
        help="The prompt for the model. Read from stdin when omitted and stdin is piped.",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single prompt.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (.gptx.toml) variant.",
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="LLM provider: openai (default), openrouter, lmstudio (local).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: provider's; http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "-m",
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: o4-mini).",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "-s",
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System prompt to include.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "-t",
        "--tools",
        type=_split_list,
        default=_UNSET,
        help='Comma-separated tools to enable (e.g. "shell,repo").',
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: provider default).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--reasoning-effort",
        choices=REASONING_EFFORTS,
        default=_UNSET,
        help="Reasoning effort for reasoning models (default: provider default).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum model/tool cycles per prompt (default: 10).",
    )
    parser.add_argument(
        "--shell",
        type=str,
        default=_UNSET,
        help="Shell used by the shell tool (default: $SHELL, else /bin/sh).",
    )
    parser.add_argument(
        "--tool-timeout",
        type=int,
        default=_UNSET,
        help="Default timeout in seconds for tool commands (default: 30).",
    )
    parser.add_argument(
        "--timeout",
        dest="request_timeout",
        type=float,
        default=_UNSET,
        help="Timeout in seconds for each model request (default: litellm's).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Working directory for tools and project config (default: current directory).",
    )
    parser.add_argument(
        "--user-id",
        type=str,
        default=_UNSET,
        help="End-user identifier forwarded to the provider.",
    )
    parser.add_argument(
        "--no-stream",
        dest="stream",
        action="store_false",
        default=_UNSET,
        help="Wait for the full response instead of streaming it.",
    )
    parser.add_argument(
        "--chat",
        type=str,
        default=_UNSET,
        metavar="FILE",
        help="Load the conversation from FILE and save every new message to it.",
    )
    parser.add_argument(
        "--usage",
        action="store_true",
        help="Print token usage after the run.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print the model's reply and errors.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log debug information to stderr.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def setup_logging(verbose: bool) -> None:
    """Route gptx log records through Rich on stderr."""
    from rich.logging import RichHandler

    handler = RichHandler(
        console=fmt.console(), show_time=False, show_path=verbose, markup=False
    )
    logger = logging.getLogger("gptx")
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("gptx")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(EXIT_OK)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(EXIT_OK)

    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    try:
        apply_config_to_args(args, load_config(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(EXIT_CONFIG)

    fmt.init(color=args.color, no_color=args.no_color)
    setup_logging(args.verbose)

    question = " ".join(args.question).strip()
    if not question and not args.repl and not sys.stdin.isatty():
        question = sys.stdin.read().strip()
    if not question and not args.repl:
        parser.error("a prompt is required (or use --repl)")

    sys.exit(run(args, question))


def run(args: argparse.Namespace, question: str) -> int:
    """Build the conversation from resolved args and run it. Returns the exit code."""
    try:
        config = config_from_args(args)
        registry = build_registry(config)
        history = ChatHistory.load(args.chat) if args.chat else None
    except AgentError as e:
        fmt.error(str(e))
        return exit_code_for(e)

    events = EventBus()
    model = Model(
        config,
        client=LiteLLMClient.from_config(config),
        tools=registry,
        events=events,
        history=history,
    )
    fmt.attach(events, verbose=not args.quiet)
    report = None
    if args.report:
        report = ReportCollector()
        report.attach(events)

    try:
        if args.repl:
            repl_loop(model, question, show_usage=args.usage, verbose=not args.quiet)
            return EXIT_OK
        return _one_shot(model, question, args, report)
    finally:
        events.close(FLUSH_TIMEOUT)


def _one_shot(model: Model, question: str, args, report) -> int:
    result = None
    failure: BaseException | None = None
    try:
        result = model.message(question, threading.Event())
    except (AgentError, KeyboardInterrupt) as e:
        failure = e
    model.events.flush(FLUSH_TIMEOUT)

    if result is not None and result.answer and not result.answer.endswith("\n"):
        print()

    if failure is None and result.exhausted:
        failure = IterationLimitExceeded(result.iterations)
        fmt.warning(f"{failure} (raise --max-iterations to allow more)")

    exit_code = EXIT_OK if failure is None else exit_code_for(failure)

    if args.usage:
        _print_usage(model, result.usage if result else None)

    if report is not None:
        if failure is None:
            outcome = "success"
        elif exit_code == EXIT_EXHAUSTED:
            outcome = "exhausted"
        elif exit_code == EXIT_INTERRUPTED:
            outcome = "interrupted"
        else:
            outcome = "error"
        report.finalize(
            task=question,
            model=model.config.model,
            provider=model.config.provider,
            settings=model.config.redacted(),
            outcome=outcome,
            answer=result.answer if result else None,
            exit_code=exit_code,
            error_message=str(failure) if failure is not None else None,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
        else:
            if not args.quiet:
                fmt.info(f"Report written to {args.report}")

    return exit_code


def _print_usage(model: Model, last) -> None:
    if last is not None:
        fmt.usage("last tokens usage:", last)
    total = model.chat.usage if model.chat is not None else model.usage
    fmt.usage("total tokens usage:", total)


# -- REPL --------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Start a new conversation\n"
        "  /usage             Show token usage\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_turn(model: Model, line: str) -> None:
    try:
        result = model.message(line, threading.Event())
    except KeyboardInterrupt:
        model.events.flush(FLUSH_TIMEOUT)
        fmt.warning("interrupted, question aborted.")
        return
    except AgentError:
        # Already rendered through the ERROR event.
        model.events.flush(FLUSH_TIMEOUT)
        return
    model.events.flush(FLUSH_TIMEOUT)
    if result.answer and not result.answer.endswith("\n"):
        print()
    if result.stop_reason is StopReason.MAX_ITERATIONS:
        fmt.warning("max iterations reached for this question.")


def repl_loop(
    model: Model,
    initial: str = "",
    *,
    show_usage: bool = False,
    verbose: bool = True,
    session=None,
) -> None:
    """Interactive read-eval-print loop."""
    if session is None:
        from prompt_toolkit import PromptSession
        from prompt_toolkit.history import FileHistory

        history_path = os.path.join(model.config.base_dir, ".gptx", "repl_history")
        os.makedirs(os.path.dirname(history_path), exist_ok=True)
        session = PromptSession(
            history=FileHistory(history_path),
            enable_history_search=True,
        )

    from prompt_toolkit.formatted_text import FormattedText

    prompt_text = FormattedText([("bold fg:ansigreen", "gptx> ")])

    if verbose:
        fmt.repl_banner()

    if initial:
        _repl_turn(model, initial)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # Only known commands are intercepted; unknown /foo goes to the model
        cmd = line.split(None, 1)[0].lower()
        if cmd in ("/exit", "/quit"):
            break
        if cmd == "/help":
            _repl_help()
            continue
        if cmd == "/clear":
            dropped = model.clear()
            fmt.info(f"context cleared ({dropped} messages removed)")
            continue
        if cmd == "/usage":
            _print_usage(model, None)
            continue

        _repl_turn(model, line)
        if show_usage:
            _print_usage(model, None)
