"""
bootstrap/entrypoints.py - Application entry points

Logging setup and the ``cardstream`` command line:

    cardstream eval "[field:a] + [field:b]" --field a=120 --field b=2.5 --unit kWh
    cardstream walk content.json --field postal_code=00100 --tick 3
    cardstream serve --port 8000
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import argparse
import json
import logging
import sys

logger = logging.getLogger("bootstrap.entrypoints")


_LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_QUIET_LOGGERS = ("httpx", "uvicorn.access")
_HANDLER_NAME = "cardstream"


class _JSONLogFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(level: str = "INFO", log_file: str = None, json_format: bool = False) -> None:
    """
    Attach handlers to the root logger.

    Logs go to stderr so that command output on stdout stays parseable.
    ``log_file`` adds a second handler with the same formatter.
    Calling it again replaces the handlers it installed earlier.
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    formatter = _JSONLogFormatter() if json_format else logging.Formatter(_LOG_FORMAT)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    root.setLevel(numeric)
    for stale in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(stale)
        stale.close()
    for handler in handlers:
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# HELPERS
# =============================================================================

def _parse_assignment(text: str) -> Tuple[str, Any]:
    """'name=value' -> (name, value); numeric values become floats."""
    from cardstream.formulas.formatting import parse_number_input

    if "=" not in text:
        raise argparse.ArgumentTypeError(f"Expected name=value, got '{text}'")
    name, raw = text.split("=", 1)
    number = parse_number_input(raw)
    return name.strip(), (number if number is not None else raw)


def _print(data: Dict[str, Any], as_json: bool, lines: List[str]) -> None:
    if as_json:
        print(json.dumps(data, indent=2, ensure_ascii=False, default=str))
    else:
        print("\n".join(lines))


# =============================================================================
# COMMANDS
# =============================================================================

def _cmd_eval(parsed: argparse.Namespace) -> int:
    """Formula tester: evaluate one template against the given fields."""
    from cardstream.bootstrap.config import load_config
    from cardstream.cards.loader import load_bundle_file
    from cardstream.core.session_table import SessionDataTable
    from cardstream.formulas.engine import FormulaEngine

    config = load_config(parsed.config)
    table = SessionDataTable("cli")
    engine = FormulaEngine(table, config=config.engine)

    if parsed.bundle:
        bundle = load_bundle_file(parsed.bundle)
        for definition in bundle.formulas:
            engine.register_formula(definition)
        for definition in bundle.lookups:
            engine.register_lookup(definition)

    for name, value in parsed.field:
        table.set_field(name, value)

    result = engine.process(parsed.template, unit=parsed.unit)
    lines = [result.result] if result.success else [f"error: {result.error}"]
    if parsed.verbose_result:
        lines.append(f"dependencies: {', '.join(result.dependencies) or '-'}")
    _print(result.to_dict(), parsed.json, lines)
    return 0 if result.success else 1


def _cmd_walk(parsed: argparse.Namespace) -> int:
    """Run a bundle through a session with the given field values."""
    from cardstream.bootstrap.config import load_config
    from cardstream.cards.loader import load_bundle_file
    from cardstream.cards.timers import ManualTimer
    from cardstream.kernel.session import CardSession

    config = load_config(parsed.config)
    bundle = load_bundle_file(parsed.bundle)
    session = CardSession(bundle, session_id="cli", config=config, timer=ManualTimer())

    failures = 0
    for name, value in parsed.field:
        result = session.update_field(name, value)
        if not result.success:
            failures += 1
            logger.warning(f"Field {name}: {result.error}")
        if parsed.advance:
            session.advance()
        if parsed.tick:
            session.tick(parsed.tick)

    state = session.get_state()
    lines = [f"session {state['session_id']}"]
    for card in state["cards"]:
        marker = "*" if card["is_revealed"] else " "
        lines.append(f" {marker} {card['card_id']:<20} {card['type']:<12} {card['status']}")
    if state["errors"]["total_errors"]:
        lines.append(f"errors: {state['errors']['summary']}")
    _print(state, parsed.json, lines)
    return 0 if failures == 0 else 1


def _cmd_serve(parsed: argparse.Namespace) -> int:
    """Run the widget API with uvicorn."""
    import uvicorn

    from cardstream.bootstrap.config import load_config
    from cardstream.deployment.api import create_fastapi_app

    config = load_config(parsed.config)
    if parsed.port:
        config.api.port = parsed.port
    if parsed.host:
        config.api.host = parsed.host
    if parsed.bundle:
        config.api.content_path = parsed.bundle

    app = create_fastapi_app(config)
    uvicorn.run(app, host=config.api.host, port=config.api.port)
    return 0


# =============================================================================
# MAIN
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CardStream calculator tools",
        prog="cardstream",
    )
    parser.add_argument("-c", "--config", help="Path to configuration file", default=None)
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Log level",
    )
    parser.add_argument("--log-file", help="Log file path", default=None)
    parser.add_argument("--json-logs", action="store_true", help="Write logs as JSON lines")
    parser.add_argument("--json", action="store_true", help="Output in JSON format")

    commands = parser.add_subparsers(dest="command", required=True)

    eval_parser = commands.add_parser("eval", help="Evaluate a formula template")
    eval_parser.add_argument("template", help="Template, e.g. \"[field:a] + [field:b]\"")
    eval_parser.add_argument("--field", "-f", action="append", type=_parse_assignment, default=[],
                             help="Field value as name=value (repeatable)")
    eval_parser.add_argument("--unit", "-u", default=None, help="Unit appended to the result")
    eval_parser.add_argument("--bundle", "-b", default=None, help="Content bundle with formulas/lookups")
    eval_parser.add_argument("--show-dependencies", dest="verbose_result", action="store_true")
    eval_parser.set_defaults(handler=_cmd_eval)

    walk_parser = commands.add_parser("walk", help="Walk a content bundle with field values")
    walk_parser.add_argument("bundle", help="Content bundle JSON file")
    walk_parser.add_argument("--field", "-f", action="append", type=_parse_assignment, default=[],
                             help="Field value as name=value (repeatable, applied in order)")
    walk_parser.add_argument("--advance", action="store_true", help="Press next after every field")
    walk_parser.add_argument("--tick", type=float, default=0.0, help="Seconds to advance the clock after every field")
    walk_parser.set_defaults(handler=_cmd_walk)

    serve_parser = commands.add_parser("serve", help="Run the widget API")
    serve_parser.add_argument("--host", "-H", default=None)
    serve_parser.add_argument("--port", "-p", type=int, default=None)
    serve_parser.add_argument("--bundle", "-b", default=None, help="Content bundle JSON file")
    serve_parser.set_defaults(handler=_cmd_serve)

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code
    """
    from cardstream.errors import CardStreamError

    parsed = build_parser().parse_args(args)

    log_level = "DEBUG" if parsed.verbose else parsed.log_level
    setup_logging(level=log_level, log_file=parsed.log_file, json_format=parsed.json_logs)

    try:
        return parsed.handler(parsed)
    except CardStreamError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
