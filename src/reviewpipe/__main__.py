"""Command-line entry point for reviewpipe."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import TextIO

from .util.config_manager import ConfigManager, env_flag
from .util.json_extractor import ParseResult
from .util.protocols import get_protocol
from .util.provider_availability import check_all_providers, check_provider_availability
from .util.providers import DEFAULT_EXECUTION_TIMEOUT, create_provider, get_provider_ids
from .util.stream_parser import StreamEvent, StreamParser


def _configure_logging(debug: bool, debug_stream: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if debug_stream:
        logging.getLogger("reviewpipe.stream").setLevel(logging.DEBUG)


def _read_input(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def _print_json(data, out: TextIO) -> None:
    out.write(json.dumps(data, indent=2, ensure_ascii=False) + "\n")


def _format_event(event: StreamEvent) -> str:
    marker = ">" if event.type == "tool_use" else "-"
    return f"{marker} {event.text}"


def _provider_from_args(args: argparse.Namespace, config_manager: ConfigManager):
    yolo = True if args.yolo else None
    config = config_manager.get_provider_config(args.provider, yolo=yolo)
    return create_provider(args.provider, model=getattr(args, "model", None), config=config)


def cmd_providers(args: argparse.Namespace, config_manager: ConfigManager, out: TextIO) -> int:
    statuses = {}
    if args.check:
        statuses = check_all_providers(
            priority_id=config_manager.get_default_provider(),
            config_lookup=config_manager.get_provider_config,
        )
    for provider_id in get_provider_ids():
        provider = create_provider(provider_id, config=config_manager.get_provider_config(provider_id))
        info = provider.describe()
        if provider_id in statuses:
            info["availability"] = statuses[provider_id].to_dict()
        _print_json(info, out)
    return 0


def cmd_probe(args: argparse.Namespace, config_manager: ConfigManager, out: TextIO) -> int:
    status = check_provider_availability(args.provider, config=config_manager.get_provider_config(args.provider))
    _print_json(status.to_dict(), out)
    return 0 if status.available else 1


def cmd_command(args: argparse.Namespace, config_manager: ConfigManager, out: TextIO) -> int:
    provider = _provider_from_args(args, config_manager)
    if args.extraction:
        _print_json(provider.get_extraction_config().model_dump(), out)
    else:
        _print_json(provider.get_invocation().model_dump(), out)
    return 0


def cmd_parse(args: argparse.Namespace, config_manager: ConfigManager, out: TextIO) -> int:
    result = get_protocol(args.provider).extract(_read_input(args.file))
    _print_json(result.to_dict(), out)
    return 0 if result.success else 1


def cmd_events(args: argparse.Namespace, config_manager: ConfigManager, out: TextIO) -> int:
    protocol = get_protocol(args.provider)
    parser = StreamParser(protocol.normalize, lambda event: out.write(_format_event(event) + "\n"), cwd=args.cwd)
    parser.feed(_read_input(args.file))
    parser.flush()
    return 0


def cmd_run(args: argparse.Namespace, config_manager: ConfigManager, out: TextIO) -> int:
    provider = _provider_from_args(args, config_manager)
    prompt = args.prompt if args.prompt is not None else _read_input(args.prompt_file)

    def show(event: StreamEvent) -> None:
        sys.stderr.write(_format_event(event) + "\n")
        sys.stderr.flush()

    result: ParseResult = provider.execute(
        prompt,
        cwd=args.cwd,
        timeout=args.timeout,
        level="cli",
        on_stream_event=None if args.quiet else show,
    )
    _print_json(result.to_dict(), out)
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reviewpipe",
        description="Drive AI coding-agent CLIs and extract structured JSON from their output",
    )
    parser.add_argument("--config", type=Path, default=None, help="Config file (default: ~/.reviewpipe/config.json)")
    parser.add_argument("--yolo", action="store_true", help="Drop tool restrictions for agent runs")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--debug-stream", action="store_true", help="Log every raw stdout line from the CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    providers = subparsers.add_parser("providers", help="List providers and their models")
    providers.add_argument("--check", action="store_true", help="Probe each CLI for availability")
    providers.set_defaults(handler=cmd_providers)

    provider_choices = get_provider_ids()

    probe = subparsers.add_parser("probe", help="Check whether a provider CLI is installed")
    probe.add_argument("provider", choices=provider_choices)
    probe.set_defaults(handler=cmd_probe)

    command = subparsers.add_parser("command", help="Show the resolved command line")
    command.add_argument("provider", choices=provider_choices)
    command.add_argument("--model", default=None)
    command.add_argument("--extraction", action="store_true", help="Show the JSON extraction command instead")
    command.set_defaults(handler=cmd_command)

    parse = subparsers.add_parser("parse", help="Extract the final JSON from a saved transcript")
    parse.add_argument("provider", choices=provider_choices)
    parse.add_argument("file", nargs="?", default="-", help="Transcript file, or - for stdin")
    parse.set_defaults(handler=cmd_parse)

    events = subparsers.add_parser("events", help="Replay a saved transcript as progress events")
    events.add_argument("provider", choices=provider_choices)
    events.add_argument("file", nargs="?", default="-", help="Transcript file, or - for stdin")
    events.add_argument("--cwd", default=None, help="Directory prefix stripped from tool paths")
    events.set_defaults(handler=cmd_events)

    run = subparsers.add_parser("run", help="Run a provider on a prompt")
    run.add_argument("provider", choices=provider_choices)
    prompt_group = run.add_mutually_exclusive_group(required=True)
    prompt_group.add_argument("--prompt", default=None)
    prompt_group.add_argument("--prompt-file", default=None)
    run.add_argument("--model", default=None)
    run.add_argument("--cwd", default=None)
    run.add_argument("--timeout", type=float, default=DEFAULT_EXECUTION_TIMEOUT)
    run.add_argument("--quiet", action="store_true", help="Do not print progress events")
    run.set_defaults(handler=cmd_run)

    return parser


def main(argv: list[str] | None = None, out: TextIO | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.debug, args.debug_stream or env_flag("REVIEWPIPE_DEBUG_STREAM"))
    out = out or sys.stdout

    config_manager = ConfigManager(args.config)
    try:
        return args.handler(args, config_manager, out)
    except (ValueError, OSError) as e:
        sys.stderr.write(f"Error: {e}\n")
        return 2


if __name__ == "__main__":
    sys.exit(main())
