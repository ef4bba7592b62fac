#!/usr/bin/env python3
"""
chatgate CLI — run the proxy and poke at it.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, dial     Start the chatgate proxy server
    ask             chat            Run one chat turn with the client service
    mode            which           Show which client delivery mode is active
    tap             log, tail       Show recent audit events
"""

import argparse
import asyncio
import sys

__version__ = "1.0.0"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chatgate proxy server."""
    import uvicorn
    from chatgate.config import get_config

    cfg = get_config()
    server_cfg = cfg.get("server", {})
    host = args.host or server_cfg.get("host", "0.0.0.0")
    port = args.port or server_cfg.get("port", 8000)

    print(f"  chatgate v{__version__}")
    print(f"  Listening on {host}:{port}")
    print()

    uvicorn.run(
        "chatgate.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def _client_config():
    from chatgate.client import resolve_client_config
    from chatgate.config import get_config

    try:
        cfg = get_config()
    except FileNotFoundError:
        cfg = {}
    return resolve_client_config(cfg)


def _print_block(block: dict):
    kind = block.get("type")
    title = block.get("title")
    print(f"    [{kind}]" + (f" {title}" if title else ""))
    for option in block.get("options", []) + block.get("items", []):
        print(f"      - {option['label']}  -> {option['payload']}")
    for field in block.get("fields", []):
        required = " *" if field.get("required") else ""
        print(f"      • {field['label']} ({field['kind']}){required}")


def cmd_ask(args):
    """Run one chat turn through the client-side completion service."""
    from chatgate.client import CompletionError, CompletionService

    service = CompletionService(_client_config())
    message = " ".join(args.message)

    try:
        result = asyncio.run(service.complete_turn([], message))
    except (CompletionError, ValueError) as e:
        print(f"  ✗  {e}", file=sys.stderr)
        sys.exit(1)

    data = result.message.to_dict()
    print(f"  ◀ {data['text']}")
    for block in data.get("uiBlocks", []):
        _print_block(block)
    print(f"\n  source: {result.source} ({result.source_detail})")


def cmd_mode(args):
    """Show the client delivery mode and why."""
    from chatgate.client import has_configured_api_key, resolve_runtime_mode

    config = _client_config()
    print(f"  mode:         {resolve_runtime_mode(config)}")
    print(f"  proxy:        {config.proxy_url if config.proxy_path else '(not configured)'}")
    print(f"  api key:      {'set' if has_configured_api_key(config) else 'missing'}")
    print(f"  allow direct: {config.allow_direct}")


def cmd_tap(args):
    """Print recent audit events from the JSONL audit file."""
    from chatgate.audit import format_event, read_events
    from chatgate.config import get_config, resolve_proxy_settings

    log_path = args.log or resolve_proxy_settings(get_config()).audit_path
    if not log_path:
        print("  ✗  No audit file configured (set audit.path in config.yaml)")
        return

    events = read_events(log_path, last_n=args.last, outcome=args.outcome)
    if not events:
        print(f"  No audit events in {log_path}")
        return
    for entry in events:
        print(format_event(entry))


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def main():
    parser = argparse.ArgumentParser(
        prog="chatgate",
        description="chatgate — authenticated chatbot completion proxy.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatgate {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "dial"],
                 "Start the chatgate proxy server", cmd_serve, setup_serve)

    def setup_ask(p):
        p.add_argument("message", nargs="+", help="Message to send")

    _add_command(sub, ["ask", "chat"],
                 "Run one chat turn with the client service", cmd_ask, setup_ask)

    _add_command(sub, ["mode", "which"],
                 "Show which client delivery mode is active", cmd_mode)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to audit JSONL (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N events")
        p.add_argument("--outcome", "-o", default=None, help="Only events with this outcome")

    _add_command(sub, ["tap", "log", "tail"],
                 "Show recent audit events", cmd_tap, setup_tap)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    args.func(args)


if __name__ == "__main__":
    main()
