"""Chronicler CLI entry point."""

from __future__ import annotations

import argparse
import json
import sys


def main() -> None:

    import importlib.metadata

    try:
        version = importlib.metadata.version("chronicler")
    except importlib.metadata.PackageNotFoundError:
        version = "0.3.0"

    parser = argparse.ArgumentParser(
        prog="chronicler",
        description="Chronicler — AI campaign assistant for game masters",
    )
    # Global arguments
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {version}")
    parser.add_argument("--config", default=None, help="Path to custom configuration file (default: ~/.chronicler/config.json)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # proxy subcommand
    proxy_parser = subparsers.add_parser("proxy", help="Start the proxy server")
    proxy_parser.add_argument("--host", default=None, help="Host to bind to")
    proxy_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    proxy_parser.add_argument("--config", default=None, help="Path to custom configuration file")

    # chat subcommand
    chat_parser = subparsers.add_parser("chat", help="Send one message to a running proxy")
    chat_parser.add_argument("message", help="Message for the assistant")
    chat_parser.add_argument("--campaign", required=True, help="Campaign ID")
    chat_parser.add_argument("--context", choices=("sidebar", "fullpage"), default="sidebar", help="Conversation surface")
    chat_parser.add_argument("--proxy-url", default=None, help="Proxy URL (default: from config)")
    chat_parser.add_argument("--config", default=None, help="Path to custom configuration file")

    # status subcommand
    status_parser = subparsers.add_parser("status", help="Check status of services")
    status_parser.add_argument("--config", default=None, help="Path to custom configuration file")

    args = parser.parse_args()

    # Initialize config globally with the provided path (if any)
    # This ensures subsequent calls to get_config() return the correct instance
    from chronicler.proxy.config import get_config
    get_config(args.config)

    if args.command == "proxy":
        _run_proxy(args)
    elif args.command == "chat":
        _run_chat(args)
    elif args.command == "status":
        _run_status(args)
    else:
        parser.print_help()
        sys.exit(1)


def _run_proxy(args) -> None:
    """Start the proxy server."""
    import os
    import chronicler.proxy.config as _cfg_module
    from chronicler.logger import setup_logging

    # Set env vars BEFORE resetting the singleton so they are picked up
    if args.host:
        os.environ["CHRONICLER_PROXY_HOST"] = args.host
    if args.port:
        os.environ["CHRONICLER_PROXY_PORT"] = str(args.port)

    # Reset singleton so the env-var overrides take effect
    if args.host or args.port:
        _cfg_module._config = None
        _cfg_module.get_config(getattr(args, "config", None))

    setup_logging()

    from chronicler.proxy.server import run_server
    run_server()


def _proxy_url(args) -> str:
    from chronicler.proxy.config import get_config
    cfg = get_config()
    return (args.proxy_url or f"http://{cfg.proxy_host}:{cfg.proxy_port}").rstrip("/")


def _run_chat(args) -> None:
    """Stream one assistant reply to the terminal."""
    import asyncio
    import httpx
    from chronicler.logger import setup_logging
    from chronicler.proxy.pricing import format_tokens

    setup_logging(console=False)

    D = "\033[2m"    # dim
    R = "\033[31m"   # red
    Y = "\033[33m"   # yellow
    X = "\033[0m"    # reset

    async def chat() -> int:
        payload = {
            "campaign_id": args.campaign,
            "message": args.message,
            "context_type": args.context,
            "stream": True,
        }
        exit_code = 0
        async with httpx.AsyncClient(timeout=None) as client:
            async with client.stream("POST", f"{_proxy_url(args)}/api/chat", json=payload) as resp:
                if resp.status_code != 200:
                    body = await resp.aread()
                    print(f"{R}Proxy error {resp.status_code}: {body.decode(errors='replace')}{X}", file=sys.stderr)
                    return 1

                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    event = json.loads(line[5:].strip())
                    kind = event.get("type")
                    if kind == "text":
                        print(event.get("content", ""), end="", flush=True)
                    elif kind == "tool_start" and event.get("category") == "read":
                        tool_input = event.get("tool_input") or {}
                        flavor = tool_input.get("flavor") if isinstance(tool_input, dict) else None
                        print(f"\n{D}· {flavor or event.get('content')}{X}", flush=True)
                    elif kind == "proposal":
                        print(f"\n{Y}Proposal {event.get('id')} ({event.get('kind')}) awaiting review{X}")
                    elif kind == "limit":
                        print(f"\n{Y}{event.get('message')}{X}")
                    elif kind == "error":
                        print(f"\n{R}{event.get('message')}{X}", file=sys.stderr)
                        exit_code = 1
                    elif kind == "done":
                        usage = event.get("usage") or {}
                        print(
                            f"\n{D}[{event.get('model')}] {event.get('iterations')} iterations, "
                            f"{format_tokens(usage.get('input_tokens', 0))} in / "
                            f"{format_tokens(usage.get('output_tokens', 0))} out{X}"
                        )
        return exit_code

    try:
        code = asyncio.run(chat())
    except httpx.HTTPError as e:
        print(f"{R}Cannot reach proxy at {_proxy_url(args)}: {e}{X}", file=sys.stderr)
        code = 1
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


def _run_status(args) -> None:
    """Check status of all services."""
    import asyncio
    import httpx

    async def check():
        from chronicler.proxy.config import get_config
        cfg = get_config()

        G = "\033[32m"   # green
        R = "\033[31m"   # red
        C = "\033[36m"   # cyan
        B = "\033[1m"    # bold
        D = "\033[2m"    # dim
        X = "\033[0m"    # reset
        ON = f"{G}● online{X}"
        OFF = f"{R}● offline{X}"

        tiers = {"fast": cfg.model_fast, "balanced": cfg.model_balanced, "quality": cfg.model_quality}

        # ── Ollama ──
        ollama_status = OFF
        model_names: list[str] = []
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{cfg.ollama_url}/api/tags")
                model_names = [m["name"] for m in resp.json().get("models", [])]
                ollama_status = ON
        except (httpx.HTTPError, ValueError):
            pass

        print()
        print(f"  {C}Chronicler status{X}")
        print()
        print(f"  {B}Ollama{X}        {ollama_status}")
        print(f"  {D}Endpoint:{X}     {cfg.ollama_url}")
        for tier, model in tiers.items():
            marker = f"{G}✓{X}" if model in model_names else f"{R}✗{X}" if model_names else " "
            pref = " (preferred)" if tier == cfg.model_preference else ""
            print(f"  {D}{tier.capitalize() + ':':<13}{X} {marker} {model}{pref}")

        # ── Proxy ──
        proxy_status = OFF
        sessions = []
        proxy_url = f"http://{cfg.proxy_host}:{cfg.proxy_port}"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{proxy_url}/api/status")
                sessions = resp.json().get("sessions", [])
                proxy_status = ON
        except (httpx.HTTPError, ValueError):
            pass

        print()
        print(f"  {B}Proxy{X}         {proxy_status}")
        print(f"  {D}Endpoint:{X}     {proxy_url}")
        if sessions:
            print(f"  {D}Sessions:{X}     {len(sessions)} open, {sum(1 for s in sessions if s.get('running'))} running")

        # ── Entities ──
        print()
        print(f"  {B}Entities{X}      {cfg.entities_api_url or 'in-memory store'}")
        print(f"  {D}Data dir:{X}     {cfg.data_path}")
        print()

    asyncio.run(check())


if __name__ == "__main__":
    main()
