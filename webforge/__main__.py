#!/usr/bin/env python3
"""
webforge CLI

    webforge serve                      WebSocket service for the desktop UI
    webforge run PROJECT "PROMPT"       one prompt → parse → apply cycle
    webforge fix PROJECT [--route /x]   bounded auto-fix loop against the preview
    webforge preview PROJECT            start the dev server and keep it running
    webforge repair PROJECT             run the repair pass only
"""
import argparse, asyncio, json, logging, sys

from . import __version__, config


def setup_logging(verbose: bool = False):
    handlers = [logging.StreamHandler(sys.stdout)]
    try:
        config.LOGS_DIR.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.LOGS_DIR / "webforge.log", encoding="utf-8"))
    except OSError as e:
        print(f"⚠ file logging disabled: {e}", file=sys.stderr)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )


def _print(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _run(args) -> int:
    from .pipeline import Pipeline
    pipeline = Pipeline()
    res = await pipeline.run_prompt_and_apply(args.project, args.prompt,
                                              require_changes=True if args.require else None)
    if res.reply:
        print(res.reply)
    if args.json:
        _print(res.to_dict())
    elif res.error:
        _print(res.error)
    return 1 if res.error else 0


async def _fix(args) -> int:
    from .pipeline import Pipeline
    pipeline = Pipeline()
    try:
        await pipeline.start_preview(args.project)
        res = await pipeline.auto_fix(args.project, route=args.route)
        _print(res.to_dict())
        return 0 if res.ok else 1
    finally:
        await pipeline.shutdown()


async def _preview(args) -> int:
    from .preview import PreviewState, PreviewSupervisor
    sup = PreviewSupervisor()
    try:
        st = await sup.start(args.project, port=args.port, auto_install_deps=not args.no_install)
        _print(st.to_dict())
        if st.state != PreviewState.RUNNING:
            return 1
        print(f"🌐 {st.url}  (Ctrl+C to stop)")
        while sup.status(args.project).state == PreviewState.RUNNING:
            await asyncio.sleep(1)
        _print(sup.status(args.project).to_dict())
        return 0
    finally:
        await sup.stop_all()


def _repair(args) -> int:
    from .repair import repair_project
    res = repair_project(args.project, log_line=print)
    _print({"reinstall_needed": res.reinstall_needed, "changes": res.changes})
    return 0


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(prog="webforge", description="Prompt-driven Next.js editing with a self-healing preview.")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    ap.add_argument("--version", action="version", version=f"webforge {__version__}")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("serve", help="run the WebSocket service")
    p.add_argument("--host", default=config.WS_HOST)
    p.add_argument("--port", type=int, default=config.WS_PORT)

    p = sub.add_parser("run", help="send one prompt and apply the reply")
    p.add_argument("project")
    p.add_argument("prompt")
    p.add_argument("--require", action="store_true", help="insist on file changes")
    p.add_argument("--json", action="store_true", help="print the full result")

    p = sub.add_parser("fix", help="start the preview and auto-fix it")
    p.add_argument("project")
    p.add_argument("--route", default="/")

    p = sub.add_parser("preview", help="start the dev server")
    p.add_argument("project")
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--no-install", action="store_true")

    p = sub.add_parser("repair", help="run the repair pass only")
    p.add_argument("project")

    args = ap.parse_args(argv)
    setup_logging(args.verbose)

    try:
        if args.cmd == "serve":
            from .server import serve
            asyncio.run(serve(args.host, args.port))
            return 0
        if args.cmd == "repair":
            return _repair(args)
        return asyncio.run({"run": _run, "fix": _fix, "preview": _preview}[args.cmd](args))
    except KeyboardInterrupt:
        print("\n⛔ Stopped.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
