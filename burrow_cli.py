from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from app.container import build_container
from app.logging_setup import configure_logging
from app.settings import build_settings
from helpers.launch_args import param_type_for
from interfaces.backend.records import DownloadAsset, InstallOptions
from interfaces.events.sink import EventType
from services.errors import BurrowError, DownloadAborted
from services.release_catalog import ReleaseCatalog, ReleaseInfo

logger = logging.getLogger(__name__)

FRONTEND_KEY = "frontendPreference"

_PLATFORM_HINTS = {"win32": ".exe", "darwin": "mac", "linux": "linux"}


def pick_asset(release: ReleaseInfo, name: Optional[str] = None) -> Optional[DownloadAsset]:
    if name:
        return next((a for a in release.assets if a.name == name), None)
    hint = _PLATFORM_HINTS.get(sys.platform, "linux")
    candidates = [a for a in release.assets if hint in a.name.lower()]
    # the plain build has the shortest name (no -cuda12, -rocm, ... suffix)
    return min(candidates, key=lambda a: len(a.name)) if candidates else None


def strip_separator(args: list[str]) -> list[str]:
    """Drop the `--` that ends burrow's own options; later `--` tokens belong to the backend."""
    return args[1:] if args[:1] == ["--"] else list(args)


def _print_line(line) -> None:
    print(line, flush=True)


def cmd_backends(deps, args) -> int:
    registry = deps["registry"]
    current = registry.get_current()
    backends = registry.list_backends()
    if not backends:
        print("No backends installed.")
        return 0
    for b in backends:
        marker = "*" if current is not None and b.path == current.path else " "
        extra = f" (binary reports {b.actual_version})" if b.actual_version else ""
        print(f"{marker} {b.version:<12} {b.size_bytes / 1024 / 1024:8.1f} MB  {b.path}{extra}")
    return 0


def cmd_use(deps, args) -> int:
    if not deps["registry"].set_current(args.path):
        print(f"Backend not found: {args.path}", file=sys.stderr)
        return 1
    return 0


def cmd_remove(deps, args) -> int:
    result = deps["registry"].delete(args.path)
    if not result.success:
        print(result.error, file=sys.stderr)
        return 1
    return 0


def cmd_install_latest(deps, args) -> int:
    catalog: ReleaseCatalog = deps["catalog"]
    release = catalog.latest()
    if release is None:
        print("Could not fetch the latest release.", file=sys.stderr)
        return 1

    asset = pick_asset(release, args.asset)
    if asset is None:
        names = ", ".join(a.name for a in release.assets)
        print(f"No matching asset in {release.tag_name}. Available: {names}", file=sys.stderr)
        return 1

    installed = catalog.installed_asset_names(release, deps["registry"].list_backends())
    if asset.name in installed and not args.force:
        print(f"{asset.name} {release.version} is already installed.")
        return 0

    registry = deps["registry"]
    current = registry.get_current()
    options = InstallOptions(
        is_update=args.update,
        was_current=args.update and current is not None,
        old_backend_path=current.path if args.update and current is not None else None,
    )

    def _progress(percent: float) -> None:
        print(f"\rDownloading {asset.name}: {percent:5.1f}%", end="", flush=True)

    try:
        path = deps["installer"].install(asset, options, on_progress=_progress)
    except BurrowError as e:
        print(f"\n{e}", file=sys.stderr)
        return 1
    print(f"\nInstalled {asset.name} {release.version} at {path}")
    return 0


def cmd_resolve(deps, args) -> int:
    deps["events"].subscribe(EventType.BACKEND_OUTPUT, _print_line)
    try:
        print(deps["resolver"].resolve(args.url, param_type_for(args.param)))
    except DownloadAborted:
        return 130
    except BurrowError as e:
        print(e, file=sys.stderr)
        return 1
    return 0


def cmd_models(deps, args) -> int:
    for m in deps["resolver"].list_cached(param_type_for(args.param)):
        print(f"{m.author}/{m.model}/{m.filename}  {m.path}")
    return 0


def cmd_launch(deps, args) -> int:
    events = deps["events"]
    launcher = deps["launcher"]
    settings = deps["settings"]

    events.subscribe(EventType.BACKEND_OUTPUT, _print_line)
    events.subscribe(EventType.TUNNEL_URL_CHANGED, lambda url: url and print(f"Public URL: {url}", flush=True))
    events.subscribe(EventType.BACKEND_CRASHED, lambda info: print(f"Backend crashed: {info.message}", file=sys.stderr))

    frontend = args.frontend or settings.get(FRONTEND_KEY) or deps["cfg"].launcher.builtin_frontend
    backend_args = strip_separator(args.backend_args)

    try:
        result = launcher.launch(backend_args, frontend, pre_launch_commands=args.pre, tunnel=args.tunnel)
        if not result.success:
            if not result.aborted:
                print(f"Launch failed: {result.error}", file=sys.stderr)
            return 1
        print(f"Backend ready (pid {result.pid}), proxy at {deps['proxy'].url}", flush=True)
        session = launcher.session
        while session is not None and not session.wait_exit(0.5):
            pass
    except KeyboardInterrupt:
        print("\nStopping...", flush=True)
    finally:
        launcher.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="burrow", description="Install, select and launch local LLM backends")
    parser.add_argument("--debug", action="store_true", help="Verbose logging and unfiltered backend output")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("backends", help="List installed backends")
    p.set_defaults(func=cmd_backends)

    p = sub.add_parser("use", help="Select the current backend")
    p.add_argument("path", help="Launcher executable of an installed backend")
    p.set_defaults(func=cmd_use)

    p = sub.add_parser("remove", help="Delete an installed backend")
    p.add_argument("path", help="Launcher executable of an installed backend")
    p.set_defaults(func=cmd_remove)

    p = sub.add_parser("install-latest", help="Download and install the latest release")
    p.add_argument("--asset", help="Exact release asset name")
    p.add_argument("--update", action="store_true", help="Replace the current backend")
    p.add_argument("--force", action="store_true", help="Reinstall even if already present")
    p.set_defaults(func=cmd_install_latest)

    p = sub.add_parser("resolve", help="Download a model URL into the cache and print its path")
    p.add_argument("url")
    p.add_argument("--param", default="--model", help="Model flag the file is for (default: --model)")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("models", help="List cached models")
    p.add_argument("--param", default="--model")
    p.set_defaults(func=cmd_models)

    p = sub.add_parser("launch", help="Launch the current backend")
    p.add_argument("--tunnel", action="store_true", help="Expose the backend through a public tunnel")
    p.add_argument("--pre", action="append", default=[], metavar="CMD", help="Shell command to run before launch")
    p.add_argument("--frontend", help="Frontend preference (default: saved preference)")
    p.add_argument("backend_args", nargs=argparse.REMAINDER, help="Arguments passed to the backend after --")
    p.set_defaults(func=cmd_launch)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    app_cfg = build_settings(debug=args.debug or None)
    configure_logging(app_cfg.paths.log_dir, debug=app_cfg.launcher.debug_output)
    deps = build_container(app_cfg)
    return args.func(deps, args)


if __name__ == "__main__":
    sys.exit(main())
