"""CLI entrypoint for keyshare."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import urllib.error

from .advertise import browse_services, compute_share_name
from .constants import DEFAULT_RESTART_DELAY_S, HKP_ANY_PORT, HKP_DEFAULT_PORT, SUPPORTED_LOOKUP_OPS
from .daemon import SharingConfig, SharingService
from .transport_http import send_lookup
from .utils import resolve_display_name

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="keyshare", description="Share public keys over HKP on the local network")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Share the keyring until interrupted")
    serve.add_argument("--host", default="", help="Listen address (default: all interfaces)")
    serve.add_argument(
        "--port",
        type=int,
        default=HKP_ANY_PORT,
        help=f"Listen port; 0 picks a free one, {HKP_DEFAULT_PORT} is the conventional HKP port",
    )
    serve.add_argument("--gnupg-home", help="GnuPG home directory (default: GNUPGHOME or ~/.gnupg)")
    serve.add_argument("--gpg-binary", default="gpg")
    serve.add_argument("--no-advertise", action="store_true", help="Do not publish the service over mDNS")
    serve.add_argument("--share-name", help="Name to advertise instead of the user's real name")
    serve.add_argument("--restart-delay", type=float, default=DEFAULT_RESTART_DELAY_S)
    serve.set_defaults(func=_cmd_serve)

    lookup = subparsers.add_parser("lookup", help="Query an HKP key server")
    lookup.add_argument("--url", required=True, help="Server base URL, e.g. http://host:11371")
    lookup.add_argument("--op", default="index", choices=sorted(SUPPORTED_LOOKUP_OPS))
    lookup.add_argument("--search", required=True)
    lookup.add_argument("--fingerprint", action="store_true", help="Include fingerprints in index output")
    lookup.add_argument("--timeout", type=float, default=10.0)
    lookup.set_defaults(func=_cmd_lookup)

    browse = subparsers.add_parser("browse", help="List key shares announced on the local network")
    browse.add_argument("--timeout", type=float, default=3.0, help="Seconds to listen for announcements")
    browse.set_defaults(func=_cmd_browse)

    share_name = subparsers.add_parser("share-name", help="Print the name this host would advertise")
    share_name.add_argument("--share-name", help="Override the user's real name")
    share_name.set_defaults(func=_cmd_share_name)

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)
    return int(args.func(args))


def _cmd_serve(args: argparse.Namespace) -> int:
    config = SharingConfig(
        host=args.host,
        port=args.port,
        gnupg_home=args.gnupg_home,
        gpg_binary=args.gpg_binary,
        advertise=not args.no_advertise,
        share_name=args.share_name,
        restart_delay_s=args.restart_delay,
    )
    service = SharingService(config, on_error=_print_notification)
    if not service.start_sharing():
        return 2

    print(f"serving on {service.url}/pks/lookup")
    if service.share_name:
        print(f"advertising as {service.share_name!r}")

    stop_event = threading.Event()

    def _request_stop(signum: int, frame: object) -> None:
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    service.serve_until(stop_event)
    return 0


def _cmd_lookup(args: argparse.Namespace) -> int:
    try:
        status, body = send_lookup(
            args.url,
            args.op,
            args.search,
            fingerprint=args.fingerprint,
            timeout=args.timeout,
        )
    except (urllib.error.URLError, OSError, ValueError) as exc:
        print(f"failed to query {args.url}: {exc}", file=sys.stderr)
        return 2

    print(body)
    return 0 if status == 200 else 1


def _cmd_browse(args: argparse.Namespace) -> int:
    try:
        services = browse_services(args.timeout)
    except OSError as exc:
        print(f"failed to browse the local network: {exc}", file=sys.stderr)
        return 2

    if not services:
        print("no key shares found")
        return 0
    for service in services:
        print(f"{service.name}\t{service.url}")
    return 0


def _cmd_share_name(args: argparse.Namespace) -> int:
    print(compute_share_name(args.share_name or resolve_display_name()))
    return 0


def _print_notification(heading: str, message: str) -> None:
    print(f"{heading}: {message}", file=sys.stderr)


if __name__ == "__main__":
    raise SystemExit(main())
