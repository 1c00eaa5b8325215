#!/usr/bin/env python3
"""
Storegate -- operator CLI for the trust and policy layer.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py enforce-subscriptions
  python main.py enforce-subscriptions --vendor VENDOR_ID
  python main.py resolve shop.example.com
  python main.py go-live VENDOR_ID
  python main.py promo-costs VENDOR_ID --start 2026-01-01 --end 2026-01-31
  python main.py go-live VENDOR_ID --json

enforce-subscriptions is meant to be run by an external scheduler (cron,
systemd timer). It exits 1 if any vendor was demoted so the scheduler can
alert on it.

Environment variables (see core/config.py for the full list):
  DATABASE_URL           SQLAlchemy URL shared by every store.
  STORE_TIMEOUT_SECONDS  Upper bound for each database wait.
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from typing import Optional

from auth.audit import AuditLog
from core.config import get_settings
from core.db import as_utc, parse_iso, utcnow
from enforcement.engine import EnforcementEngine
from enforcement.store import CommerceStore
from tenancy.resolver import DomainResolver
from tenancy.store import SiteStore

logger = logging.getLogger("storegate.cli")


def _parse_date(value: str) -> datetime:
    """Accept a date or a full ISO 8601 timestamp. Naive values are UTC."""
    dt = parse_iso(value)
    if dt is None:
        raise argparse.ArgumentTypeError(f"'{value}' is not an ISO 8601 date or timestamp")
    return as_utc(dt)


def _engine() -> EnforcementEngine:
    settings = get_settings()
    return EnforcementEngine(
        CommerceStore(settings.database_url, settings.store_timeout_seconds),
        audit=AuditLog(settings.database_url, settings.store_timeout_seconds),
    )


def _emit(payload: dict, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, default=str))
        return
    for key, value in payload.items():
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value) or "-"
        print(f"  {key:<24} {value}")


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def cmd_enforce_subscriptions(args: argparse.Namespace) -> int:
    engine = _engine()
    if args.vendor:
        results = {args.vendor: engine.enforce_vendor_subscription(args.vendor)}
    else:
        results = engine.enforce_all_subscriptions()

    demoted = [vendor_id for vendor_id, ok in results.items() if not ok]
    if args.json:
        _emit({"checked": len(results), "demoted": demoted}, True)
    else:
        print(f"  Checked {len(results)} vendor(s), {len(demoted)} demoted.")
        for vendor_id in demoted:
            print(f"  [!] {vendor_id}: no current subscription, products archived")
    return 1 if demoted else 0


def cmd_resolve(args: argparse.Namespace) -> int:
    settings = get_settings()
    resolver = DomainResolver(SiteStore(settings.database_url, settings.store_timeout_seconds))
    site = resolver.resolve(args.domain)
    if site is None:
        print(f"  [!] No active site is registered for '{args.domain}'.")
        return 1
    _emit(
        {
            "site_id": site.site_id,
            "site_name": site.site_name,
            "site_slug": site.site_slug,
            "domain": site.domain,
            "is_primary": site.is_primary,
            "domains": resolver.list_domains(site.site_id),
        },
        args.json,
    )
    return 0


def cmd_go_live(args: argparse.Namespace) -> int:
    status = _engine().vendor_go_live_status(args.vendor_id)
    _emit(
        {
            "vendor_id": args.vendor_id,
            "can_go_live": status.can_go_live,
            "is_approved": status.is_approved,
            "has_active_subscription": status.has_active_subscription,
            "has_signed_agreement": status.has_signed_agreement,
            "blockers": status.blockers,
        },
        args.json,
    )
    return 0 if status.can_go_live else 1


def cmd_promo_costs(args: argparse.Namespace) -> int:
    end: Optional[datetime] = args.end or utcnow()
    if end < args.start:
        print("  [!] --end must not be before --start.")
        return 2
    total = _engine().vendor_promo_costs(args.vendor_id, args.start, end)
    _emit(
        {
            "vendor_id": args.vendor_id,
            "start": args.start.isoformat(),
            "end": end.isoformat(),
            "total_vendor_cost": str(total),
        },
        args.json,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="storegate",
        description="Tenant resolution, authentication and catalog enforcement for multi-site storefronts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  python main.py enforce-subscriptions
  python main.py resolve Shop.Example.com:8443
  python main.py go-live 6f1c... --json
  python main.py promo-costs 6f1c... --start 2026-01-01 --end 2026-02-01
        """,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Output structured JSON")
    common.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level to stderr")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", parents=[common], help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    serve.set_defaults(func=cmd_serve)

    enforce = sub.add_parser(
        "enforce-subscriptions", parents=[common], help="Expire lapsed subscriptions and archive products"
    )
    enforce.add_argument("--vendor", metavar="VENDOR_ID", help="Check a single vendor instead of all")
    enforce.set_defaults(func=cmd_enforce_subscriptions)

    resolve = sub.add_parser("resolve", parents=[common], help="Show the site a domain resolves to")
    resolve.add_argument("domain", metavar="DOMAIN")
    resolve.set_defaults(func=cmd_resolve)

    go_live = sub.add_parser("go-live", parents=[common], help="Show a vendor's go-live status and blockers")
    go_live.add_argument("vendor_id", metavar="VENDOR_ID")
    go_live.set_defaults(func=cmd_go_live)

    costs = sub.add_parser("promo-costs", parents=[common], help="Sum vendor-funded promotion costs in a window")
    costs.add_argument("vendor_id", metavar="VENDOR_ID")
    costs.add_argument("--start", type=_parse_date, required=True, metavar="DATE")
    costs.add_argument("--end", type=_parse_date, default=None, metavar="DATE", help="Default: now")
    costs.set_defaults(func=cmd_promo_costs)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Running %s", args.command)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
