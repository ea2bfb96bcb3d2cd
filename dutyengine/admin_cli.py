"""Administrative CLI: resolve, write and bulk-edit rate overrides.

Examples:
    python -m dutyengine.admin_cli resolve customs_duty IN --classification 8517
    python -m dutyengine.admin_cli set-rate customs_duty region:south_asia 0.12 --reason "Q3 review"
    python -m dutyengine.admin_cli bulk customs_duty increase_percent 10 IN NP PK --preview
    python -m dutyengine.admin_cli export-csv customs_duty --output rates.csv --tier country
    python -m dutyengine.admin_cli import-csv rates.csv --preview
"""

from __future__ import annotations

import argparse
import json
import logging
import re
from dataclasses import asdict
from typing import Any, Dict, Optional, Sequence

from .config import EngineSettings
from .engine import DutyEngine
from .errors import DutyEngineError
from .override_store import PostgresOverrideStore, RateOverride
from .rate_csv import RateImport
from .scopes import Tier, format_scope, parse_scope

LOGGER = logging.getLogger("dutyengine.admin_cli")

DSN_PASSWORD_RE = re.compile(r"(password\s*=\s*)(\S+)", re.IGNORECASE)


def redact_dsn(dsn: str) -> str:
    dsn = dsn.strip()
    if not dsn:
        return dsn
    if "://" in dsn:
        return re.sub(r"(?<=://)([^:@/]+):([^@/]+)@", r"\1:***@", dsn)
    return DSN_PASSWORD_RE.sub(r"\1***", dsn)


def build_engine(args: argparse.Namespace) -> DutyEngine:
    settings = EngineSettings.from_env()
    if args.dsn:
        settings = EngineSettings(**{**asdict(settings), "database_dsn": args.dsn})
    if settings.database_dsn:
        LOGGER.info("Connecting: %s", redact_dsn(settings.database_dsn))
    return DutyEngine.from_settings(settings)


def _override_to_dict(override: RateOverride) -> Dict[str, Any]:
    return {
        "override_id": override.override_id,
        "service_id": override.service_id,
        "scope": format_scope(override.scope),
        "rate": override.rate,
        "tier_label": override.tier_label,
        "source_label": override.source_label,
        "min_amount": override.min_amount,
        "max_amount": override.max_amount,
        "is_active": override.is_active,
        "effective_from": override.effective_from,
        "reason": override.reason,
    }


def _cmd_resolve(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    resolved = engine.resolve_rate(args.service, args.country, args.classification)
    return asdict(resolved)


def _cmd_set_rate(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    override = engine.set_rate(
        args.service,
        parse_scope(args.scope),
        args.rate,
        min_amount=args.min_amount,
        max_amount=args.max_amount,
        reason=args.reason,
    )
    return _override_to_dict(override)


def _cmd_deactivate(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    retired = engine.deactivate_rate(args.service, parse_scope(args.scope), args.reason)
    return {"deactivated": _override_to_dict(retired) if retired else None}


def _cmd_history(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    rows = engine.override_history(args.service, parse_scope(args.scope))
    return {"scope": args.scope, "rows": [_override_to_dict(row) for row in rows]}


def _cmd_scope(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    rows = engine.overrides_at_scope(parse_scope(args.scope))
    return {"scope": args.scope, "rows": [_override_to_dict(row) for row in rows]}


def _import_to_dict(batch: RateImport) -> Dict[str, Any]:
    return {
        "applied": batch.applied,
        "is_valid": batch.is_valid,
        "errors": list(batch.errors),
        "valid": batch.valid_count,
        "invalid": batch.invalid_count,
        "updated": batch.updated_count,
        "failed": batch.failed_count,
        "rows": [
            {
                "row": row.row_number,
                "service_key": row.service_key,
                "scope": format_scope(row.scope) if row.scope is not None else None,
                "rate": row.rate,
                "min_amount": row.min_amount,
                "max_amount": row.max_amount,
                "status": row.status.value,
                "errors": list(row.errors),
                "warnings": list(row.warnings),
                "override_id": row.override_id,
            }
            for row in batch.rows
        ],
    }


def _cmd_export_csv(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    tiers = [Tier(tier) for tier in args.tier] if args.tier else None
    with open(args.output, "w", newline="", encoding="utf-8") as f:
        written = engine.export_rates_csv(f, args.services or None, tiers)
    LOGGER.info("Wrote %s overrides to %s", written, args.output)
    return {"exported": written, "path": args.output}


def _cmd_import_csv(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    with open(args.path, newline="", encoding="utf-8") as f:
        if args.preview:
            batch = engine.validate_rates_csv(f)
        else:
            batch = engine.import_rates_csv(f)
    if batch.errors:
        LOGGER.error("CSV rejected: %s", "; ".join(batch.errors))
    else:
        LOGGER.info(
            "Done. valid=%s invalid=%s updated=%s failed=%s",
            batch.valid_count,
            batch.invalid_count,
            batch.updated_count,
            batch.failed_count,
        )
    return _import_to_dict(batch)


def _cmd_bulk(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    if args.preview:
        preview = engine.preview_bulk_operation(args.service, args.operation, args.countries, value=args.value)
        payload = asdict(preview)
        payload.update(
            min_change=preview.min_change,
            max_change=preview.max_change,
            avg_change=preview.avg_change,
        )
        return payload
    job = engine.apply_bulk_operation(
        args.service, args.operation, args.countries, value=args.value, reason=args.reason
    )
    LOGGER.info(
        "Done. updated=%s skipped=%s failed=%s",
        job.updated_count,
        job.skipped_count,
        job.failed_count,
    )
    return asdict(job)


def _cmd_impact(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    if args.volume is None or args.aov is None:
        impact = engine.estimate_from_history(args.current_rate, args.new_rate, args.countries)
    else:
        impact = engine.estimate_revenue_impact(
            args.current_rate,
            args.new_rate,
            args.countries,
            args.volume,
            args.aov,
            args.total_countries,
        )
    return asdict(impact)


def _cmd_matrix(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    return asdict(engine.build_pricing_matrix(args.service, args.countries or None))


def _cmd_flush_cache(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    scope = parse_scope(args.scope) if args.scope else None
    dropped = engine.invalidate_cache(args.service, scope)
    return {"invalidated": dropped}


def _cmd_init_db(engine: DutyEngine, args: argparse.Namespace) -> Dict[str, Any]:
    if not isinstance(engine.store, PostgresOverrideStore):
        raise SystemExit("init-db needs --dsn or DATABASE_DSN/POSTGRES_DSN/PG_DSN.")
    engine.store.ensure_schema()
    return {"schema": "ok"}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Administer duty and fee rate overrides.")
    parser.add_argument(
        "--dsn",
        default=None,
        help="Database DSN (or env DATABASE_DSN/POSTGRES_DSN/PG_DSN). Without one an empty in-memory store is used.",
    )
    parser.add_argument("--report", default=None, help="Write JSON output to this file path.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (INFO, DEBUG, ...).")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve the effective rate for a service and country.")
    resolve.add_argument("service")
    resolve.add_argument("country")
    resolve.add_argument("--classification", default=None)
    resolve.set_defaults(handler=_cmd_resolve)

    set_rate = sub.add_parser("set-rate", help="Supersede the override at a scope.")
    set_rate.add_argument("service")
    set_rate.add_argument("scope", help="global, continent:Asia, region:south_asia, country:IN, product:8517:IN")
    set_rate.add_argument("rate")
    set_rate.add_argument("--min-amount", default=None)
    set_rate.add_argument("--max-amount", default=None)
    set_rate.add_argument("--reason", default=None)
    set_rate.set_defaults(handler=_cmd_set_rate)

    deactivate = sub.add_parser("deactivate", help="Retire the active override at a scope.")
    deactivate.add_argument("service")
    deactivate.add_argument("scope")
    deactivate.add_argument("--reason", default=None)
    deactivate.set_defaults(handler=_cmd_deactivate)

    history = sub.add_parser("history", help="List every override row for a scope, newest first.")
    history.add_argument("service")
    history.add_argument("scope")
    history.set_defaults(handler=_cmd_history)

    scope = sub.add_parser("scope", help="List the active overrides of every service at one scope.")
    scope.add_argument("scope")
    scope.set_defaults(handler=_cmd_scope)

    export_csv = sub.add_parser("export-csv", help="Write active overrides to a CSV file.")
    export_csv.add_argument("services", nargs="*", help="Service keys to export; all services when omitted.")
    export_csv.add_argument("--output", required=True, help="CSV file path to write.")
    export_csv.add_argument(
        "--tier",
        action="append",
        choices=[tier.value for tier in Tier],
        help="Only export overrides at this tier; repeatable.",
    )
    export_csv.set_defaults(handler=_cmd_export_csv)

    import_csv = sub.add_parser("import-csv", help="Validate and apply rate overrides from a CSV file.")
    import_csv.add_argument("path")
    import_csv.add_argument("--preview", action="store_true", help="Validate rows without writing.")
    import_csv.set_defaults(handler=_cmd_import_csv)

    bulk = sub.add_parser("bulk", help="Apply a bulk operation to several countries.")
    bulk.add_argument("service")
    bulk.add_argument(
        "operation",
        choices=[
            "set_rate",
            "increase_percent",
            "decrease_percent",
            "increase_amount",
            "decrease_amount",
            "set_minimum",
            "set_maximum",
        ],
    )
    bulk.add_argument("value")
    bulk.add_argument("countries", nargs="+")
    bulk.add_argument("--reason", default=None)
    bulk.add_argument("--preview", action="store_true", help="Compute new rates without writing.")
    bulk.set_defaults(handler=_cmd_bulk)

    impact = sub.add_parser("impact", help="Estimate revenue impact of a rate change.")
    impact.add_argument("current_rate")
    impact.add_argument("new_rate")
    impact.add_argument("countries", nargs="+")
    impact.add_argument("--volume", default=None, help="Historical order volume; omit to use DUTY_VOLUME_ENDPOINT.")
    impact.add_argument("--aov", default=None, help="Historical average order value.")
    impact.add_argument("--total-countries", type=int, default=None)
    impact.set_defaults(handler=_cmd_impact)

    matrix = sub.add_parser("matrix", help="Show the per-country pricing matrix for a service.")
    matrix.add_argument("service")
    matrix.add_argument("countries", nargs="*")
    matrix.set_defaults(handler=_cmd_matrix)

    flush = sub.add_parser("flush-cache", help="Invalidate cached calculations.")
    flush.add_argument("--service", default=None)
    flush.add_argument("--scope", default=None)
    flush.set_defaults(handler=_cmd_flush_cache)

    init_db = sub.add_parser("init-db", help="Create the override tables if missing.")
    init_db.set_defaults(handler=_cmd_init_db)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "flush-cache" and args.scope and not args.service:
        raise SystemExit("--scope needs --service.")

    engine = build_engine(args)
    try:
        result = args.handler(engine, args)
    except (DutyEngineError, RuntimeError, OSError) as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        return 1

    if args.report:
        with open(args.report, "w", encoding="utf-8") as f:
            json.dump(result, f, ensure_ascii=False, indent=2, default=str)
        LOGGER.info("Wrote report: %s", args.report)
    else:
        print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
