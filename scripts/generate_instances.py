#!/usr/bin/env python3
"""Nightly job: materialize upcoming class instances for one tenant."""

from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional, Sequence

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from classbook.domain.models import GenerationReport
from classbook.repository.data_repository import DataRepository, StoreError
from classbook.services.instance_generator import GenerationError, InstanceGenerationService
from classbook.services.tenant_guard import TenantValidationError
from classbook.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--tenant", required=True, help="tenant id to generate for")
    parser.add_argument("--class-id", help="limit generation to one recurring class")
    parser.add_argument(
        "--horizon-weeks",
        type=int,
        default=None,
        help="how far ahead to generate (defaults to GENERATION_HORIZON_WEEKS)",
    )
    return parser


def _report_line(report: GenerationReport) -> str:
    line = (
        f"{report.class_id}: created={report.created} "
        f"skipped={report.skipped} errored={report.errored}"
    )
    if report.reason:
        line += f" ({report.reason})"
    return line


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.horizon_weeks is not None and args.horizon_weeks <= 0:
        print("--horizon-weeks must be positive", file=sys.stderr)
        return 2

    settings = get_settings()
    repository = DataRepository(settings)
    repository.initialize_database()
    service = InstanceGenerationService(repository=repository, settings=settings)
    horizon = timedelta(weeks=args.horizon_weeks) if args.horizon_weeks else None

    try:
        if args.class_id:
            reports = [service.generate_instances(args.tenant, args.class_id, horizon=horizon)]
        else:
            reports = service.generate_for_tenant(args.tenant, horizon=horizon).reports
    except (GenerationError, TenantValidationError, StoreError) as exc:
        print(f"[FAIL] {exc}", file=sys.stderr)
        return 1

    print(SEPARATOR_LINE)
    print(f"Tenant {args.tenant}: {len(reports)} class(es) processed")
    print(SEPARATOR_LINE)
    for report in reports:
        print(_report_line(report))
        for entry in report.entries:
            if entry.reason:
                print(f"  skipped entry {entry.day_of_week} {entry.start_time}: {entry.reason}")
    print(SEPARATOR_LINE)

    errored = sum(report.errored for report in reports)
    print(
        f"created={sum(r.created for r in reports)} "
        f"skipped={sum(r.skipped for r in reports)} errored={errored}"
    )
    return 1 if errored else 0


if __name__ == "__main__":
    sys.exit(main())
