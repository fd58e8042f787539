from __future__ import annotations

import argparse
import sys
from pathlib import Path

from catalogo.db import create_engine_from_url, init_db, make_session_factory
from catalogo.errors import BulkAssociationAborted, FeedError
from catalogo.excel_export import export_results, write_template
from catalogo.excel_import import ExcelImporter
from catalogo.logging_setup import configure_logging
from catalogo.reconciler import CatalogReconciler, MigrationSummary
from catalogo.services import PlanAssociationService
from catalogo.settings import Settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sur Importaciones - catálogo de productos")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("migrate", help="Migrate products from an Excel feed")
    p.add_argument("file", nargs="?", help="Excel file (.xlsx/.xlsm); defaults to EXCEL_IMPORT_PATH")
    p.add_argument("--report", help="Write the per-row results to this .xlsx file")

    p = sub.add_parser("preview", help="Show the first parsed rows of an Excel feed")
    p.add_argument("file")
    p.add_argument("--limit", type=int, default=5)

    p = sub.add_parser("template", help="Write the example Excel template")
    p.add_argument("out", nargs="?", default="plantilla_productos.xlsx")

    p = sub.add_parser("associate-plan", help="Associate every product to a financing plan")
    p.add_argument("plan_id", type=int)

    sub.add_parser("init-db", help="Create the database tables")
    return parser


def _print_progress(processed: int, total: int) -> None:
    print(f"\r{processed}/{total}", end="", file=sys.stderr, flush=True)
    if processed == total:
        print(file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    settings = Settings()
    configure_logging(settings)

    if args.command == "template":
        out = write_template(Path(args.out))
        print("template", out)
        return 0

    if args.command == "preview":
        try:
            rows = ExcelImporter(Path(args.file)).preview(limit=args.limit)
        except FeedError as e:
            print("error:", e.message, file=sys.stderr)
            return 1
        for r in rows:
            print(r.as_dict())
        return 0

    settings.ensure_instance()
    engine = create_engine_from_url(settings.DATABASE_URL)
    init_db(engine)
    session_factory = make_session_factory(engine)

    if args.command == "init-db":
        print("OK: database ready", settings.DATABASE_URL)
        return 0

    if args.command == "associate-plan":
        service = PlanAssociationService(session_factory, settings)
        try:
            res = service.bulk_associate_all_products_to_plan(args.plan_id)
        except BulkAssociationAborted as e:
            print("error:", e.message, f"(asociados: {e.added}, omitidos: {e.skipped})", file=sys.stderr)
            return 1
        print("added", res.added, "skipped", res.skipped, "errors", res.errors)
        return 0

    xlsx = Path(args.file or settings.EXCEL_IMPORT_PATH)
    try:
        rows = ExcelImporter(xlsx).read_rows()
    except FeedError as e:
        print("error:", e.message, file=sys.stderr)
        return 1

    results = CatalogReconciler(session_factory).run_migration(rows, on_progress=_print_progress)
    for r in results:
        print(f"{r.row}\t{r.status}\t{r.description}\t{r.message}")

    if args.report:
        export_results(xlsx_path=Path(args.report), results=results)

    summary = MigrationSummary.from_results(results)
    print(
        "created", summary.created,
        "updated", summary.updated,
        "skipped", summary.skipped,
        "errors", summary.errors,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
