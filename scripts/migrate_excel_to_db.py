from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from catalogo.db import create_engine_from_url, init_db, make_session_factory
from catalogo.excel_import import ExcelImporter
from catalogo.logging_setup import configure_logging
from catalogo.reconciler import CatalogReconciler, MigrationSummary
from catalogo.settings import Settings


def main() -> int:
    settings = Settings()
    settings.ensure_instance()
    configure_logging(settings)

    engine = create_engine_from_url(settings.DATABASE_URL)
    init_db(engine)
    sf = make_session_factory(engine)

    xlsx = Path(sys.argv[1] if len(sys.argv) > 1 else settings.EXCEL_IMPORT_PATH)
    if not xlsx.is_absolute():
        xlsx = (ROOT / xlsx).resolve()

    rows = ExcelImporter(xlsx).read_rows()
    results = CatalogReconciler(sf).run_migration(rows)
    summary = MigrationSummary.from_results(results)

    print(
        "rows", summary.total,
        "created", summary.created,
        "updated", summary.updated,
        "skipped", summary.skipped,
        "errors", summary.errors,
    )
    return 0 if summary.errors == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
