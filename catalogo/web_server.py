from __future__ import annotations

import logging
import tempfile
from io import BytesIO
from pathlib import Path

from flask import Flask, Response, jsonify, request, send_file

from catalogo.db import session_scope
from catalogo.errors import BulkAssociationAborted, FeedError
from catalogo.excel_export import build_template, workbook_bytes
from catalogo.excel_import import SUPPORTED_EXTENSIONS, ExcelImporter
from catalogo.reconciler import CatalogReconciler, MigrationSummary
from catalogo.repos import PlanRepo, ProductRepo
from catalogo.services import PlanAssociationService
from catalogo.settings import Settings

logger = logging.getLogger(__name__)

TEMPLATE_FILENAME = "plantilla_productos.xlsx"
XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _product_json(p) -> dict:
    return {
        "id": int(p.id),
        "description": p.description,
        "code": p.code,
        "price": float(p.price or 0),
        "category_id": p.category_id,
        "brand_id": p.brand_id,
        "active": bool(p.active),
        "applies_to_all_plans": bool(p.applies_to_all_plans),
        "offer_price": float(p.offer_price) if p.offer_price is not None else None,
        "discount_percent": float(p.discount_percent) if p.discount_percent is not None else None,
        "valid_from": p.valid_from,
        "valid_to": p.valid_to,
    }


def _plan_json(p) -> dict:
    return {
        "id": int(p.id),
        "name": p.name,
        "installments": int(p.installments),
        "active": bool(p.active),
    }


def create_app(session_factory, settings: Settings) -> Flask:
    uploads_dir = settings.uploads_path
    uploads_dir.mkdir(parents=True, exist_ok=True)

    reconciler = CatalogReconciler(session_factory)
    associations = PlanAssociationService(session_factory, settings)

    app = Flask(__name__, static_folder=None)

    def _ok(payload):
        return jsonify(payload)

    def _save_upload() -> Path:
        f = request.files.get("file")
        if f is None or not f.filename:
            raise FeedError("Archivo inválido")
        ext = Path(f.filename).suffix.lower()
        if ext not in SUPPORTED_EXTENSIONS:
            raise FeedError(f"Formato no soportado: {ext or '?'} (use .xlsx o .xlsm)")
        # One file per request.
        with tempfile.NamedTemporaryFile(dir=uploads_dir, prefix="_upload_", suffix=ext, delete=False) as fh:
            tmp = Path(fh.name).resolve()
        f.save(tmp)
        return tmp

    @app.get("/health")
    def health() -> Response:
        return jsonify({"ok": True, "app": settings.APP_NAME})

    @app.get("/api/products")
    def api_products():
        q = request.args.get("q", "")
        try:
            limit = int(request.args.get("limit", "300"))
        except ValueError:
            return _ok({"ok": False, "error": "Parámetro 'limit' inválido"})
        with session_scope(session_factory) as session:
            rows = [_product_json(p) for p in ProductRepo(session).list(q, limit)]
        return _ok(rows)

    @app.get("/api/plans")
    def api_plans():
        active_only = request.args.get("active", "").strip().lower() in ("1", "true", "yes")
        with session_scope(session_factory) as session:
            rows = [_plan_json(p) for p in PlanRepo(session).list(active_only=active_only)]
        return _ok(rows)

    @app.get("/api/migration/template")
    def api_migration_template():
        data = workbook_bytes(build_template())
        return send_file(
            BytesIO(data),
            mimetype=XLSX_MIMETYPE,
            as_attachment=True,
            download_name=TEMPLATE_FILENAME,
        )

    @app.post("/api/migration/preview")
    def api_migration_preview():
        tmp = None
        try:
            tmp = _save_upload()
            rows = ExcelImporter(tmp).preview(limit=5)
            return _ok({"ok": True, "rows": [r.as_dict() for r in rows]})
        except FeedError as e:
            return _ok({"ok": False, "error": e.message})
        finally:
            if tmp is not None:
                tmp.unlink(missing_ok=True)

    @app.post("/api/migration/run")
    def api_migration_run():
        tmp = None
        try:
            tmp = _save_upload()
            rows = ExcelImporter(tmp).read_rows()
        except FeedError as e:
            return _ok({"ok": False, "error": e.message})
        finally:
            if tmp is not None:
                tmp.unlink(missing_ok=True)

        if not rows:
            return _ok({"ok": False, "error": "No se encontraron productos en el archivo"})

        results = reconciler.run_migration(rows)
        summary = MigrationSummary.from_results(results)
        return _ok(
            {
                "ok": True,
                "summary": summary.as_dict(),
                "results": [r.as_dict() for r in results],
            }
        )

    @app.post("/api/plans/<int:plan_id>/associate-all")
    def api_plan_associate_all(plan_id: int):
        try:
            res = associations.bulk_associate_all_products_to_plan(plan_id)
        except BulkAssociationAborted as e:
            return _ok(
                {"ok": False, "error": e.message, "added": e.added, "skipped": e.skipped, "errors": e.errors}
            )
        return _ok({"ok": True, **res.as_dict()})

    @app.post("/api/plans/<int:plan_id>/active")
    def api_plan_set_active(plan_id: int):
        data = request.get_json(silent=True) or {}
        if "active" not in data:
            return _ok({"ok": False, "error": "Falta el campo 'active'"})
        res = associations.set_plan_active(plan_id, bool(data.get("active")))
        return _ok(
            {"ok": res.ok, "error": res.error, "plan_id": res.plan_id, "active": res.active, "synced": res.synced}
        )

    return app
