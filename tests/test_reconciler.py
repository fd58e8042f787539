from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

import catalogo.reconciler as reconciler_module
from catalogo.db import session_scope
from catalogo.excel_export import write_template
from catalogo.excel_import import ExcelImporter, FeedRow
from catalogo.models import PlanAssociation, Product
from catalogo.reconciler import (
    ACTION_CREATE,
    ACTION_SKIP_BY_DESCRIPTION,
    ACTION_UPDATE_BY_CODE,
    CREATED,
    ERROR,
    SKIPPED,
    UPDATED,
    CatalogSnapshot,
    MigrationSummary,
    NamedRef,
    ProductRef,
    diff_product,
    resolve_action,
)
from catalogo.repos import BrandRepo, CategoryRepo, LineRepo, PlanAssociationRepo, ProductRepo


def feed_row(**overrides) -> FeedRow:
    values = dict(
        description="Mouse X",
        price=5000.0,
        code="12345",
        category="Accesorios",
        brand="Logitech",
        line="Tech",
    )
    values.update(overrides)
    return FeedRow(**values)


def _db_down(*_args, **_kwargs):
    raise OperationalError("INSERT", {}, Exception("database is locked"))


# --- Pure helpers -------------------------------------------------------------


class TestResolveAction:
    def setup_method(self):
        self.snapshot = CatalogSnapshot(
            products=[
                ProductRef(id=1, description="Notebook HP", price=Decimal("150000.00"), code="NB-1"),
                ProductRef(id=2, description="Mouse Genius", price=Decimal("3000.00")),
            ]
        )

    def test_code_match_is_case_insensitive(self):
        action, existing = resolve_action(feed_row(description="Otra cosa", code=" nb-1 "), self.snapshot)
        assert action == ACTION_UPDATE_BY_CODE
        assert existing.id == 1

    def test_code_wins_over_description(self):
        action, existing = resolve_action(feed_row(description="Mouse Genius", code="NB-1"), self.snapshot)
        assert action == ACTION_UPDATE_BY_CODE
        assert existing.id == 1

    def test_unknown_code_falls_back_to_description(self):
        action, existing = resolve_action(feed_row(description="  MOUSE genius ", code="ZZZ"), self.snapshot)
        assert action == ACTION_SKIP_BY_DESCRIPTION
        assert existing.id == 2

    def test_no_match_creates(self):
        action, existing = resolve_action(feed_row(description="Teclado", code=None), self.snapshot)
        assert action == ACTION_CREATE
        assert existing is None


class TestDiffProduct:
    existing = ProductRef(
        id=7,
        description="Mouse X",
        price=Decimal("100.00"),
        code="M-1",
        category_id=3,
        offer_price=Decimal("90.00"),
    )

    def test_price_within_a_cent_is_not_a_change(self):
        row = feed_row(code="M-1", price=100.004, offer_price=90.0)
        assert diff_product(self.existing, row, 3) == []

    def test_only_changed_fields_are_reported(self):
        row = feed_row(code="M-1", price=100.02, offer_price=90.0, valid_to="2025-12-31")
        changes = diff_product(self.existing, row, 3)
        assert [c.field for c in changes] == ["price", "valid_to"]
        assert [c.describe() for c in changes] == ["price: 100.00 → 100.02", "valid_to: - → 2025-12-31"]

    def test_description_compared_after_trimming(self):
        row = feed_row(description="  Mouse X  ", code="M-1", price=100.0, offer_price=90.0)
        assert diff_product(self.existing, row, 3) == []

    def test_clearing_offer_and_moving_category(self):
        row = feed_row(code="M-1", price=100.0)
        changes = diff_product(self.existing, row, 4)
        assert [c.field for c in changes] == ["category_id", "offer_price"]


def test_summary_counts():
    results = [
        reconciler_module.RowResult(row=2, description="a", status=CREATED, message=""),
        reconciler_module.RowResult(row=3, description="b", status=SKIPPED, message=""),
        reconciler_module.RowResult(row=4, description="c", status=ERROR, message=""),
        reconciler_module.RowResult(row=5, description="d", status=SKIPPED, message=""),
    ]
    summary = MigrationSummary.from_results(results)
    assert summary.as_dict() == {"total": 4, "created": 1, "updated": 0, "skipped": 2, "errors": 1}
    assert summary.has_changes
    assert not MigrationSummary.from_results(results[1:]).has_changes


def test_snapshot_lookups_ignore_case():
    snapshot = CatalogSnapshot(categories=[NamedRef(1, "Accesorios", None)], brands=[NamedRef(5, "HP")])
    assert snapshot.category_named(" accesorios ").id == 1
    assert snapshot.category_name(1) == "Accesorios"
    assert snapshot.brand_named("hp").id == 5
    assert snapshot.line_named("Tech") is None


# --- Against the store --------------------------------------------------------


class TestCreate:
    def test_new_product_with_new_lookups_and_default_associations(
        self, reconciler, add_plan, catalog_counts
    ):
        for name in ("3 cuotas", "6 cuotas", "12 cuotas"):
            add_plan(name)
        add_plan("Plan viejo", active=False)

        results = reconciler.run_migration([feed_row(applies_to_all_plans=True)])

        assert len(results) == 1
        r = results[0]
        assert r.status == CREATED
        assert r.row == 2
        assert r.message.startswith("Producto creado exitosamente (ID: ")
        assert r.message.endswith('con código "12345" con asociaciones a todos los planes')
        assert catalog_counts() == {
            "products": 1,
            "categories": 1,
            "brands": 1,
            "lines": 1,
            "associations": 3,
        }

    def test_created_product_fields(self, reconciler, session_factory):
        row = feed_row(offer_price=4250.0, discount_percent=15.0, valid_from="2025-11-15", valid_to="2025-11-30")
        reconciler.run_migration([row])

        with session_scope(session_factory) as session:
            (p,) = ProductRepo(session).all()
            assert p.description == "Mouse X"
            assert p.code == "12345"
            assert p.price == Decimal("5000.00")
            assert p.offer_price == Decimal("4250.00")
            assert p.discount_percent == Decimal("15.00")
            assert p.valid_from == "2025-11-15"
            assert p.active is True
            assert p.applies_to_all_plans is False
            assert PlanAssociationRepo(session).list_for_product(p.id) == []

    def test_lookups_are_reused_within_a_run(self, reconciler, catalog_counts):
        rows = [
            feed_row(description="Parlante A", code=None, category="Audio", brand="Sony"),
            feed_row(description="Parlante B", code=None, category=" audio", brand="SONY"),
        ]

        results = reconciler.run_migration(rows)

        assert [r.status for r in results] == [CREATED, CREATED]
        counts = catalog_counts()
        assert counts["categories"] == 1
        assert counts["brands"] == 1
        assert counts["lines"] == 1

    def test_message_without_code(self, reconciler):
        (r,) = reconciler.run_migration([feed_row(code=None)])
        assert r.status == CREATED
        assert "código" not in r.message

    def test_association_failure_keeps_the_product(self, reconciler, add_plan, count_rows, monkeypatch):
        add_plan("12 cuotas")
        monkeypatch.setattr(PlanAssociationRepo, "create_many", _db_down)

        (r,) = reconciler.run_migration([feed_row(applies_to_all_plans=True)])

        assert r.status == CREATED
        assert r.message.endswith("(ERROR creando asociaciones a planes)")
        assert count_rows(Product) == 1
        assert count_rows(PlanAssociation) == 0


class TestValidation:
    def test_missing_description(self, reconciler, catalog_counts):
        (r,) = reconciler.run_migration([feed_row(description="", code=None)])
        assert r.status == ERROR
        assert r.description == "Sin descripción"
        assert r.message == "La descripción es requerida"
        assert catalog_counts() == {"products": 0, "categories": 0, "brands": 0, "lines": 0, "associations": 0}

    @pytest.mark.parametrize("price", [0.0, -10.0])
    def test_non_positive_price(self, reconciler, catalog_counts, price):
        (r,) = reconciler.run_migration([feed_row(price=price)])
        assert r.status == ERROR
        assert r.message == "El precio debe ser mayor a 0"
        assert catalog_counts()["products"] == 0

    def test_missing_category(self, reconciler, count_rows):
        (r,) = reconciler.run_migration([feed_row(category="")])
        assert r.status == ERROR
        assert r.message == "La categoría es requerida"
        assert count_rows(Product) == 0

    def test_missing_brand(self, reconciler, count_rows):
        (r,) = reconciler.run_migration([feed_row(brand="  ")])
        assert r.status == ERROR
        assert r.message == "La marca es requerida"
        assert count_rows(Product) == 0


class TestExistingProducts:
    def test_description_match_is_skipped_not_updated(self, reconciler, add_product, session_factory):
        pid = add_product(description="Mouse X", price=100)

        (r,) = reconciler.run_migration([feed_row(description="mouse x", code=None, price=999.0)])

        assert r.status == SKIPPED
        assert r.message == f"Ya existe producto con esta descripción (ID: {pid})"
        with session_scope(session_factory) as session:
            assert ProductRepo(session).get(pid).price == Decimal("100.00")

    def test_code_match_never_creates(self, reconciler, add_product, add_category, count_rows):
        cat_id = add_category("Accesorios")
        pid = add_product(description="Viejo nombre", price=100, code="ABC", category_id=cat_id)

        (r,) = reconciler.run_migration([feed_row(description="Nuevo nombre", code="abc", price=120.0)])

        assert r.status == UPDATED
        assert r.message.startswith(f'Producto actualizado para código "abc" (ID: {pid}). Cambios: ')
        assert "description: Viejo nombre → Nuevo nombre" in r.message
        assert "price: 100.00 → 120.00" in r.message
        assert count_rows(Product) == 1

    def test_price_tolerance(self, reconciler, add_product, add_category, session_factory):
        cat_id = add_category("Accesorios")
        pid = add_product(description="Mouse X", price=100, code="12345", category_id=cat_id)

        (r,) = reconciler.run_migration([feed_row(price=100.004)])
        assert r.status == SKIPPED
        assert r.message == f'Producto con código "12345" ya tiene los mismos datos (ID: {pid})'

        (r,) = reconciler.run_migration([feed_row(price=100.02)])
        assert r.status == UPDATED
        assert r.message.endswith("Cambios: price: 100.00 → 100.02")
        with session_scope(session_factory) as session:
            assert ProductRepo(session).get(pid).price == Decimal("100.02")

    def test_category_change_is_described_by_name(self, reconciler, add_product, add_category):
        cat_id = add_category("Accesorios")
        add_product(description="Mouse X", price=5000, code="12345", category_id=cat_id)

        (r,) = reconciler.run_migration([feed_row(category="Periféricos")])

        assert r.status == UPDATED
        assert r.message.endswith('Cambios: category: "Accesorios" → "Periféricos"')

    def test_update_does_not_touch_brand_or_flags(self, reconciler, add_product, session_factory):
        pid = add_product(description="Mouse X", price=5000, code="12345", featured=True, has_stock=False)

        (r,) = reconciler.run_migration([feed_row(price=5100.0, brand="Otra marca")])

        assert r.status == UPDATED
        with session_scope(session_factory) as session:
            p = ProductRepo(session).get(pid)
            assert p.brand_id is None
            assert p.featured is True
            assert p.has_stock is False

    def test_same_code_twice_in_one_feed_updates_the_first_creation(self, reconciler, count_rows):
        rows = [feed_row(price=100.0), feed_row(price=200.0)]

        results = reconciler.run_migration(rows)

        assert [r.status for r in results] == [CREATED, UPDATED]
        assert count_rows(Product) == 1


class TestRunMigration:
    def test_second_run_is_idempotent(self, reconciler, add_plan, tmp_path, catalog_counts):
        add_plan("12 cuotas")
        rows = ExcelImporter(write_template(tmp_path / "plantilla.xlsx")).read_rows()

        first = reconciler.run_migration(rows)
        after_first = catalog_counts()
        second = reconciler.run_migration(rows)

        assert [r.status for r in first] == [CREATED, CREATED]
        assert [r.status for r in second] == [SKIPPED, SKIPPED]
        assert catalog_counts() == after_first
        assert after_first["associations"] == 1

    def test_write_failure_does_not_stop_the_batch(self, reconciler, count_rows, monkeypatch):
        original_create = ProductRepo.create

        def flaky_create(self, **fields):
            if fields["description"] == "Roto":
                _db_down()
            return original_create(self, **fields)

        monkeypatch.setattr(ProductRepo, "create", flaky_create)

        results = reconciler.run_migration(
            [feed_row(description="Roto", code=None), feed_row(description="Sano", code=None)]
        )

        assert [r.status for r in results] == [ERROR, CREATED]
        assert results[0].message.startswith("Error creando producto: ")
        assert count_rows(Product) == 1

    def test_category_creation_failure(self, reconciler, count_rows, monkeypatch):
        original_create = CategoryRepo.create

        def flaky_create(self, description, line_id):
            if description == "Rota":
                _db_down()
            return original_create(self, description, line_id)

        monkeypatch.setattr(CategoryRepo, "create", flaky_create)

        results = reconciler.run_migration(
            [feed_row(description="A", code=None, category="Rota"), feed_row(description="B", code=None, category="Sana")]
        )

        assert [r.status for r in results] == [ERROR, CREATED]
        assert results[0].message == 'Error al obtener/crear categoría "Rota"'
        assert count_rows(Product) == 1

    def test_brand_creation_failure(self, reconciler, count_rows, monkeypatch):
        original_create = BrandRepo.create

        def flaky_create(self, description):
            if description == "Rota":
                _db_down()
            return original_create(self, description)

        monkeypatch.setattr(BrandRepo, "create", flaky_create)

        results = reconciler.run_migration(
            [feed_row(description="A", code=None, brand="Rota"), feed_row(description="B", code=None, brand="Sana")]
        )

        assert [r.status for r in results] == [ERROR, CREATED]
        assert results[0].message == 'Error al obtener/crear marca "Rota"'
        assert count_rows(Product) == 1

    def test_line_creation_failure(self, reconciler, count_rows, monkeypatch):
        original_create = LineRepo.create

        def flaky_create(self, description):
            if description == "Rota":
                _db_down()
            return original_create(self, description)

        monkeypatch.setattr(LineRepo, "create", flaky_create)

        results = reconciler.run_migration(
            [feed_row(description="A", code=None, line="Rota"), feed_row(description="B", code=None, category="Otra")]
        )

        assert [r.status for r in results] == [ERROR, CREATED]
        assert results[0].message == 'Error al obtener/crear línea "Rota": database is locked'
        assert count_rows(Product) == 1

    def test_update_failure(self, reconciler, add_product, session_factory, monkeypatch):
        pid = add_product(description="Mouse X", price=100, code="12345")
        monkeypatch.setattr(ProductRepo, "update", _db_down)

        results = reconciler.run_migration([feed_row(price=200.0), feed_row(description="Teclado", code="KB-1")])

        assert [r.status for r in results] == [ERROR, CREATED]
        assert results[0].message == "Error actualizando producto: database is locked"
        with session_scope(session_factory) as session:
            assert ProductRepo(session).get(pid).price == Decimal("100.00")

    def test_update_of_a_vanished_product(self, reconciler, add_product, session_factory):
        pid = add_product(description="Mouse X", price=100, code="12345")
        snapshot = reconciler.load_snapshot()
        with session_scope(session_factory) as session:
            session.delete(ProductRepo(session).get(pid))

        (r,) = reconciler.run_migration([feed_row(price=200.0)], snapshot=snapshot)

        assert r.status == ERROR
        assert r.message == f"Error actualizando producto: el producto {pid} ya no existe"

    def test_unexpected_exception_becomes_row_error(self, reconciler, monkeypatch):
        original = reconciler_module.resolve_action

        def exploding(row, snapshot):
            if row.description == "Boom":
                raise RuntimeError("boom")
            return original(row, snapshot)

        monkeypatch.setattr(reconciler_module, "resolve_action", exploding)

        results = reconciler.run_migration(
            [feed_row(description="Boom", code=None), feed_row(description="Ok", code=None)]
        )

        assert [(r.row, r.status) for r in results] == [(2, ERROR), (3, CREATED)]
        assert results[0].message == "boom"

    def test_progress_and_row_numbers(self, reconciler):
        calls = []
        rows = [feed_row(description=f"P{i}", code=None) for i in range(3)]

        results = reconciler.run_migration(rows, on_progress=lambda done, total: calls.append((done, total)))

        assert calls == [(1, 3), (2, 3), (3, 3)]
        assert [r.row for r in results] == [2, 3, 4]

    def test_empty_feed(self, reconciler):
        calls = []
        assert reconciler.run_migration([], on_progress=lambda *a: calls.append(a)) == []
        assert calls == []

    def test_migrate_file(self, reconciler, make_xlsx):
        path = make_xlsx(
            ["Desc. artículo", "Precio", "Artículo", "Agrupación", "Marca", "Linea"],
            [["Mouse X", 5000, "12345", "Accesorios", "Logitech", "Tech"], ["Sin precio", None, None, "A", "B", "C"]],
        )

        results = reconciler.migrate_file(path)

        assert [(r.row, r.status) for r in results] == [(2, CREATED), (3, ERROR)]
        assert results[0].data["code"] == "12345"
