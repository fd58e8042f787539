"""Shared fixtures: a throwaway SQLite catalog per test."""

from __future__ import annotations

from pathlib import Path

import pytest
from openpyxl import Workbook
from sqlalchemy import func, select

from catalogo.db import create_engine_from_url, init_db, make_session_factory, session_scope
from catalogo.models import Brand, Category, Line, PlanAssociation, Product
from catalogo.reconciler import CatalogReconciler
from catalogo.repos import CategoryRepo, LineRepo, PlanRepo, ProductRepo
from catalogo.settings import Settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        INSTANCE_DIR=tmp_path / "instance",
        DATABASE_URL=f"sqlite:///{(tmp_path / 'catalogo.sqlite').as_posix()}",
        MASS_ASSOCIATION_PAUSE_SECONDS=0.0,
    )


@pytest.fixture
def session_factory(settings: Settings):
    settings.ensure_instance()
    engine = create_engine_from_url(settings.DATABASE_URL)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def reconciler(session_factory) -> CatalogReconciler:
    return CatalogReconciler(session_factory)


@pytest.fixture
def add_plan(session_factory):
    def _add(name: str, active: bool = True, installments: int = 12) -> int:
        with session_scope(session_factory) as session:
            return int(PlanRepo(session).create(name=name, installments=installments, active=active).id)

    return _add


@pytest.fixture
def add_category(session_factory):
    def _add(name: str, line: str = "Tecnología") -> int:
        with session_scope(session_factory) as session:
            line_id = int(LineRepo(session).create(line).id)
            return int(CategoryRepo(session).create(name, line_id).id)

    return _add


@pytest.fixture
def add_product(session_factory):
    def _add(**fields) -> int:
        fields.setdefault("active", True)
        with session_scope(session_factory) as session:
            return int(ProductRepo(session).create(**fields).id)

    return _add


@pytest.fixture
def count_rows(session_factory):
    """Row count per model, e.g. count_rows(Product)."""

    def _count(model) -> int:
        with session_scope(session_factory) as session:
            return int(session.execute(select(func.count()).select_from(model)).scalar_one())

    return _count


@pytest.fixture
def catalog_counts(count_rows):
    def _counts() -> dict[str, int]:
        return {
            "products": count_rows(Product),
            "categories": count_rows(Category),
            "brands": count_rows(Brand),
            "lines": count_rows(Line),
            "associations": count_rows(PlanAssociation),
        }

    return _counts


@pytest.fixture
def make_xlsx(tmp_path: Path):
    def _make(headers: list, rows: list[list], name: str = "feed.xlsx") -> Path:
        wb = Workbook()
        ws = wb.active
        ws.append(headers)
        for r in rows:
            ws.append(r)
        p = tmp_path / name
        wb.save(p)
        return p

    return _make
