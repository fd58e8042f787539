"""Product feed reconciliation.

Each feed row is matched against a snapshot of the catalog taken when the
run starts, then turned into one of four outcomes: ``created``, ``updated``,
``skipped`` or ``error``.

Matching is strict: a code match (case-insensitive, trimmed) wins over a
description match. A description match is never updated automatically, so
manually curated products that happen to share a name are left alone.

Categories, brands and lines created during a run are appended to the
snapshot, so later rows of the same run reuse them without querying the
store again. Every store call runs in its own transaction, so a failing row
never undoes the writes of earlier rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from catalogo.db import session_scope
from catalogo.errors import (
    AssociationError,
    CatalogError,
    CatalogLookupError,
    ValidationError,
    WriteError,
)
from catalogo.excel_import import ExcelImporter, FeedRow
from catalogo.models import Product
from catalogo.repos import (
    BrandRepo,
    CategoryRepo,
    LineRepo,
    PlanAssociationRepo,
    PlanRepo,
    ProductRepo,
    money_or_none,
)

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"
ERROR = "error"

ACTION_CREATE = "create"
ACTION_UPDATE_BY_CODE = "update_by_code"
ACTION_SKIP_BY_DESCRIPTION = "skip_by_description"

PRICE_TOLERANCE = Decimal("0.01")

ProgressCallback = Callable[[int, int], None]


def _key(s: str | None) -> str:
    return (s or "").strip().lower()


def _decimal(x: Any) -> Decimal | None:
    if x is None:
        return None
    try:
        return x if isinstance(x, Decimal) else Decimal(str(x))
    except (InvalidOperation, ValueError):
        return None


def db_error_message(e: SQLAlchemyError) -> str:
    orig = getattr(e, "orig", None)
    return str(orig) if orig is not None else str(e).splitlines()[0]


# --- Snapshot -----------------------------------------------------------------


@dataclass(frozen=True)
class ProductRef:
    id: int
    description: str
    price: Decimal
    code: str | None = None
    category_id: int | None = None
    offer_price: Decimal | None = None
    discount_percent: Decimal | None = None
    valid_from: str | None = None
    valid_to: str | None = None

    @classmethod
    def from_model(cls, p: Product) -> ProductRef:
        return cls(
            id=int(p.id),
            description=p.description or "",
            price=Decimal(str(p.price or 0)),
            code=p.code,
            category_id=p.category_id,
            offer_price=_decimal(p.offer_price),
            discount_percent=_decimal(p.discount_percent),
            valid_from=p.valid_from,
            valid_to=p.valid_to,
        )


@dataclass(frozen=True)
class NamedRef:
    id: int
    description: str
    parent_id: int | None = None


@dataclass
class CatalogSnapshot:
    """In-memory view of the catalog for a single migration run.

    Mutated in place while the run creates categories, brands, lines and
    products. Build a fresh one for every run.
    """

    products: list[ProductRef] = field(default_factory=list)
    categories: list[NamedRef] = field(default_factory=list)
    brands: list[NamedRef] = field(default_factory=list)
    lines: list[NamedRef] = field(default_factory=list)

    @classmethod
    def load(cls, session: Session) -> CatalogSnapshot:
        return cls(
            products=[ProductRef.from_model(p) for p in ProductRepo(session).all()],
            categories=[NamedRef(c.id, c.description, c.line_id) for c in CategoryRepo(session).list()],
            brands=[NamedRef(b.id, b.description) for b in BrandRepo(session).list()],
            lines=[NamedRef(ln.id, ln.description) for ln in LineRepo(session).list()],
        )

    def product_by_code(self, code: str | None) -> ProductRef | None:
        k = _key(code)
        if not k:
            return None
        return next((p for p in self.products if p.code and _key(p.code) == k), None)

    def product_by_description(self, description: str) -> ProductRef | None:
        k = _key(description)
        return next((p for p in self.products if _key(p.description) == k), None)

    def replace_product(self, ref: ProductRef) -> None:
        for i, p in enumerate(self.products):
            if p.id == ref.id:
                self.products[i] = ref
                return
        self.products.append(ref)

    def category_named(self, name: str) -> NamedRef | None:
        k = _key(name)
        return next((c for c in self.categories if _key(c.description) == k), None)

    def category_name(self, category_id: int | None) -> str | None:
        return next((c.description for c in self.categories if c.id == category_id), None)

    def brand_named(self, name: str) -> NamedRef | None:
        k = _key(name)
        return next((b for b in self.brands if _key(b.description) == k), None)

    def line_named(self, name: str) -> NamedRef | None:
        k = _key(name)
        return next((ln for ln in self.lines if _key(ln.description) == k), None)


# --- Results ------------------------------------------------------------------


@dataclass(frozen=True)
class RowResult:
    row: int
    description: str
    status: str
    message: str
    code: str | None = None
    data: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "row": self.row,
            "description": self.description,
            "code": self.code,
            "status": self.status,
            "message": self.message,
            "data": self.data,
        }


@dataclass(frozen=True)
class MigrationSummary:
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    @classmethod
    def from_results(cls, results: Sequence[RowResult]) -> MigrationSummary:
        by_status = {CREATED: 0, UPDATED: 0, SKIPPED: 0, ERROR: 0}
        for r in results:
            by_status[r.status] = by_status.get(r.status, 0) + 1
        return cls(
            total=len(results),
            created=by_status[CREATED],
            updated=by_status[UPDATED],
            skipped=by_status[SKIPPED],
            errors=by_status[ERROR],
        )

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.updated)

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class FieldChange:
    field: str
    old: Any
    new: Any

    @staticmethod
    def _fmt(v: Any) -> str:
        if v is None:
            return "-"
        if isinstance(v, Decimal):
            return f"{v:.2f}"
        return str(v)

    def describe(self) -> str:
        return f"{self.field}: {self._fmt(self.old)} → {self._fmt(self.new)}"


# --- Pure decision helpers ----------------------------------------------------


def validate_row(row: FeedRow) -> None:
    if not (row.description or "").strip():
        raise ValidationError("description", "La descripción es requerida")
    if row.price is None or row.price <= 0:
        raise ValidationError("price", "El precio debe ser mayor a 0")


def resolve_action(row: FeedRow, snapshot: CatalogSnapshot) -> tuple[str, ProductRef | None]:
    if row.code:
        existing = snapshot.product_by_code(row.code)
        if existing is not None:
            return ACTION_UPDATE_BY_CODE, existing

    existing = snapshot.product_by_description(row.description)
    if existing is not None:
        return ACTION_SKIP_BY_DESCRIPTION, existing

    return ACTION_CREATE, None


def diff_product(existing: ProductRef, row: FeedRow, category_id: int | None) -> list[FieldChange]:
    """Fields of ``existing`` the feed row would change.

    Only description, price, category and the promotion fields are synced;
    brand, stock and flags keep whatever was curated in the dashboard.
    """
    changes: list[FieldChange] = []

    new_description = row.description.strip()
    if existing.description.strip() != new_description:
        changes.append(FieldChange("description", existing.description.strip(), new_description))

    new_price = _decimal(row.price)
    if new_price is not None and abs(existing.price - new_price) > PRICE_TOLERANCE:
        changes.append(FieldChange("price", existing.price, new_price))

    if existing.category_id != category_id:
        changes.append(FieldChange("category_id", existing.category_id, category_id))

    new_offer = money_or_none(row.offer_price)
    if money_or_none(existing.offer_price) != new_offer:
        changes.append(FieldChange("offer_price", existing.offer_price, new_offer))

    new_discount = money_or_none(row.discount_percent)
    if money_or_none(existing.discount_percent) != new_discount:
        changes.append(FieldChange("discount_percent", existing.discount_percent, new_discount))

    if existing.valid_from != row.valid_from:
        changes.append(FieldChange("valid_from", existing.valid_from, row.valid_from))

    if existing.valid_to != row.valid_to:
        changes.append(FieldChange("valid_to", existing.valid_to, row.valid_to))

    return changes


# --- Reconciler ---------------------------------------------------------------


class CatalogReconciler:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def load_snapshot(self) -> CatalogSnapshot:
        with session_scope(self._session_factory) as session:
            return CatalogSnapshot.load(session)

    # Lookups (create-or-get) -------------------------------------------------

    def _resolve_line(self, name: str, snapshot: CatalogSnapshot) -> int | None:
        if not (name or "").strip():
            return None
        found = snapshot.line_named(name)
        if found is not None:
            return found.id

        try:
            with session_scope(self._session_factory) as session:
                line = LineRepo(session).create(name)
                ref = NamedRef(int(line.id), line.description)
        except SQLAlchemyError as e:
            raise CatalogLookupError("línea", name, f"Error al obtener/crear línea \"{name}\": {db_error_message(e)}") from e

        snapshot.lines.append(ref)
        logger.info("Línea creada: %r (ID: %s)", ref.description, ref.id)
        return ref.id

    def resolve_category(self, name: str, line_name: str, snapshot: CatalogSnapshot) -> int:
        if not (name or "").strip():
            raise CatalogLookupError("categoría", name or "", "La categoría es requerida")

        found = snapshot.category_named(name)
        if found is not None:
            return found.id

        line_id = self._resolve_line(line_name, snapshot)
        try:
            with session_scope(self._session_factory) as session:
                cat = CategoryRepo(session).create(name, line_id)
                ref = NamedRef(int(cat.id), cat.description, cat.line_id)
        except SQLAlchemyError as e:
            raise CatalogLookupError("categoría", name) from e

        snapshot.categories.append(ref)
        logger.info("Categoría creada: %r (ID: %s)", ref.description, ref.id)
        return ref.id

    def resolve_brand(self, name: str, snapshot: CatalogSnapshot) -> int:
        if not (name or "").strip():
            raise CatalogLookupError("marca", name or "", "La marca es requerida")

        found = snapshot.brand_named(name)
        if found is not None:
            return found.id

        try:
            with session_scope(self._session_factory) as session:
                brand = BrandRepo(session).create(name)
                ref = NamedRef(int(brand.id), brand.description)
        except SQLAlchemyError as e:
            raise CatalogLookupError("marca", name) from e

        snapshot.brands.append(ref)
        logger.info("Marca creada: %r (ID: %s)", ref.description, ref.id)
        return ref.id

    def create_default_associations(self, product_id: int) -> int:
        """Link a product to every active financing plan. Returns links created."""
        try:
            with session_scope(self._session_factory) as session:
                plan_ids = [int(p.id) for p in PlanRepo(session).list(active_only=True)]
                if not plan_ids:
                    logger.info("No hay planes activos para asociar al producto %s", product_id)
                    return 0
                created = PlanAssociationRepo(session).create_many(product_id, plan_ids)
        except SQLAlchemyError as e:
            raise AssociationError(f"Error creando asociaciones a planes: {db_error_message(e)}") from e

        logger.info("Producto %s asociado a %s planes activos", product_id, created)
        return created

    # Actions -----------------------------------------------------------------

    def _result(self, row_number: int, row: FeedRow, status: str, message: str) -> RowResult:
        return RowResult(
            row=row_number,
            description=row.description,
            code=row.code,
            status=status,
            message=message,
            data=row.as_dict(),
        )

    def _update_by_code(
        self, row: FeedRow, row_number: int, existing: ProductRef, snapshot: CatalogSnapshot
    ) -> RowResult:
        category_id = self.resolve_category(row.category, row.line, snapshot)

        changes = diff_product(existing, row, category_id)
        if not changes:
            return self._result(
                row_number,
                row,
                SKIPPED,
                f"Producto con código \"{row.code}\" ya tiene los mismos datos (ID: {existing.id})",
            )

        fields = {
            "description": row.description.strip(),
            "price": row.price,
            "category_id": category_id,
            "offer_price": row.offer_price,
            "discount_percent": row.discount_percent,
            "valid_from": row.valid_from,
            "valid_to": row.valid_to,
        }
        fields = {c.field: fields[c.field] for c in changes}

        try:
            with session_scope(self._session_factory) as session:
                updated = ProductRepo(session).update(existing.id, fields)
                if updated is None:
                    raise WriteError(f"Error actualizando producto: el producto {existing.id} ya no existe")
                snapshot.replace_product(ProductRef.from_model(updated))
        except SQLAlchemyError as e:
            raise WriteError(f"Error actualizando producto: {db_error_message(e)}") from e

        described = []
        for c in changes:
            if c.field == "category_id":
                old_name = snapshot.category_name(c.old) or "Sin categoría"
                new_name = snapshot.category_name(c.new) or row.category
                described.append(f"category: \"{old_name}\" → \"{new_name}\"")
            else:
                described.append(c.describe())

        return self._result(
            row_number,
            row,
            UPDATED,
            f"Producto actualizado para código \"{row.code}\" (ID: {existing.id}). Cambios: {', '.join(described)}",
        )

    def _create(self, row: FeedRow, row_number: int, snapshot: CatalogSnapshot) -> RowResult:
        category_id = self.resolve_category(row.category, row.line, snapshot)
        brand_id = self.resolve_brand(row.brand, snapshot)

        try:
            with session_scope(self._session_factory) as session:
                product = ProductRepo(session).create(
                    description=row.description.strip(),
                    price=row.price,
                    code=row.code,
                    category_id=category_id,
                    brand_id=brand_id,
                    applies_to_all_plans=bool(row.applies_to_all_plans),
                    active=True,
                    offer_price=row.offer_price,
                    discount_percent=row.discount_percent,
                    valid_from=row.valid_from,
                    valid_to=row.valid_to,
                )
                ref = ProductRef.from_model(product)
        except SQLAlchemyError as e:
            raise WriteError(f"Error creando producto: {db_error_message(e)}") from e

        snapshot.replace_product(ref)

        association_note = ""
        if row.applies_to_all_plans:
            try:
                self.create_default_associations(ref.id)
                association_note = " con asociaciones a todos los planes"
            except AssociationError as e:
                # The product stays created; only the links are missing.
                logger.error("Producto %s creado sin asociaciones: %s", ref.id, e.message)
                association_note = " (ERROR creando asociaciones a planes)"

        code_note = f" con código \"{row.code}\"" if row.code else ""
        return self._result(
            row_number,
            row,
            CREATED,
            f"Producto creado exitosamente (ID: {ref.id}){code_note}{association_note}",
        )

    # Public API --------------------------------------------------------------

    def reconcile_row(self, row: FeedRow, row_number: int, snapshot: CatalogSnapshot) -> RowResult:
        try:
            validate_row(row)
        except ValidationError as e:
            return RowResult(
                row=row_number,
                description=row.description or "Sin descripción",
                code=row.code,
                status=ERROR,
                message=e.message,
                data=row.as_dict(),
            )

        action, existing = resolve_action(row, snapshot)

        if action == ACTION_SKIP_BY_DESCRIPTION:
            return self._result(
                row_number,
                row,
                SKIPPED,
                f"Ya existe producto con esta descripción (ID: {existing.id})",
            )

        try:
            if action == ACTION_UPDATE_BY_CODE:
                return self._update_by_code(row, row_number, existing, snapshot)
            return self._create(row, row_number, snapshot)
        except CatalogError as e:
            return self._result(row_number, row, ERROR, e.message)

    def run_migration(
        self,
        rows: Sequence[FeedRow],
        on_progress: ProgressCallback | None = None,
        snapshot: CatalogSnapshot | None = None,
    ) -> list[RowResult]:
        """Reconcile every row in order. A failing row never stops the batch."""
        snapshot = snapshot if snapshot is not None else self.load_snapshot()
        total = len(rows)
        results: list[RowResult] = []

        logger.info("Migración iniciada: %s filas, %s productos existentes", total, len(snapshot.products))

        for i, row in enumerate(rows):
            row_number = i + ExcelImporter.FIRST_ROW_NUMBER
            try:
                result = self.reconcile_row(row, row_number, snapshot)
            except Exception as e:
                logger.exception("Error inesperado en la fila %s", row_number)
                result = RowResult(
                    row=row_number,
                    description=row.description or "Desconocido",
                    code=row.code,
                    status=ERROR,
                    message=str(e) or "Error desconocido",
                    data=row.as_dict(),
                )

            log = logger.warning if result.status == ERROR else logger.info
            log("Fila %s [%s] %s: %s", result.row, result.status, result.description, result.message)
            results.append(result)

            if on_progress is not None:
                on_progress(i + 1, total)

        summary = MigrationSummary.from_results(results)
        logger.info(
            "Migración completada: %s creados, %s actualizados, %s omitidos, %s errores",
            summary.created,
            summary.updated,
            summary.skipped,
            summary.errors,
        )
        return results

    def migrate_file(self, xlsx_path: Path, on_progress: ProgressCallback | None = None) -> list[RowResult]:
        rows = ExcelImporter(xlsx_path).read_rows()
        return self.run_migration(rows, on_progress=on_progress)
