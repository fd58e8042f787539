from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from catalogo.models import Brand, Category, FinancingPlan, Line, PlanAssociation, Product


def money(x: float | Decimal) -> Decimal:
    d = x if isinstance(x, Decimal) else Decimal(str(x))
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def money_or_none(x: float | Decimal | None) -> Decimal | None:
    return None if x is None else money(x)


# Columns a caller may set through ProductRepo.create/update.
PRODUCT_FIELDS = {
    "description",
    "detailed_description",
    "price",
    "code",
    "category_id",
    "brand_id",
    "featured",
    "active",
    "has_stock",
    "applies_to_all_plans",
    "offer_price",
    "discount_percent",
    "valid_from",
    "valid_to",
}

_MONEY_FIELDS = {"price", "offer_price", "discount_percent"}


def _clean_product_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - PRODUCT_FIELDS
    if unknown:
        raise ValueError(f"Unknown product fields: {sorted(unknown)}")
    out = dict(fields)
    for k in _MONEY_FIELDS & set(out):
        out[k] = money_or_none(out[k])
    return out


class ProductRepo:
    def __init__(self, session: Session):
        self.session = session

    def list(self, q: str = "", limit: int = 300) -> list[Product]:
        stmt = select(Product)
        qn = (q or "").strip()
        if qn:
            like = f"%{qn}%"
            stmt = stmt.where(or_(Product.description.like(like), Product.code.like(like)))
        stmt = stmt.order_by(Product.description.asc()).limit(int(limit))
        return list(self.session.execute(stmt).scalars().all())

    def all(self) -> list[Product]:
        stmt = select(Product).order_by(Product.id.asc())
        return list(self.session.execute(stmt).scalars().all())

    def get(self, product_id: int) -> Product | None:
        return self.session.get(Product, int(product_id))

    def count(self) -> int:
        return int(self.session.execute(select(func.count(Product.id))).scalar_one())

    def create(self, **fields: Any) -> Product:
        row = Product(**_clean_product_fields(fields))
        self.session.add(row)
        self.session.flush()
        return row

    def update(self, product_id: int, fields: dict[str, Any]) -> Product | None:
        row = self.get(product_id)
        if row is None:
            return None
        for k, v in _clean_product_fields(fields).items():
            setattr(row, k, v)
        self.session.flush()
        return row


class LineRepo:
    def __init__(self, session: Session):
        self.session = session

    def list(self) -> list[Line]:
        stmt = select(Line).order_by(Line.description.asc())
        return list(self.session.execute(stmt).scalars().all())

    def create(self, description: str) -> Line:
        row = Line(description=(description or "").strip())
        self.session.add(row)
        self.session.flush()
        return row


class CategoryRepo:
    def __init__(self, session: Session):
        self.session = session

    def list(self) -> list[Category]:
        stmt = select(Category).order_by(Category.description.asc())
        return list(self.session.execute(stmt).scalars().all())

    def create(self, description: str, line_id: int | None) -> Category:
        row = Category(description=(description or "").strip(), line_id=line_id)
        self.session.add(row)
        self.session.flush()
        return row


class BrandRepo:
    def __init__(self, session: Session):
        self.session = session

    def list(self) -> list[Brand]:
        stmt = select(Brand).order_by(Brand.description.asc())
        return list(self.session.execute(stmt).scalars().all())

    def create(self, description: str) -> Brand:
        row = Brand(description=(description or "").strip())
        self.session.add(row)
        self.session.flush()
        return row


class PlanRepo:
    def __init__(self, session: Session):
        self.session = session

    def list(self, *, active_only: bool = False) -> list[FinancingPlan]:
        stmt = select(FinancingPlan)
        if active_only:
            stmt = stmt.where(FinancingPlan.active.is_(True))
        stmt = stmt.order_by(FinancingPlan.name.asc())
        return list(self.session.execute(stmt).scalars().all())

    def get(self, plan_id: int) -> FinancingPlan | None:
        return self.session.get(FinancingPlan, int(plan_id))

    def create(
        self,
        *,
        name: str,
        installments: int = 1,
        surcharge_percent: float | Decimal | None = None,
        min_amount: float | Decimal = 0,
        max_amount: float | Decimal | None = None,
        active: bool = True,
    ) -> FinancingPlan:
        now = datetime.utcnow()
        row = FinancingPlan(
            name=(name or "").strip(),
            installments=int(installments),
            surcharge_percent=money_or_none(surcharge_percent),
            min_amount=money(min_amount),
            max_amount=money_or_none(max_amount),
            active=bool(active),
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def set_active(self, plan_id: int, active: bool) -> bool:
        row = self.get(plan_id)
        if row is None:
            return False
        row.active = bool(active)
        row.updated_at = datetime.utcnow()
        return True


class PlanAssociationRepo:
    def __init__(self, session: Session):
        self.session = session

    def list_for_plan(self, plan_id: int) -> list[PlanAssociation]:
        stmt = (
            select(PlanAssociation)
            .where(PlanAssociation.plan_id == int(plan_id))
            .order_by(PlanAssociation.product_id.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def list_for_product(self, product_id: int) -> list[PlanAssociation]:
        stmt = (
            select(PlanAssociation)
            .where(PlanAssociation.product_id == int(product_id))
            .order_by(PlanAssociation.plan_id.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def product_ids_for_plan(self, plan_id: int) -> set[int]:
        stmt = select(PlanAssociation.product_id).where(PlanAssociation.plan_id == int(plan_id))
        return {int(r) for r in self.session.execute(stmt).scalars().all() if r is not None}

    def create(self, product_id: int, plan_id: int, active: bool = True) -> PlanAssociation:
        row = PlanAssociation(product_id=int(product_id), plan_id=int(plan_id), active=bool(active))
        self.session.add(row)
        self.session.flush()
        return row

    def create_many(self, product_id: int, plan_ids: list[int], active: bool = True) -> int:
        if not plan_ids:
            return 0
        rows = [PlanAssociation(product_id=int(product_id), plan_id=int(pid), active=bool(active)) for pid in plan_ids]
        self.session.add_all(rows)
        self.session.flush()
        return len(rows)

    def set_active_for_plan(self, plan_id: int, active: bool) -> int:
        stmt = (
            update(PlanAssociation)
            .where(PlanAssociation.plan_id == int(plan_id))
            .values(active=bool(active))
        )
        res = self.session.execute(stmt)
        return int(res.rowcount or 0)
