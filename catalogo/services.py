from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from catalogo.db import session_scope
from catalogo.errors import BulkAssociationAborted
from catalogo.repos import PlanAssociationRepo, PlanRepo, ProductRepo
from catalogo.settings import Settings

logger = logging.getLogger(__name__)

PercentCallback = Callable[[int], None]


class HasId(Protocol):
    id: int


@dataclass(frozen=True)
class BulkAssociationResult:
    plan_id: int
    total: int
    added: int
    skipped: int
    errors: int = 0

    def as_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "total": self.total,
            "added": self.added,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class PlanStatusResult:
    ok: bool
    error: str | None = None
    plan_id: int | None = None
    active: bool | None = None
    synced: int = 0


class PlanAssociationService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or Settings()
        self._session_factory = session_factory
        self._pause_every = int(settings.MASS_ASSOCIATION_PAUSE_EVERY)
        self._pause_seconds = float(settings.MASS_ASSOCIATION_PAUSE_SECONDS)
        self._max_failures = int(settings.MASS_ASSOCIATION_MAX_FAILURES)
        self._sleep = sleep

    def _all_product_ids(self) -> list[int]:
        with session_scope(self._session_factory) as session:
            return [int(p.id) for p in ProductRepo(session).all()]

    def bulk_associate_all_products_to_plan(
        self,
        plan_id: int,
        products: Sequence[HasId] | None = None,
        on_progress: PercentCallback | None = None,
    ) -> BulkAssociationResult:
        """Associate every product not yet linked to ``plan_id``.

        Individual insert failures are counted as skipped. If more than
        MASS_ASSOCIATION_MAX_FAILURES inserts fail before any succeeds, the
        run stops with BulkAssociationAborted.
        """
        plan_id = int(plan_id)
        product_ids = [int(p.id) for p in products] if products is not None else self._all_product_ids()

        with session_scope(self._session_factory) as session:
            already = PlanAssociationRepo(session).product_ids_for_plan(plan_id)

        total = len(product_ids)
        logger.info("Asociación masiva al plan %s: %s productos, %s ya asociados", plan_id, total, len(already))

        added = 0
        skipped = 0
        errors = 0

        for i, product_id in enumerate(product_ids):
            if product_id in already:
                skipped += 1
            else:
                try:
                    with session_scope(self._session_factory) as session:
                        PlanAssociationRepo(session).create(product_id, plan_id, active=True)
                    added += 1
                    already.add(product_id)
                except SQLAlchemyError as e:
                    errors += 1
                    skipped += 1
                    logger.error("Error %s - producto %s: %s", errors, product_id, e.__class__.__name__)

                    if errors > self._max_failures and added == 0:
                        logger.error("Asociación masiva al plan %s detenida tras %s errores", plan_id, errors)
                        raise BulkAssociationAborted(
                            f"Proceso detenido: {errors} errores consecutivos",
                            added=added,
                            skipped=skipped,
                            errors=errors,
                        ) from e

            if on_progress is not None:
                on_progress(round((i + 1) / total * 100))

            if self._pause_every > 0 and self._pause_seconds > 0 and (i + 1) % self._pause_every == 0:
                self._sleep(self._pause_seconds)

        logger.info(
            "Asociación masiva al plan %s completada: %s asociados, %s omitidos, %s errores",
            plan_id,
            added,
            skipped,
            errors,
        )
        return BulkAssociationResult(plan_id=plan_id, total=total, added=added, skipped=skipped, errors=errors)

    def set_plan_active(self, plan_id: int, active: bool) -> PlanStatusResult:
        """Toggle a plan and carry the flag over to its product associations."""
        with session_scope(self._session_factory) as session:
            found = PlanRepo(session).set_active(plan_id, active)
        if not found:
            return PlanStatusResult(ok=False, error="Plan no encontrado", plan_id=int(plan_id))

        # A failed sync does not undo the plan change.
        synced = 0
        try:
            with session_scope(self._session_factory) as session:
                synced = PlanAssociationRepo(session).set_active_for_plan(plan_id, active)
        except SQLAlchemyError:
            logger.exception("Error al sincronizar asociaciones del plan %s", plan_id)
            return PlanStatusResult(
                ok=True,
                error="Plan actualizado, pero no se pudieron sincronizar las asociaciones",
                plan_id=int(plan_id),
                active=bool(active),
            )

        logger.info("Plan %s activo=%s, %s asociaciones sincronizadas", plan_id, active, synced)
        return PlanStatusResult(ok=True, plan_id=int(plan_id), active=bool(active), synced=synced)
