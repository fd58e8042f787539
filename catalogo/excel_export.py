from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import TYPE_CHECKING

from openpyxl import Workbook

if TYPE_CHECKING:
    from catalogo.reconciler import RowResult


TEMPLATE_SHEET = "Productos"

TEMPLATE_HEADERS = [
    "Desc. artículo",
    "Precio",
    "Artículo",
    "Agrupación",
    "Marca",
    "Linea",
    "aplica_todos_plan",
    "descuento_porcentual",
    "precio_oferta",
    "fecha_vigencia_desde",
    "fecha_vigencia_hasta",
]

TEMPLATE_ROWS = [
    [
        "Ejemplo: Notebook HP 15.6",
        150000.00,
        "NB-HP-001",
        "Notebooks",
        "HP",
        "Tecnología",
        True,
        10,
        135000.00,
        "2025-11-01",
        "2025-12-31",
    ],
    [
        "Ejemplo: Mouse Logitech",
        5000.00,
        "MS-LG-001",
        "Accesorios",
        "Logitech",
        "Tecnología",
        False,
        15,
        4250.00,
        "2025-11-15",
        "2025-11-30",
    ],
]

REPORT_HEADERS = ["Fila", "Descripción", "Código", "Estado", "Mensaje"]


def build_template() -> Workbook:
    """Two-row example workbook with the headers the migration understands."""
    wb = Workbook()
    ws = wb.active
    ws.title = TEMPLATE_SHEET
    ws.append(TEMPLATE_HEADERS)
    for row in TEMPLATE_ROWS:
        ws.append(row)
    return wb


def workbook_bytes(wb: Workbook) -> bytes:
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def write_template(xlsx_path: Path) -> Path:
    p = Path(xlsx_path).expanduser().resolve()
    if p.suffix.lower() != ".xlsx":
        raise RuntimeError("El archivo debe ser .xlsx")
    p.parent.mkdir(parents=True, exist_ok=True)
    build_template().save(p)
    return p


def export_results(*, xlsx_path: Path, results: list[RowResult]) -> int:
    """Write a migration report (one line per feed row). Returns rows written."""
    p = Path(xlsx_path).expanduser().resolve()
    if p.suffix.lower() != ".xlsx":
        raise RuntimeError("El archivo debe ser .xlsx")

    wb = Workbook()
    ws = wb.active
    ws.title = "Resultados"
    ws.append(REPORT_HEADERS)
    for r in results:
        ws.append([int(r.row), r.description, r.code or "", r.status, r.message])

    p.parent.mkdir(parents=True, exist_ok=True)
    wb.save(p)
    return len(results)
