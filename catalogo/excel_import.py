from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from pathlib import Path
import re
from typing import Any
import unicodedata

from dateutil import parser as date_parser
from openpyxl import load_workbook
from openpyxl.utils.datetime import from_excel

from catalogo.errors import FeedError

SUPPORTED_EXTENSIONS = (".xlsx", ".xlsm")

_TRUE_STRINGS = {"true", "1", "yes", "sí"}
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_PARSE_DEFAULTS = (datetime(1901, 1, 1), datetime(1904, 2, 2))


@dataclass(frozen=True)
class FeedRow:
    """One spreadsheet record describing a candidate product."""

    description: str
    price: float
    code: str | None = None
    category: str = ""
    brand: str = ""
    line: str = ""
    applies_to_all_plans: bool = False
    offer_price: float | None = None
    discount_percent: float | None = None
    valid_from: str | None = None
    valid_to: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _dmy(s: str) -> str | None:
    parts = s.split("/")
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(p.strip()) for p in parts)
    except ValueError:
        return None
    if not (1 <= month <= 12 and 1 <= day <= 31 and year > 1900):
        return None
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def parse_date(value: Any) -> str | None:
    """Normalize a spreadsheet date cell to ``YYYY-MM-DD``.

    Accepts date/datetime cells, spreadsheet serial numbers (the 1900
    leap-year bug is corrected by openpyxl), ``d/m/yyyy`` strings, ISO dates
    and anything dateutil can read. Returns None when nothing matches.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, (int, float)):
        if value < 1:
            return None
        try:
            return from_excel(value).date().isoformat()
        except (OverflowError, ValueError):
            return None

    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    dmy = _dmy(s)
    if dmy is not None:
        return dmy

    if _ISO_DATE_RE.match(s):
        return s

    # dateutil fills missing parts from `default`; two defaults expose them.
    try:
        parsed = [date_parser.parse(s, dayfirst=True, default=d).date() for d in _PARSE_DEFAULTS]
    except (ValueError, OverflowError):
        return None
    if parsed[0] != parsed[1]:
        return None
    return parsed[0].isoformat()


def parse_number(value: Any) -> float | None:
    """Parse a numeric cell; blank or unreadable values are None. Zero is kept."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)

    s = str(value).strip()
    s = s.replace("$", "").strip()
    s = "".join(ch for ch in s if ch.isdigit() or ch in (".", ",", "-"))
    if not s or not any(ch.isdigit() for ch in s):
        return None

    # Thousands/decimal separators: 1.234,56 | 1234,56 | 1,234 | 1.234.567 | 100.004
    # A single dot is always the decimal point.
    if "." in s and "," in s:
        s = s.replace(".", "").replace(",", ".")
    elif "," in s:
        parts = s.split(",")
        if len(parts) == 2 and len(parts[1]) in (1, 2):
            s = s.replace(",", ".")
        else:
            s = s.replace(",", "")
    elif s.count(".") > 1:
        s = s.replace(".", "")

    try:
        return float(s)
    except ValueError:
        return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    # 12345.0 from a numeric cell is the code "12345"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


class ExcelImporter:
    # Header aliases, canonical key first, then the ERP export header.
    HEADER_ALIASES: dict[str, list[str]] = {
        "description": ["descripcion", "Desc. artículo"],
        "price": ["precio", "Precio"],
        "code": ["codigo", "Artículo"],
        "category": ["categoria", "Agrupación"],
        "brand": ["marca", "Marca"],
        "line": ["linea", "Linea"],
        "applies_to_all_plans": ["aplica_todos_plan"],
        "offer_price": ["precio_oferta"],
        "discount_percent": ["descuento_porcentual"],
        "valid_from": ["fecha_vigencia_desde"],
        "valid_to": ["fecha_vigencia_hasta"],
    }

    # Row 1 is the header, so the first data row is spreadsheet row 2.
    FIRST_ROW_NUMBER = 2

    def __init__(self, xlsx_path: Path):
        self.xlsx_path = Path(xlsx_path)

    @staticmethod
    def _norm(x: Any) -> str:
        s = str(x or "").strip()
        s = " ".join(s.split())
        s = unicodedata.normalize("NFKD", s)
        s = "".join(ch for ch in s if not unicodedata.combining(ch))
        return s.casefold()

    def _header_map(self, header: tuple[Any, ...]) -> dict[str, list[int]]:
        """Field -> column indexes, in alias priority order."""
        by_norm: dict[str, int] = {}
        for idx, name in enumerate(header):
            k = self._norm(name)
            if k and k not in by_norm:
                by_norm[k] = idx

        out: dict[str, list[int]] = {}
        for field, aliases in self.HEADER_ALIASES.items():
            cols: list[int] = []
            for a in aliases:
                idx = by_norm.get(self._norm(a))
                if idx is not None and idx not in cols:
                    cols.append(idx)
            out[field] = cols
        return out

    @staticmethod
    def _pick(row_vals: tuple[Any, ...], cols: list[int]) -> Any:
        # First alias with a non-empty value wins.
        for i in cols:
            v = row_vals[i] if i < len(row_vals) else None
            if v is not None and not (isinstance(v, str) and not v.strip()):
                return v
        return None

    def _to_feed_row(self, row_vals: tuple[Any, ...], header_map: dict[str, list[int]]) -> FeedRow:
        def at(field: str) -> Any:
            return self._pick(row_vals, header_map[field])

        code = _text(at("code"))
        return FeedRow(
            description=_text(at("description")),
            price=parse_number(at("price")) or 0.0,
            code=code or None,
            category=_text(at("category")),
            brand=_text(at("brand")),
            line=_text(at("line")),
            applies_to_all_plans=parse_boolean(at("applies_to_all_plans")),
            offer_price=parse_number(at("offer_price")),
            discount_percent=parse_number(at("discount_percent")),
            valid_from=parse_date(at("valid_from")),
            valid_to=parse_date(at("valid_to")),
        )

    def _open(self):
        if not self.xlsx_path.exists():
            raise FeedError(f"Excel file not found: {self.xlsx_path}")
        if self.xlsx_path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            raise FeedError(f"Formato no soportado: {self.xlsx_path.suffix or '?'} (use .xlsx o .xlsm)")
        try:
            return load_workbook(filename=self.xlsx_path, data_only=True, read_only=True)
        except Exception as e:
            raise FeedError(f"No se pudo leer el Excel: {e}") from e

    def read_rows(self, limit: int | None = None) -> list[FeedRow]:
        """Parse the first worksheet; row 1 is the header, blank rows are dropped."""
        wb = self._open()
        try:
            ws = wb.worksheets[0]
            rows = ws.iter_rows(values_only=True)
            header = next(rows, None)
            if not header:
                return []
            header_map = self._header_map(tuple(header))

            out: list[FeedRow] = []
            for row_vals in rows:
                if row_vals is None or all(v is None or (isinstance(v, str) and not v.strip()) for v in row_vals):
                    continue
                out.append(self._to_feed_row(tuple(row_vals), header_map))
                if limit is not None and len(out) >= limit:
                    break
            return out
        finally:
            wb.close()

    def preview(self, limit: int = 5) -> list[FeedRow]:
        return self.read_rows(limit=limit)
