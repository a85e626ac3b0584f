from __future__ import annotations

import io
import logging
import math
import mimetypes
import os
import re
import sqlite3
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

import pandas as pd
import requests
from fastapi import FastAPI, File, Form, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field
try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional until postgres mode enabled
    psycopg = None
    dict_row = None

ENV_PATH = Path(".env")


def load_local_env(path: Path = ENV_PATH) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip().strip("\"").strip("'")
        os.environ.setdefault(key, value)


load_local_env()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DB_PATH = Path(os.getenv("DB_PATH", "data/affiliate_dashboard.db"))
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
DB_BACKEND = os.getenv("DB_BACKEND", "sqlite").strip().lower()
RAW_UPLOAD_DIR = Path(os.getenv("RAW_UPLOAD_DIR", "data/raw_uploads"))
SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip().rstrip("/")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()
SUPABASE_STORAGE_BUCKET = os.getenv("SUPABASE_STORAGE_BUCKET", "raw-uploads").strip()
SUPABASE_STORAGE_PREFIX = os.getenv("SUPABASE_STORAGE_PREFIX", "afiliados").strip().strip("/")
# Off: "1234" is 1234.00. On: "1234" is 12.34 (exports that drop the decimal separator).
CURRENCY_DIGITS_AS_CENTS = _env_flag("CURRENCY_DIGITS_AS_CENTS", False)
DEFAULT_ACCOUNT_ID = os.getenv("DEFAULT_ACCOUNT_ID", "local").strip() or "local"
REPORTS_DEFAULT_LIMIT = int(os.getenv("REPORTS_DEFAULT_LIMIT", "50"))
POSTGRES_SCHEMA_PATH = Path(__file__).resolve().parent / "backend" / "sql" / "postgres_schema.sql"
logger = logging.getLogger("afiliados.api_server")

# Shopee affiliate conversion report headers, first match wins.
PRODUCT_NAME_COLUMNS = ["Nome do Item"]
REVENUE_COLUMNS = ["Comissão líquida do afiliado(R$)", "Comissão líquida do afiliado"]
REFERRAL_COLUMNS = ["Sub_id1"]

SALES_COLUMNS = ["date", "revenue", "referral_id", "product_name", "quantity"]
STATS_RANGES = ("today", "yesterday", "week", "month", "all")
PRODUCT_FILTERS = ("all", "social", "video")


class ValidationError(ValueError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class NotAuthenticatedError(Exception):
    pass


class StoreError(RuntimeError):
    pass


STORE_ERRORS: tuple[type[BaseException], ...] = (sqlite3.Error, pd.errors.DatabaseError)
if psycopg is not None:
    STORE_ERRORS = STORE_ERRORS + (psycopg.Error,)


def _using_postgres() -> bool:
    return DB_BACKEND == "postgres"


class PostgresCursorAdapter:
    def __init__(self, cursor, lastrowid: Optional[int] = None):
        self._cursor = cursor
        self.lastrowid = lastrowid

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    @property
    def rowcount(self) -> int:
        return int(self._cursor.rowcount or 0)

    @property
    def description(self):
        return self._cursor.description


class PostgresConnAdapter:
    """Gives a psycopg connection the slice of the sqlite3 API the store code uses."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql: str, params: tuple = ()):
        statement = _adapt_sql_for_postgres(sql)
        cur = self._conn.cursor(row_factory=dict_row)
        upper = statement.lstrip().upper()
        if upper.startswith("INSERT INTO") and "RETURNING" not in upper and "ON CONFLICT" not in upper:
            cur.execute(f"{statement.rstrip().rstrip(';')} RETURNING id", params)
            row = cur.fetchone()
            return PostgresCursorAdapter(cur, lastrowid=int(row["id"]) if row else None)
        cur.execute(statement, params)
        return PostgresCursorAdapter(cur)

    def executemany(self, sql: str, seq):
        cur = self._conn.cursor(row_factory=dict_row)
        cur.executemany(_adapt_sql_for_postgres(sql), seq)
        return PostgresCursorAdapter(cur)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def db_conn():
    if DB_BACKEND == "postgres":
        if not DATABASE_URL:
            raise RuntimeError("DB_BACKEND=postgres but DATABASE_URL is empty")
        if psycopg is None:
            raise RuntimeError("psycopg is required for postgres mode")
        return PostgresConnAdapter(psycopg.connect(DATABASE_URL, row_factory=dict_row))
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def _adapt_sql_for_postgres(sql: str) -> str:
    out = []
    in_str = False
    for ch in sql:
        if ch == "'":
            in_str = not in_str
            out.append(ch)
            continue
        if ch == "?" and not in_str:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out)


@contextmanager
def db_session() -> Iterator[Any]:
    """One connection, one transaction: commit on success, roll back on any error."""
    try:
        conn = db_conn()
    except (RuntimeError, *STORE_ERRORS) as exc:
        logger.exception("could not open the sales store")
        raise StoreError("could not open the sales store") from exc
    try:
        yield conn
        conn.commit()
    except STORE_ERRORS as exc:
        conn.rollback()
        logger.exception("store operation failed")
        raise StoreError(str(exc)) from exc
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_api_tables() -> None:
    if _using_postgres():
        with db_session() as conn:
            schema_sql = POSTGRES_SCHEMA_PATH.read_text(encoding="utf-8")
            for statement in [s.strip() for s in schema_sql.split(";") if s.strip()]:
                conn.execute(statement)
        return

    with db_session() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sales (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT NOT NULL,
                date TEXT NOT NULL,
                revenue REAL NOT NULL DEFAULT 0,
                referral_id TEXT,
                product_name TEXT,
                quantity INTEGER NOT NULL DEFAULT 1,
                imported_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sales_account_date ON sales(account_id, date)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sales_imports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT NOT NULL,
                imported_at TEXT NOT NULL,
                reference_date TEXT NOT NULL,
                source TEXT NOT NULL,
                row_count INTEGER NOT NULL,
                discarded_count INTEGER NOT NULL DEFAULT 0,
                zeroed_revenue_count INTEGER NOT NULL DEFAULT 0,
                total_revenue REAL NOT NULL DEFAULT 0
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sales_imports_account_imported_at ON sales_imports(account_id, imported_at)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS daily_reports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT NOT NULL,
                referral_id TEXT NOT NULL,
                date TEXT NOT NULL,
                revenue_total REAL NOT NULL DEFAULT 0,
                cost_total REAL NOT NULL DEFAULT 0,
                profit REAL NOT NULL DEFAULT 0, -- as entered, expenses excluded
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_daily_reports_unique ON daily_reports(account_id, referral_id, date)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS expenses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT NOT NULL,
                report_id INTEGER,
                description TEXT,
                amount REAL NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(report_id) REFERENCES daily_reports(id)
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_expenses_account_report ON expenses(account_id, report_id)")


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def parse_iso(d: str) -> date:
    return datetime.strptime(d, "%Y-%m-%d").date()


def require_iso_date(value: Any, field: str) -> date:
    if _is_missing(value):
        raise ValidationError(f"{field} is required", field)
    try:
        return parse_iso(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date, got {value!r}", field) from exc


def _require_account(account_id: Optional[str]) -> str:
    account = str(account_id or "").strip()
    if not account:
        raise NotAuthenticatedError("no account for this request")
    return account


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _clean_text(value: Any) -> Optional[str]:
    if _is_missing(value):
        return None
    text = str(value).strip()
    return None if text.lower() == "nan" else text


def _norm_cols(columns: list[str]) -> list[str]:
    return [str(c).strip().lower().replace("\ufeff", "") for c in columns]


def _pick_column(columns: Iterable[str], candidates: list[str]) -> Optional[str]:
    available = set(columns)
    for c in _norm_cols(candidates):
        if c in available:
            return c
    return None


def _records(df: pd.DataFrame) -> list[dict[str, Any]]:
    if df.empty:
        return []
    return df.astype(object).where(df.notna(), None).to_dict(orient="records")


def _money_text(value: float) -> str:
    return f"{float(value or 0.0):.2f}"


# ---------------------------------------------------------------------------
# Currency parsing
# ---------------------------------------------------------------------------


def _parse_money(value: Any, digits_as_cents: bool) -> Optional[float]:
    """Parse one money value; None means the value is not a number at all."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    text = re.sub(r"\s+", "", str(value).replace("R$", ""))
    if not text:
        return None
    if text.isascii() and text.isdigit():
        return int(text) / 100 if digits_as_cents else float(int(text))
    if "." in text and "," in text:
        text = text.replace(".", "").replace(",", ".")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_money(value: Any, digits_as_cents: Optional[bool] = None) -> float:
    """Normalise "R$ 1.234,56", "135,27", "1234.5" or a number to a float.

    Never raises: missing or unparseable input is 0. ``digits_as_cents``
    overrides the CURRENCY_DIGITS_AS_CENTS setting for all-digit strings.
    """
    if _is_missing(value):
        return 0.0
    cents = CURRENCY_DIGITS_AS_CENTS if digits_as_cents is None else digits_as_cents
    parsed = _parse_money(value, cents)
    return 0.0 if parsed is None else parsed


# ---------------------------------------------------------------------------
# Upload mapping
# ---------------------------------------------------------------------------


def _text_column(values: pd.Series) -> pd.Series:
    cleaned = values.map(_clean_text).astype(object)
    return cleaned.where(cleaned.notna(), None)


def _money_column(values: pd.Series, digits_as_cents: bool) -> pd.Series:
    """Column version of _parse_money: NaN where a value is missing or unparseable."""
    is_text = values.map(lambda v: isinstance(v, str)).astype(bool)
    is_number = values.map(lambda v: isinstance(v, (int, float)) and not isinstance(v, bool)).astype(bool)
    text = (
        values.where(is_text, "")
        .astype(str)
        .str.replace("R$", "", regex=False)
        .str.replace(r"\s+", "", regex=True)
    )
    digits_only = text.str.fullmatch(r"[0-9]+").fillna(False).astype(bool)
    both = text.str.contains(".", regex=False) & text.str.contains(",", regex=False)
    text = text.mask(both, text.str.replace(".", "", regex=False)).str.replace(",", ".", regex=False)
    parsed = pd.to_numeric(text.where(text != "", None), errors="coerce").astype(float)
    if digits_as_cents:
        parsed = parsed.mask(digits_only, parsed / 100)
    numbers = pd.to_numeric(values.where(is_number, None), errors="coerce").astype(float)
    parsed = parsed.where(is_text, numbers)
    return parsed.where(parsed.abs() != float("inf"))


@dataclass
class MappedSales:
    records: pd.DataFrame
    discarded: int = 0
    zeroed_revenue: int = 0


def map_sales_rows(
    rows: Iterable[Any],
    reference_date: str,
    digits_as_cents: Optional[bool] = None,
) -> MappedSales:
    """Turn header-keyed export rows into sales records for ``reference_date``.

    Rows without a product name (missing, blank or the NaN marker) are dropped
    and counted. Revenue follows the parse_money rules, so a malformed amount
    becomes 0 instead of failing the upload; those rows are counted as well.
    """
    day = require_iso_date(reference_date, "reference_date").isoformat()
    received = list(rows or [])
    # object dtype keeps numeric sub ids as sent ("123", not "123.0")
    raw = pd.DataFrame([r for r in received if isinstance(r, dict)], dtype=object)
    if raw.empty or not len(raw.columns):
        if received:
            logger.warning("discarded %d of %d rows for %s: no usable columns", len(received), len(received), day)
        return MappedSales(pd.DataFrame(columns=SALES_COLUMNS), discarded=len(received))

    raw.columns = _norm_cols(raw.columns.tolist())
    raw = raw.loc[:, ~raw.columns.duplicated()]
    blank = pd.Series([None] * len(raw), index=raw.index, dtype=object)
    name_col = _pick_column(raw.columns, PRODUCT_NAME_COLUMNS)
    revenue_col = _pick_column(raw.columns, REVENUE_COLUMNS)
    referral_col = _pick_column(raw.columns, REFERRAL_COLUMNS)

    names = _text_column(raw[name_col] if name_col else blank)
    referrals = _text_column(raw[referral_col] if referral_col else blank)
    keep = names.notna()
    cents = CURRENCY_DIGITS_AS_CENTS if digits_as_cents is None else digits_as_cents
    amounts = raw[revenue_col] if revenue_col else blank
    missing = amounts.map(_is_missing).astype(bool)
    parsed = _money_column(amounts, cents)
    zeroed = ~missing & parsed.isna()

    out = pd.DataFrame(
        {
            "date": day,
            "revenue": parsed.fillna(0.0).astype(float),
            "referral_id": referrals,
            "product_name": names,
            "quantity": 1,
        },
        index=raw.index,
    )
    out = out[keep].reset_index(drop=True)

    discarded = len(received) - len(out)
    zeroed_count = int((zeroed & keep).sum())
    if discarded:
        logger.warning("discarded %d of %d rows for %s: missing product name", discarded, len(received), day)
    if zeroed_count:
        logger.warning("zeroed revenue on %d rows for %s: unparseable amount", zeroed_count, day)
    return MappedSales(out, discarded=discarded, zeroed_revenue=zeroed_count)


def parse_sales_upload(file_name: str, file_bytes: bytes) -> list[dict[str, Any]]:
    lower_name = str(file_name or "").lower()
    try:
        if lower_name.endswith(".csv"):
            try:
                raw = pd.read_csv(io.BytesIO(file_bytes), encoding="utf-8-sig", dtype=str, keep_default_na=False)
            except UnicodeDecodeError:
                raw = pd.read_csv(io.BytesIO(file_bytes), encoding="latin1", dtype=str, keep_default_na=False)
        elif lower_name.endswith(".xlsx"):
            raw = pd.read_excel(io.BytesIO(file_bytes), dtype=str, keep_default_na=False)
        else:
            raise ValidationError("Unsupported file type. Use .csv or .xlsx", "file")
    except ValidationError:
        raise
    except (ValueError, zipfile.BadZipFile) as exc:
        raise ValidationError(f"Could not read {file_name}: {exc}", "file") from exc
    return raw.to_dict(orient="records")


def _safe_upload_name(name: str) -> str:
    base = Path(name or "upload.csv").name
    return re.sub(r"[^A-Za-z0-9._-]+", "_", base) or "upload.csv"


def _raw_storage_mode() -> str:
    if SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY and SUPABASE_STORAGE_BUCKET:
        return "supabase"
    return "local"


def _upload_raw_to_supabase(object_key: str, file_bytes: bytes, content_type: str) -> bool:
    if _raw_storage_mode() != "supabase":
        return False
    url = f"{SUPABASE_URL}/storage/v1/object/{SUPABASE_STORAGE_BUCKET}/{object_key.lstrip('/')}"
    headers = {
        "Authorization": f"Bearer {SUPABASE_SERVICE_ROLE_KEY}",
        "apikey": SUPABASE_SERVICE_ROLE_KEY,
        "x-upsert": "true",
        "content-type": content_type or "application/octet-stream",
    }
    try:
        resp = requests.post(url, headers=headers, data=file_bytes, timeout=30)
    except requests.RequestException as exc:
        logger.warning("supabase raw upload error: %s", exc)
        return False
    if 200 <= resp.status_code < 300:
        return True
    logger.warning("supabase raw upload failed [%s]: %s", resp.status_code, resp.text[:300])
    return False


def persist_raw_upload(file_name: str, file_bytes: bytes, account_id: str, reference_date: str) -> str:
    ts = datetime.now().strftime("%Y%m%dT%H%M%S")
    account = _safe_upload_name(account_id)
    safe_name = _safe_upload_name(file_name)
    object_key = "/".join(
        p for p in [SUPABASE_STORAGE_PREFIX, account, "sales", reference_date, f"{ts}_{safe_name}"] if p
    )
    content_type = mimetypes.guess_type(safe_name)[0] or "application/octet-stream"

    if _upload_raw_to_supabase(object_key, file_bytes, content_type):
        return f"supabase://{SUPABASE_STORAGE_BUCKET}/{object_key}"

    target_dir = RAW_UPLOAD_DIR / account / "sales" / reference_date
    target_dir.mkdir(parents=True, exist_ok=True)
    target_path = target_dir / f"{ts}_{safe_name}"
    target_path.write_bytes(file_bytes)
    return str(target_path)


# ---------------------------------------------------------------------------
# Sales store
# ---------------------------------------------------------------------------


def _coerce_quantity(value: Any) -> int:
    if _is_missing(value):
        return 1
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 1


def replace_daily_sales(
    account_id: str,
    reference_date: str,
    records: Optional[pd.DataFrame],
    source: str = "api",
    discarded: int = 0,
    zeroed_revenue: int = 0,
) -> int:
    """Swap every sale of (account, reference_date) for ``records`` in one transaction.

    The reference date wins over any date carried by the records. Returns the
    number of inserted rows; an empty batch clears the day.
    """
    account = _require_account(account_id)
    day = require_iso_date(reference_date, "reference_date").isoformat()
    imported_at = _now()
    batch = [] if records is None else records.to_dict(orient="records")
    rows = [
        (
            account,
            day,
            parse_money(r.get("revenue")),
            _clean_text(r.get("referral_id")),
            _clean_text(r.get("product_name")),
            _coerce_quantity(r.get("quantity")),
            imported_at,
        )
        for r in batch
    ]
    with db_session() as conn:
        deleted = conn.execute("DELETE FROM sales WHERE account_id = ? AND date = ?", (account, day)).rowcount
        if rows:
            conn.executemany(
                """
                INSERT INTO sales (account_id, date, revenue, referral_id, product_name, quantity, imported_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        conn.execute(
            """
            INSERT INTO sales_imports (
                account_id, imported_at, reference_date, source, row_count, discarded_count, zeroed_revenue_count, total_revenue
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (account, imported_at, day, source, len(rows), int(discarded), int(zeroed_revenue), float(sum(r[2] for r in rows))),
        )
    logger.info("replaced sales for %s on %s: %d removed, %d inserted", account, day, int(deleted or 0), len(rows))
    return len(rows)


def ingest_sales_rows(account_id: str, reference_date: Any, rows: Iterable[Any], source: str = "api") -> dict[str, Any]:
    if _is_missing(reference_date):
        raise ValidationError("reference_date is required", "reference_date")
    mapped = map_sales_rows(rows, str(reference_date).strip())
    count = replace_daily_sales(
        account_id,
        str(reference_date).strip(),
        mapped.records,
        source=source,
        discarded=mapped.discarded,
        zeroed_revenue=mapped.zeroed_revenue,
    )
    return {
        "message": f"Imported {count} sales for {str(reference_date).strip()}",
        "count": count,
        "discarded": mapped.discarded,
        "zeroed_revenue": mapped.zeroed_revenue,
    }


def read_df(sql: str, params: tuple = ()) -> pd.DataFrame:
    with db_session() as conn:
        if _using_postgres():
            cur = conn.execute(sql, params)
            rows = cur.fetchall() or []
            cols = [str(d[0]) for d in cur.description or [] if d and d[0]]
            return pd.DataFrame(rows, columns=cols or None) if rows else pd.DataFrame(columns=cols)
        return pd.read_sql_query(sql, conn, params=params)


def import_history(account_id: str) -> list[dict[str, Any]]:
    rows = read_df(
        """
        SELECT id, imported_at, reference_date, source, row_count, discarded_count, zeroed_revenue_count, total_revenue
        FROM sales_imports
        WHERE account_id = ?
        ORDER BY imported_at DESC, id DESC
        """,
        (_require_account(account_id),),
    )
    return _records(rows)


def upload_date_coverage(account_id: str, start_date: str, end_date: Optional[str] = None) -> list[dict[str, Any]]:
    start = require_iso_date(start_date, "start_date")
    end = require_iso_date(end_date, "end_date") if end_date else date.today()
    if start > end:
        start, end = end, start
    uploaded = set(
        read_df(
            "SELECT DISTINCT reference_date FROM sales_imports WHERE account_id = ? AND reference_date BETWEEN ? AND ?",
            (_require_account(account_id), start.isoformat(), end.isoformat()),
        )["reference_date"].astype(str).tolist()
    )
    rows = []
    d = start
    while d <= end:
        k = d.isoformat()
        rows.append({"date": k, "uploaded": k in uploaded})
        d += timedelta(days=1)
    return rows


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


class ChannelKind(str, Enum):
    SOCIAL = "social"
    VIDEO = "video"


@dataclass(frozen=True)
class SaleChannel:
    """Where a sale came from: a tracked social referral or organic Shopee video."""

    kind: ChannelKind
    referral_id: Optional[str] = None

    @property
    def origin(self) -> str:
        return "Redes Sociais" if self.kind is ChannelKind.SOCIAL else "Shopee Vídeo"

    @property
    def label(self) -> str:
        if self.kind is ChannelKind.SOCIAL:
            return f"Agrupado: {self.referral_id}"
        return "Shopee Vídeo (Agrupado)"


def classify_sale(referral_id: Any) -> SaleChannel:
    ref = _clean_text(referral_id)
    if ref is None:
        return SaleChannel(ChannelKind.VIDEO)
    return SaleChannel(ChannelKind.SOCIAL, ref)


def resolve_range(range_name: Optional[str], as_of_date: Optional[str] = None) -> tuple[Optional[date], Optional[date]]:
    r = str(range_name or "all").strip().lower()
    if r not in STATS_RANGES:
        raise ValidationError(f"range must be one of: {', '.join(STATS_RANGES)}", "range")
    today = require_iso_date(as_of_date, "as_of_date") if as_of_date else date.today()
    if r == "today":
        return today, today
    if r == "yesterday":
        yesterday = today - timedelta(days=1)
        return yesterday, yesterday
    if r == "week":
        return today - timedelta(days=6), today
    if r == "month":
        return today.replace(day=1), today
    return None, None


def _date_bounds(column: str, start: Optional[date], end: Optional[date]) -> tuple[str, tuple]:
    where = ""
    params: tuple = ()
    if start is not None:
        where += f" AND {column} >= ?"
        params += (start.isoformat(),)
    if end is not None:
        where += f" AND {column} <= ?"
        params += (end.isoformat(),)
    return where, params


def sales_stats(account_id: str, range_name: str = "all", as_of_date: Optional[str] = None) -> dict[str, Any]:
    start, end = resolve_range(range_name, as_of_date)
    where, params = _date_bounds("date", start, end)
    rows = read_df(
        f"""
        SELECT
          COALESCE(SUM(CASE WHEN referral_id IS NOT NULL THEN revenue ELSE 0 END), 0) AS revenue_social,
          COALESCE(SUM(CASE WHEN referral_id IS NULL THEN revenue ELSE 0 END), 0) AS revenue_video,
          COUNT(*) AS sale_count
        FROM sales
        WHERE account_id = ?{where}
        """,
        (_require_account(account_id),) + params,
    )
    row = _records(rows)[0] if not rows.empty else {}
    social = float(row.get("revenue_social") or 0.0)
    video = float(row.get("revenue_video") or 0.0)
    return {
        "revenue_social": _money_text(social),
        "revenue_video": _money_text(video),
        "revenue_total": _money_text(social + video),
        "sale_count": int(row.get("sale_count") or 0),
        "range": str(range_name or "all").strip().lower(),
        "start_date": start.isoformat() if start else None,
        "end_date": end.isoformat() if end else None,
    }


def product_groups(account_id: str, filter_name: str = "all", sale_date: Optional[str] = None) -> list[dict[str, Any]]:
    """Per-day rollup of sales, one group per referral id plus one for video sales."""
    f = str(filter_name or "all").strip().lower()
    if f not in PRODUCT_FILTERS:
        raise ValidationError(f"filter must be one of: {', '.join(PRODUCT_FILTERS)}", "filter")
    where = ""
    params: tuple = (_require_account(account_id),)
    if f == "social":
        where += " AND referral_id IS NOT NULL"
    elif f == "video":
        where += " AND referral_id IS NULL"
    if sale_date:
        where += " AND date = ?"
        params += (require_iso_date(sale_date, "date").isoformat(),)
    sales = read_df(
        f"""
        SELECT id, date, COALESCE(revenue, 0) AS revenue, referral_id, COALESCE(quantity, 1) AS quantity
        FROM sales
        WHERE account_id = ?{where}
        """,
        params,
    )
    if sales.empty:
        return []

    sales["channel"] = sales["referral_id"].map(classify_sale)
    grouped = (
        sales.groupby(["date", "channel"], sort=False)
        .agg(
            id=("id", "min"),
            total_revenue=("revenue", "sum"),
            quantity=("quantity", "sum"),
            sale_count=("id", "count"),
        )
        .reset_index()
    )
    out = []
    for r in grouped.to_dict(orient="records"):
        channel: SaleChannel = r["channel"]
        out.append(
            {
                "id": int(r["id"]),
                "date": str(r["date"]),
                "product_name": channel.label,
                "referral_id": channel.referral_id,
                "channel": channel.kind.value,
                "origin": channel.origin,
                "total_revenue": _money_text(r["total_revenue"]),
                "quantity": int(r["quantity"]),
                "sale_count": int(r["sale_count"]),
            }
        )
    out.sort(key=lambda g: g["referral_id"] or "")
    out.sort(key=lambda g: g["date"], reverse=True)
    return out


# ---------------------------------------------------------------------------
# Daily reports and expenses
# ---------------------------------------------------------------------------

_REPORT_SELECT = """
    SELECT
      r.id, r.referral_id, r.date, r.revenue_total, r.cost_total AS entered_cost, r.profit AS entered_profit,
      COALESCE(e.expenses_total, 0) AS expenses_total, r.created_at, r.updated_at
    FROM daily_reports r
    LEFT JOIN (
      SELECT report_id, SUM(amount) AS expenses_total
      FROM expenses
      WHERE account_id = ? AND report_id IS NOT NULL
      GROUP BY report_id
    ) e ON e.report_id = r.id
    WHERE r.account_id = ?
"""


def _shape_report(row: dict[str, Any]) -> dict[str, Any]:
    # entered_* are the values as written; cost_total adds every recorded expense.
    revenue = float(row.get("revenue_total") or 0.0)
    entered = float(row.get("entered_cost") or 0.0)
    expenses = float(row.get("expenses_total") or 0.0)
    cost = entered + expenses
    return {
        "id": int(row["id"]),
        "referral_id": row.get("referral_id"),
        "date": str(row.get("date")),
        "revenue_total": revenue,
        "entered_cost": entered,
        "entered_profit": float(row.get("entered_profit") or 0.0),
        "expenses_total": expenses,
        "cost_total": cost,
        "profit": revenue - cost,
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }


def _fetch_report(conn, account: str, report_id: int) -> dict[str, Any]:
    row = conn.execute(_REPORT_SELECT + " AND r.id = ?", (account, account, report_id)).fetchone()
    return _shape_report(dict(row))


def list_reports(
    account_id: str,
    report_date: Optional[str] = None,
    range_name: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    as_of_date: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[dict[str, Any]]:
    account = _require_account(account_id)
    params: tuple = (account, account)
    sql = _REPORT_SELECT
    if report_date:
        sql += " AND r.date = ?"
        params += (require_iso_date(report_date, "date").isoformat(),)
    elif start_date or end_date:
        start = require_iso_date(start_date, "start_date") if start_date else None
        end = require_iso_date(end_date, "end_date") if end_date else None
        if start and end and start > end:
            start, end = end, start
        where, bounds = _date_bounds("r.date", start, end)
        sql += where
        params += bounds
    elif range_name:
        where, bounds = _date_bounds("r.date", *resolve_range(range_name, as_of_date))
        sql += where
        params += bounds
    elif limit is None:
        limit = REPORTS_DEFAULT_LIMIT
    sql += " ORDER BY r.date DESC, r.referral_id"
    if limit:
        sql += " LIMIT ?"
        params += (int(limit),)
    return [_shape_report(r) for r in _records(read_df(sql, params))]


def upsert_manual_report(
    account_id: str,
    referral_id: Any,
    report_date: Any,
    revenue_total: Any = 0.0,
    cost_total: Any = 0.0,
) -> tuple[dict[str, Any], bool]:
    """Insert or update the report of (referral_id, report_date); True when inserted."""
    account = _require_account(account_id)
    ref = _clean_text(referral_id)
    if ref is None:
        raise ValidationError("referral_id is required", "referral_id")
    day = require_iso_date(report_date, "date").isoformat()
    revenue = parse_money(revenue_total)
    cost = parse_money(cost_total)
    profit = revenue - cost
    now = _now()
    with db_session() as conn:
        cur = conn.execute(
            """
            UPDATE daily_reports
            SET revenue_total = ?, cost_total = ?, profit = ?, updated_at = ?
            WHERE account_id = ? AND referral_id = ? AND date = ?
            """,
            (revenue, cost, profit, now, account, ref, day),
        )
        created = int(cur.rowcount or 0) == 0
        if created:
            cur = conn.execute(
                """
                INSERT INTO daily_reports (account_id, referral_id, date, revenue_total, cost_total, profit, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (account, ref, day, revenue, cost, profit, now, now),
            )
            report_id = int(cur.lastrowid)
        else:
            row = conn.execute(
                "SELECT id FROM daily_reports WHERE account_id = ? AND referral_id = ? AND date = ?",
                (account, ref, day),
            ).fetchone()
            report_id = int(row["id"])
        report = _fetch_report(conn, account, report_id)
    return report, created


def create_expense(
    account_id: str,
    amount: Any,
    description: Optional[str] = None,
    report_id: Optional[int] = None,
) -> dict[str, Any]:
    account = _require_account(account_id)
    if _is_missing(amount):
        raise ValidationError("amount is required", "amount")
    value = parse_money(amount)
    with db_session() as conn:
        if report_id is not None:
            found = conn.execute(
                "SELECT id FROM daily_reports WHERE id = ? AND account_id = ?",
                (int(report_id), account),
            ).fetchone()
            if not found:
                raise ValidationError(f"report {report_id} not found", "report_id")
        cur = conn.execute(
            """
            INSERT INTO expenses (account_id, report_id, description, amount, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (account, int(report_id) if report_id is not None else None, _clean_text(description), value, _now()),
        )
        row = conn.execute(
            "SELECT id, report_id, description, amount, created_at FROM expenses WHERE id = ?",
            (int(cur.lastrowid),),
        ).fetchone()
    return dict(row)


def list_expenses(account_id: str, report_id: Optional[int] = None) -> list[dict[str, Any]]:
    params: tuple = (_require_account(account_id),)
    where = ""
    if report_id is not None:
        where = " AND report_id = ?"
        params += (int(report_id),)
    rows = read_df(
        f"""
        SELECT id, report_id, description, amount, created_at
        FROM expenses
        WHERE account_id = ?{where}
        ORDER BY created_at DESC, id DESC
        """,
        params,
    )
    return _records(rows)


def _report_frame(account_id: str) -> pd.DataFrame:
    reports = list_reports(account_id, limit=0)
    frame = pd.DataFrame(reports, columns=["id", "date", "revenue_total", "cost_total", "profit"])
    frame["period_day"] = pd.to_datetime(frame["date"], errors="coerce")
    return frame.dropna(subset=["period_day"])


def _rollup(frame: pd.DataFrame, freq: str) -> pd.DataFrame:
    frame = frame.assign(period=frame["period_day"].dt.to_period(freq))
    return (
        frame.groupby("period")
        .agg(
            revenue_total=("revenue_total", "sum"),
            cost_total=("cost_total", "sum"),
            profit_total=("profit", "sum"),
            report_count=("id", "count"),
        )
        .reset_index()
        .sort_values("period", ascending=False)
    )


def weekly_reports(account_id: str) -> list[dict[str, Any]]:
    frame = _report_frame(account_id)
    if frame.empty:
        return []
    return [
        {
            "week_start": r["period"].start_time.date().isoformat(),
            "week_end": r["period"].end_time.date().isoformat(),
            "revenue_total": float(r["revenue_total"]),
            "cost_total": float(r["cost_total"]),
            "profit_total": float(r["profit_total"]),
            "report_count": int(r["report_count"]),
        }
        for r in _rollup(frame, "W-SUN").to_dict(orient="records")
    ]


def monthly_reports(account_id: str) -> list[dict[str, Any]]:
    frame = _report_frame(account_id)
    if frame.empty:
        return []
    return [
        {
            "month": str(r["period"]),
            "revenue_total": float(r["revenue_total"]),
            "cost_total": float(r["cost_total"]),
            "profit_total": float(r["profit_total"]),
            "report_count": int(r["report_count"]),
        }
        for r in _rollup(frame, "M").to_dict(orient="records")
    ]


def database_health_check() -> dict:
    try:
        with db_session() as conn:
            conn.execute("SELECT 1")
        return {"ok": True, "db_backend": DB_BACKEND}
    except StoreError as exc:
        return {"ok": False, "db_backend": DB_BACKEND, "error": str(exc)}


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class SalesUploadRequest(BaseModel):
    reference_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("reference_date", "referenceDate", "data_planilha")
    )
    rows: list[Any] = Field(default_factory=list, validation_alias=AliasChoices("rows", "registros"))


class ManualReportRequest(BaseModel):
    referral_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("referral_id", "referralId", "sub_id"))
    report_date: Optional[str] = Field(default=None, validation_alias=AliasChoices("date", "report_date", "data"))
    revenue_total: Any = Field(default=0, validation_alias=AliasChoices("revenue_total", "revenueTotal", "receita_total"))
    cost_total: Any = Field(default=0, validation_alias=AliasChoices("cost_total", "costTotal", "gasto_total"))


class ExpenseRequest(BaseModel):
    report_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("report_id", "reportId", "relatorio_id"))
    description: Optional[str] = Field(default=None, validation_alias=AliasChoices("description", "descricao"))
    amount: Any = Field(default=None, validation_alias=AliasChoices("amount", "valor"))


def register_error_handlers(target: FastAPI) -> None:
    @target.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"ok": False, "error": exc.message, "field": exc.field})

    @target.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = exc.errors()
        first = problems[0] if problems else {}
        loc = [str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path", "header")]
        field = loc[-1] if loc else None
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg") or "Invalid request")
        return JSONResponse(status_code=400, content={"ok": False, "error": message, "field": field})

    @target.exception_handler(NotAuthenticatedError)
    async def _not_authenticated(request: Request, exc: NotAuthenticatedError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"ok": False, "error": str(exc) or "Not authenticated"})

    @target.exception_handler(StoreError)
    async def _store_error(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("store error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"ok": False, "error": "Internal storage error"})


app = FastAPI(title="Afiliados Sales API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)
init_api_tables()


def _safe_call(key: str, errors: dict, fn: Callable[..., Any], *args: Any, fallback: Any = None, **kwargs: Any) -> Any:
    try:
        return fn(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.warning("dashboard part %s failed: %s", key, exc)
        errors[key] = str(exc)
        return fallback


def dashboard_payload(account_id: str, range_name: str = "all", filter_name: str = "all", as_of_date: Optional[str] = None) -> dict:
    errors: dict[str, str] = {}
    return {
        "range": range_name,
        "filter": filter_name,
        "stats": _safe_call("stats", errors, sales_stats, account_id, range_name, as_of_date, fallback=None),
        "products": _safe_call("products", errors, product_groups, account_id, filter_name, fallback=[]),
        "reports": _safe_call("reports", errors, list_reports, account_id, fallback=[]),
        "import_history": _safe_call("import_history", errors, import_history, account_id, fallback=[]),
        "errors": errors,
    }


@app.get("/dashboard")
def dashboard(
    range: str = "all",
    filter: str = "all",
    as_of_date: Optional[str] = None,
    account_id: str = DEFAULT_ACCOUNT_ID,
) -> dict:
    return dashboard_payload(account_id, range, filter, as_of_date)


@app.get("/api/health")
def health() -> dict:
    return {"ok": True, "ts": _now()}


@app.get("/api/health/db")
def health_db() -> dict:
    return database_health_check()


@app.get("/api/dashboard/stats")
def dashboard_stats(range: str = "all", as_of_date: Optional[str] = None, account_id: str = DEFAULT_ACCOUNT_ID) -> dict:
    return sales_stats(account_id, range, as_of_date)


@app.get("/api/dashboard/products")
def dashboard_products(
    filter: str = "all",
    date: Optional[str] = None,
    account_id: str = DEFAULT_ACCOUNT_ID,
) -> dict:
    return {"rows": product_groups(account_id, filter, date)}


@app.post("/api/upload/csv")
def upload_csv(body: SalesUploadRequest, account_id: str = DEFAULT_ACCOUNT_ID) -> dict:
    return ingest_sales_rows(account_id, body.reference_date, body.rows, source="json")


@app.post("/api/upload/csv-file")
async def upload_csv_file(
    file: UploadFile = File(...),
    reference_date: Optional[str] = Form(default=None),
    account_id: str = DEFAULT_ACCOUNT_ID,
) -> dict:
    day = require_iso_date(reference_date, "reference_date").isoformat()
    raw = await file.read()
    raw_path = persist_raw_upload(file.filename or "", raw, account_id, day)
    rows = parse_sales_upload(file.filename or "", raw)
    result = ingest_sales_rows(account_id, day, rows, source=file.filename or "upload")
    return {**result, "raw_path": raw_path}


@app.get("/api/upload/history")
def upload_history(account_id: str = DEFAULT_ACCOUNT_ID) -> dict:
    return {"rows": import_history(account_id)}


@app.get("/api/upload/date-coverage")
def upload_coverage(start_date: str, end_date: Optional[str] = None, account_id: str = DEFAULT_ACCOUNT_ID) -> dict:
    return {"rows": upload_date_coverage(account_id, start_date, end_date)}


@app.get("/api/reports")
def reports_list(
    date: Optional[str] = None,
    range: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    as_of_date: Optional[str] = None,
    account_id: str = DEFAULT_ACCOUNT_ID,
) -> dict:
    return {"rows": list_reports(account_id, date, range, start_date, end_date, as_of_date)}


@app.get("/api/reports/weekly")
def reports_weekly(account_id: str = DEFAULT_ACCOUNT_ID) -> dict:
    return {"rows": weekly_reports(account_id)}


@app.get("/api/reports/monthly")
def reports_monthly(account_id: str = DEFAULT_ACCOUNT_ID) -> dict:
    return {"rows": monthly_reports(account_id)}


@app.post("/api/reports/manual")
def reports_manual(body: ManualReportRequest, response: Response, account_id: str = DEFAULT_ACCOUNT_ID) -> dict:
    report, created = upsert_manual_report(
        account_id, body.referral_id, body.report_date, body.revenue_total, body.cost_total
    )
    response.status_code = 201 if created else 200
    return report


@app.post("/api/expenses", status_code=201)
def expenses_create(body: ExpenseRequest, account_id: str = DEFAULT_ACCOUNT_ID) -> dict:
    return create_expense(account_id, body.amount, body.description, body.report_id)


@app.get("/api/expenses")
def expenses_list(report_id: Optional[int] = None, account_id: str = DEFAULT_ACCOUNT_ID) -> dict:
    return {"rows": list_expenses(account_id, report_id)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_server:app", host="127.0.0.1", port=8000, reload=True)
