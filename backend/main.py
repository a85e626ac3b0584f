from __future__ import annotations

import json
import logging
import os
import sys
import time
import urllib.request
from pathlib import Path
from typing import Any, Optional

import jwt
from fastapi import Depends, FastAPI, File, Form, HTTPException, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
os.chdir(ROOT_DIR)


def _load_env_file(path: Path) -> None:
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


_load_env_file(Path(__file__).resolve().parent / ".env")
_load_env_file(ROOT_DIR / ".env")


def _parse_cors_origins(raw: str) -> list[str]:
    value = (raw or "*").strip()
    if value == "*":
        return ["*"]
    return [v.strip() for v in value.split(",") if v.strip()]


# Database runtime selection.
# - sqlite (default): use SQLITE_PATH/DB_PATH
# - postgres: use DATABASE_URL
db_backend = os.getenv("DB_BACKEND", "sqlite").strip().lower()
if db_backend == "postgres":
    os.environ["DB_BACKEND"] = "postgres"
else:
    os.environ["DB_BACKEND"] = "sqlite"
    if os.getenv("SQLITE_PATH"):
        os.environ["DB_PATH"] = os.getenv("SQLITE_PATH", "")

from api_server import (  # noqa: E402
    ExpenseRequest,
    ManualReportRequest,
    NotAuthenticatedError,
    SalesUploadRequest,
    create_expense,
    dashboard_payload,
    database_health_check,
    import_history,
    ingest_sales_rows,
    list_expenses,
    list_reports,
    monthly_reports,
    parse_sales_upload,
    persist_raw_upload,
    product_groups,
    register_error_handlers,
    require_iso_date,
    sales_stats,
    upload_date_coverage,
    upsert_manual_report,
    weekly_reports,
)

logger = logging.getLogger("afiliados.backend")

app = FastAPI(title="Afiliados Dashboard Backend", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("BACKEND_CORS_ORIGINS", "*")),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)
bearer_scheme = HTTPBearer(auto_error=True)
_jwks_cache: dict[str, Any] = {"expires_at": 0, "keys": []}


def _get_jwks(issuer: str) -> list[dict[str, Any]]:
    now = int(time.time())
    if _jwks_cache["keys"] and now < int(_jwks_cache["expires_at"]):
        return _jwks_cache["keys"]
    url = f"{issuer.rstrip('/')}/.well-known/jwks.json"
    with urllib.request.urlopen(url, timeout=10) as resp:  # noqa: S310
        payload = json.loads(resp.read().decode("utf-8"))
    keys = payload.get("keys", [])
    if not isinstance(keys, list) or not keys:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid JWKS response")
    _jwks_cache["keys"] = keys
    _jwks_cache["expires_at"] = now + 3600
    return keys


def _extract_role(claims: dict[str, Any]) -> str:
    role: Optional[str] = None
    public_metadata = claims.get("public_metadata")
    if isinstance(public_metadata, dict):
        role = public_metadata.get("role") or public_metadata.get("Role")
    if not role:
        role = claims.get("role") or claims.get("org_role")
    norm = str(role or "viewer").strip().lower()
    return "admin" if norm == "admin" else "viewer"


def verify_clerk_token(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> dict[str, Any]:
    issuer = os.getenv("CLERK_ISSUER", "").strip()
    audience = os.getenv("CLERK_AUDIENCE", "").strip()
    if not issuer:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="CLERK_ISSUER is not configured")
    token = credentials.credentials
    try:
        unverified_header = jwt.get_unverified_header(token)
        kid = unverified_header.get("kid")
        if not kid:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token kid")
        key_data = next((k for k in _get_jwks(issuer) if k.get("kid") == kid), None)
        if not key_data:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Signing key not found")
        public_key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(key_data))
        options = {"verify_aud": bool(audience)}
        claims = jwt.decode(
            token,
            key=public_key,
            algorithms=["RS256"],
            issuer=issuer,
            audience=audience if audience else None,
            options=options,
        )
        return {
            "user_id": claims.get("sub"),
            "role": _extract_role(claims),
            "claims": claims,
        }
    except HTTPException:
        raise
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Unauthorized: {exc}") from exc


def current_account(auth: dict[str, Any] = Depends(verify_clerk_token)) -> str:
    """The signed-in user's id; every store call is scoped to it."""
    user_id = str(auth.get("user_id") or "").strip()
    if not user_id:
        raise NotAuthenticatedError("token carries no subject")
    return user_id


@app.get("/health")
def health() -> dict[str, Any]:
    return {"ok": True, "db": database_health_check()}


@app.get("/dashboard")
def dashboard(
    range: str = "all",
    filter: str = "all",
    as_of_date: Optional[str] = None,
    account_id: str = Depends(current_account),
) -> dict[str, Any]:
    return dashboard_payload(account_id, range, filter, as_of_date)


@app.get("/api/dashboard/stats")
def dashboard_stats(
    range: str = "all",
    as_of_date: Optional[str] = None,
    account_id: str = Depends(current_account),
) -> dict[str, Any]:
    return sales_stats(account_id, range, as_of_date)


@app.get("/api/dashboard/products")
def dashboard_products(
    filter: str = "all",
    date: Optional[str] = None,
    account_id: str = Depends(current_account),
) -> dict[str, Any]:
    return {"rows": product_groups(account_id, filter, date)}


@app.post("/api/upload/csv")
def upload_csv(body: SalesUploadRequest, account_id: str = Depends(current_account)) -> dict[str, Any]:
    return ingest_sales_rows(account_id, body.reference_date, body.rows, source="json")


@app.post("/api/upload/csv-file")
async def upload_csv_file(
    file: UploadFile = File(...),
    reference_date: Optional[str] = Form(default=None),
    account_id: str = Depends(current_account),
) -> dict[str, Any]:
    day = require_iso_date(reference_date, "reference_date").isoformat()
    raw = await file.read()
    raw_path = persist_raw_upload(file.filename or "", raw, account_id, day)
    rows = parse_sales_upload(file.filename or "", raw)
    result = ingest_sales_rows(account_id, day, rows, source=file.filename or "upload")
    logger.info("file upload %s for %s stored at %s", file.filename, day, raw_path)
    return {**result, "raw_path": raw_path}


@app.get("/api/upload/history")
def upload_history(account_id: str = Depends(current_account)) -> dict[str, Any]:
    return {"rows": import_history(account_id)}


@app.get("/api/upload/date-coverage")
def upload_coverage(
    start_date: str,
    end_date: Optional[str] = None,
    account_id: str = Depends(current_account),
) -> dict[str, Any]:
    return {"rows": upload_date_coverage(account_id, start_date, end_date)}


@app.get("/api/reports")
def reports_list(
    date: Optional[str] = None,
    range: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    as_of_date: Optional[str] = None,
    account_id: str = Depends(current_account),
) -> dict[str, Any]:
    return {"rows": list_reports(account_id, date, range, start_date, end_date, as_of_date)}


@app.get("/api/reports/weekly")
def reports_weekly(account_id: str = Depends(current_account)) -> dict[str, Any]:
    return {"rows": weekly_reports(account_id)}


@app.get("/api/reports/monthly")
def reports_monthly(account_id: str = Depends(current_account)) -> dict[str, Any]:
    return {"rows": monthly_reports(account_id)}


@app.post("/api/reports/manual")
def reports_manual(
    body: ManualReportRequest,
    response: Response,
    account_id: str = Depends(current_account),
) -> dict[str, Any]:
    report, created = upsert_manual_report(
        account_id, body.referral_id, body.report_date, body.revenue_total, body.cost_total
    )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return report


@app.post("/api/expenses", status_code=status.HTTP_201_CREATED)
def expenses_create(body: ExpenseRequest, account_id: str = Depends(current_account)) -> dict[str, Any]:
    return create_expense(account_id, body.amount, body.description, body.report_id)


@app.get("/api/expenses")
def expenses_list(report_id: Optional[int] = None, account_id: str = Depends(current_account)) -> dict[str, Any]:
    return {"rows": list_expenses(account_id, report_id)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
