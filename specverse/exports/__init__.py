"""
SpecVerse — Background Export Jobs

Lifecycle:
  start   → row inserted as queued (413 when the filtered set exceeds the CSV limit)
  run     → running → completed (file under exports/jobs/, expires after retention)
                    → failed (message kept)
  cancel  → only queued / running; a job cancelled mid-run stays cancelled
  retry   → only failed / cancelled; a fresh job with the same params

Downloads go through a short-lived signed token so a plain link can be handed to the browser.
"""
import json
from datetime import datetime, timedelta
from pathlib import Path

import jwt as pyjwt

from specverse.config import (EXPORT_CSV_LIMIT, EXPORT_RETENTION_HOURS, DOWNLOAD_TOKEN_MINUTES,
                              EXPORT_JOBS_DIR, JWT_SECRET, JWT_ALGORITHM)
from specverse.db import get_db, transaction, next_id, find_one
from specverse.errors import AppError, bad_request, conflict, forbidden, not_found
from specverse.audit import log_audit_action

JOB_TYPES = ("inventory_transactions_csv", "filled_sheets_csv")
JOB_STATUSES = ("queued", "running", "completed", "failed", "cancelled")
LIMIT_MESSAGE = (f"CSV export limit exceeded. Maximum {EXPORT_CSV_LIMIT:,} rows allowed. "
                 "Please apply additional filters to reduce the result set.")

INVENTORY_CSV_HEADERS = ["Transaction ID", "Item ID", "Item Name", "Warehouse ID", "Warehouse Name",
                         "Quantity Changed", "Transaction Type", "Performed At", "Performed By"]
SHEETS_CSV_HEADERS = ["Sheet ID", "Sheet Name", "Equipment Tag", "Equipment Name", "Status",
                      "Revision", "Template ID", "Prepared By", "Updated At"]

# filter params that must be whole numbers, per job type
NUMERIC_PARAMS = {
    "inventory_transactions_csv": ("warehouseId", "itemId"),
    "filled_sheets_csv": ("templateId", "clientId", "projectId", "categoryId", "areaId"),
}


def csv_escape(value) -> str:
    """Quote a CSV field when it holds a comma, quote or line break."""
    if value is None:
        return ""
    text = str(value)
    if any(c in text for c in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def _csv(headers: list, rows: list) -> str:
    lines = [",".join(headers)]
    lines += [",".join(csv_escape(v) for v in row) for row in rows]
    return "\n".join(lines)


# ============================================================
# JOB SOURCES
# ============================================================
def _inventory_rows(account_id: int, params: dict, limit: int = None) -> list:
    from specverse.inventory import transactions_for_csv
    return [[t["transactionId"], t["inventoryId"], t.get("itemName"), t.get("warehouseId"),
             t.get("warehouseName"), t["quantityChanged"], t["transactionType"], t["performedAt"],
             t.get("performedByName") or t.get("performedBy")]
            for t in transactions_for_csv(account_id, params, limit)]


def _sheet_rows(account_id: int, params: dict, limit: int = None) -> list:
    from specverse.sheets import list_filled_sheets
    rows = list_filled_sheets(account_id, params)
    if limit is not None:
        rows = rows[:limit]
    return [[s["sheetId"], s.get("sheetName"), s.get("equipmentTagNum"), s.get("equipmentName"),
             s["status"], s.get("revisionNum"), s.get("templateId"), s.get("preparedById"), s.get("updatedAt")]
            for s in rows]


def _clean_params(job_type: str, params: dict) -> dict:
    """Drop blank filters and coerce id filters, 400 on anything non-numeric."""
    params = {k: v for k, v in (params or {}).items() if v not in (None, "")}
    for k in NUMERIC_PARAMS[job_type]:
        if k in params:
            try:
                params[k] = int(params[k])
            except (TypeError, ValueError):
                raise bad_request(f"{k} must be a number")
    return params


def _count_rows(job_type: str, account_id: int, params: dict) -> int:
    if job_type == "inventory_transactions_csv":
        from specverse.inventory import count_transactions
        return count_transactions(account_id, params)
    from specverse.sheets import list_filled_sheets
    return len(list_filled_sheets(account_id, params))


def inventory_transactions_csv(account_id: int, params: dict = None) -> str:
    """Synchronous CSV of filtered transactions (413 over the limit)."""
    params = _clean_params("inventory_transactions_csv", params)
    if _count_rows("inventory_transactions_csv", account_id, params) > EXPORT_CSV_LIMIT:
        raise AppError(413, LIMIT_MESSAGE)
    return _csv(INVENTORY_CSV_HEADERS, _inventory_rows(account_id, params, EXPORT_CSV_LIMIT))


# job type → (file prefix, headers, row source)
_JOB_SOURCES = {
    "inventory_transactions_csv": ("inventory-transactions", INVENTORY_CSV_HEADERS, _inventory_rows),
    "filled_sheets_csv": ("filled-sheets", SHEETS_CSV_HEADERS, _sheet_rows),
}


# ============================================================
# JOBS
# ============================================================
def _status_dto(job: dict) -> dict:
    return {k: job.get(k) for k in ("jobId", "jobType", "status", "progress", "errorMessage", "fileName",
                                    "createdAt", "startedAt", "completedAt", "expiresAt", "createdBy")}


def _job_row(db: dict, job_id: int) -> dict:
    job = find_one(db["export_jobs"], jobId=job_id)
    if not job:
        raise not_found("Export job")
    return job


def _check_access(job: dict, user: dict):
    if job.get("accountId") != user.get("accountId"):
        raise not_found("Export job")
    if job["createdBy"] != user["userId"] and not user.get("isAdmin"):
        raise forbidden("You can only access your own export jobs")


def start_export_job(account_id: int, job_type: str, params: dict, user_id: int) -> dict:
    if job_type not in JOB_TYPES:
        raise bad_request(f"Unknown export job type: {job_type}")
    params = _clean_params(job_type, params)
    if _count_rows(job_type, account_id, params) > EXPORT_CSV_LIMIT:
        raise AppError(413, LIMIT_MESSAGE)
    with transaction() as db:
        job = {
            "jobId": next_id(db, "export_jobs"),
            "accountId": account_id,
            "jobType": job_type,
            "status": "queued",
            "progress": 0,
            "paramsJson": json.dumps(params) if params else None,
            "createdBy": user_id,
            "createdAt": datetime.now().isoformat(),
            "startedAt": None,
            "completedAt": None,
            "expiresAt": None,
            "fileName": None,
            "filePath": None,
            "errorMessage": None,
        }
        db["export_jobs"].append(job)
    log_audit_action("ExportJobs", job["jobId"], "Start Export", user_id, account_id,
                     changes={"jobType": job_type, "params": params or None})
    print(f"[Export] Queued job {job['jobId']} ({job_type})")
    return {"jobId": job["jobId"], "status": "queued", "createdAt": job["createdAt"]}


def run_export_job(job_id: int) -> None:
    """Worker body: generate the file and record the outcome on the job row."""
    with transaction() as db:
        job = find_one(db["export_jobs"], jobId=job_id)
        if not job or job["status"] != "queued":
            return
        job["status"] = "running"
        job["startedAt"] = datetime.now().isoformat()
        job["progress"] = 0
        job_type, account_id = job["jobType"], job["accountId"]
        params = json.loads(job["paramsJson"]) if job.get("paramsJson") else {}

    try:
        if job_type not in _JOB_SOURCES:
            raise ValueError(f"Unsupported job type: {job_type}")
        prefix, headers, source = _JOB_SOURCES[job_type]
        csv_text = _csv(headers, source(account_id, params, EXPORT_CSV_LIMIT))
        file_name = f"{prefix}-{job_id}.csv"
        EXPORT_JOBS_DIR.mkdir(parents=True, exist_ok=True)
        (EXPORT_JOBS_DIR / file_name).write_text(csv_text, encoding="utf-8")
    except Exception as e:
        print(f"[Export] Job {job_id} failed: {e}")
        with transaction() as db:
            job = _job_row(db, job_id)
            if job["status"] == "running":
                job.update(status="failed", errorMessage=str(e) or "Export failed",
                           completedAt=datetime.now().isoformat())
        return

    now = datetime.now()
    with transaction() as db:
        job = _job_row(db, job_id)
        if job["status"] != "running":
            # cancelled while running
            (EXPORT_JOBS_DIR / file_name).unlink(missing_ok=True)
            return
        job.update(status="completed", progress=100, completedAt=now.isoformat(),
                   expiresAt=(now + timedelta(hours=EXPORT_RETENTION_HOURS)).isoformat(),
                   fileName=file_name, filePath=f"jobs/{file_name}")
    print(f"[Export] Job {job_id} completed: {file_name}")


def get_export_job_status(job_id: int, user: dict) -> dict:
    job = _job_row(get_db(), job_id)
    _check_access(job, user)
    return _status_dto(job)


def list_export_jobs(user: dict) -> list:
    rows = [j for j in get_db()["export_jobs"] if j.get("accountId") == user.get("accountId")
            and (user.get("isAdmin") or j["createdBy"] == user["userId"])]
    return [_status_dto(j) for j in sorted(rows, key=lambda j: j["jobId"], reverse=True)]


def cancel_export_job(job_id: int, user: dict) -> dict:
    with transaction() as db:
        job = _job_row(db, job_id)
        _check_access(job, user)
        if job["status"] not in ("queued", "running"):
            raise conflict(f"Job cannot be cancelled when status is {job['status']}")
        job["status"] = "cancelled"
        job["completedAt"] = datetime.now().isoformat()
    log_audit_action("ExportJobs", job_id, "Cancel Export", user["userId"], user.get("accountId"))
    return _status_dto(job)


def retry_export_job(job_id: int, user: dict) -> dict:
    job = _job_row(get_db(), job_id)
    _check_access(job, user)
    if job["status"] not in ("failed", "cancelled"):
        raise conflict(f"Job cannot be retried when status is {job['status']}")
    params = json.loads(job["paramsJson"]) if job.get("paramsJson") else {}
    return start_export_job(job["accountId"], job["jobType"], params, user["userId"])


# ============================================================
# DOWNLOADS
# ============================================================
def generate_download_token(job_id: int, user_id: int) -> str:
    payload = {"jobId": job_id, "userId": user_id,
               "exp": datetime.utcnow() + timedelta(minutes=DOWNLOAD_TOKEN_MINUTES)}
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_download_token(token: str):
    """Payload {jobId, userId} of a valid token, else None."""
    try:
        payload = pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.InvalidTokenError:
        return None
    if not isinstance(payload.get("jobId"), int) or not isinstance(payload.get("userId"), int):
        return None
    return payload


def download_url_for(job_id: int, user: dict) -> dict:
    job = _job_row(get_db(), job_id)
    _check_access(job, user)
    if job["status"] != "completed":
        raise conflict("Export is not ready for download")
    token = generate_download_token(job_id, user["userId"])
    return {"downloadUrl": f"/api/exports/jobs/{job_id}/download?token={token}",
            "expiresInSeconds": DOWNLOAD_TOKEN_MINUTES * 60}


def resolve_export_file_path(job_id: int):
    """(absolute path, file name) of a downloadable job, else None."""
    job = find_one(get_db()["export_jobs"], jobId=job_id)
    if not job or job["status"] != "completed" or not job.get("filePath") or not job.get("fileName"):
        return None
    if job.get("expiresAt") and datetime.now().isoformat() > job["expiresAt"]:
        return None
    stored = job["filePath"]
    if Path(stored).is_absolute() or ".." in stored:
        return None
    root = EXPORT_JOBS_DIR.resolve()
    resolved = (EXPORT_JOBS_DIR / Path(stored).name).resolve()
    if root not in resolved.parents:
        return None
    if not resolved.exists():
        return None
    return resolved, job["fileName"]


def cleanup_expired_export_jobs() -> dict:
    now = datetime.now().isoformat()
    deleted = 0
    with transaction() as db:
        for job in db["export_jobs"]:
            if not job.get("filePath") or not job.get("expiresAt") or job["expiresAt"] > now:
                continue
            path = EXPORT_JOBS_DIR / Path(job["filePath"]).name
            if path.exists():
                path.unlink()
                deleted += 1
            job["filePath"] = None
    if deleted:
        print(f"[Export] Cleaned up {deleted} expired export file(s)")
    return {"deletedFiles": deleted}
