"""
SpecVerse — Database Layer
File-based JSON store with PostgreSQL upgrade path.
"""
import os, json, copy, threading
from contextlib import contextmanager
from specverse.config import DB_PATH, UPLOAD_DIR, PERSIST_DATA

# ============================================================
# DATABASE URL (PostgreSQL optional, file-based default)
# ============================================================
DATABASE_URL = os.environ.get("DATABASE_URL")

# ============================================================
# EMPTY DB SCHEMA
# ============================================================
EMPTY_DB = {
    "users": [], "accounts": [], "account_members": [], "invites": [],
    "sheets": [], "revisions": [], "change_logs": [], "audit_logs": [],
    "notifications": [], "notes": [], "attachments": [], "sheet_attachments": [],
    "layouts": [], "layout_regions": [], "layout_blocks": [], "layout_body_slots": [],
    "layout_subsheet_slots": [],
    "inventory_items": [], "inventory_transactions": [], "inventory_maintenance": [],
    "inventory_audit": [], "export_jobs": [],
    "clients": [], "projects": [], "categories": [], "manufacturers": [],
    "suppliers": [], "areas": [], "warehouses": [],
    "_counters": {},
}

def _fresh_db():
    """Return a fresh empty database."""
    return json.loads(json.dumps(EMPTY_DB))

def _ensure_collections(db: dict) -> dict:
    for k, v in EMPTY_DB.items():
        if k not in db:
            db[k] = type(v)()
    return db

# ============================================================
# FILE BACKEND
# ============================================================
_db_cache = None

def _file_load():
    global _db_cache
    if PERSIST_DATA and DB_PATH.exists():
        try:
            with open(DB_PATH) as f:
                _db_cache = _ensure_collections(json.load(f))
        except (json.JSONDecodeError, IOError):
            _db_cache = _fresh_db()
    else:
        _db_cache = _fresh_db()
    return _db_cache

def _file_save(db):
    global _db_cache
    _db_cache = db
    if PERSIST_DATA:
        with open(DB_PATH, "w") as f:
            json.dump(db, f, indent=2, default=str)

def _file_get():
    if _db_cache is None:
        return _file_load()
    return _db_cache

# ============================================================
# POSTGRES BACKEND (optional)
# ============================================================
_pg_pool = None
_pg_cache = None

def _pg_connect():
    """Initialize PostgreSQL connection pool."""
    global _pg_pool
    if DATABASE_URL and not _pg_pool:
        try:
            from psycopg2.pool import SimpleConnectionPool
            _pg_pool = SimpleConnectionPool(1, 5, DATABASE_URL)
            _pg_init()
            print("[DB] Connected to PostgreSQL")
        except Exception as e:
            print(f"[DB] PostgreSQL connection failed: {e}, falling back to empty in-memory state")

def _pg_init():
    """Create the state table if it doesn't exist."""
    conn = _pg_pool.getconn()
    try:
        cur = conn.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS specverse_state (
                id TEXT PRIMARY KEY DEFAULT 'main',
                data JSONB NOT NULL DEFAULT '{}',
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        cur.execute("INSERT INTO specverse_state (id, data) VALUES ('main', %s) ON CONFLICT DO NOTHING",
                    (json.dumps(EMPTY_DB),))
        conn.commit()
    except Exception as e:
        print(f"[DB] pg_init error: {e}")
        conn.rollback()
        raise
    finally:
        _pg_pool.putconn(conn)

def _pg_load():
    global _pg_cache
    if not _pg_pool:
        _pg_cache = _fresh_db()
        return _pg_cache
    conn = _pg_pool.getconn()
    try:
        cur = conn.cursor()
        cur.execute("SELECT data FROM specverse_state WHERE id='main'")
        row = cur.fetchone()
        _pg_cache = _ensure_collections(row[0]) if row else _fresh_db()
        return _pg_cache
    finally:
        _pg_pool.putconn(conn)

def _pg_save(db):
    global _pg_cache
    _pg_cache = db
    if not _pg_pool:
        return
    conn = _pg_pool.getconn()
    try:
        cur = conn.cursor()
        cur.execute("UPDATE specverse_state SET data=%s, updated_at=NOW() WHERE id='main'",
                    (json.dumps(db, default=str),))
        conn.commit()
    finally:
        _pg_pool.putconn(conn)

def _pg_get():
    # Single-process service: the row is read once and kept in memory.
    if _pg_cache is None:
        return _pg_load()
    return _pg_cache

# ============================================================
# PUBLIC API
# ============================================================
if DATABASE_URL:
    print("[DB] Using PostgreSQL backend")
    _pg_connect()
    load_db = _pg_load
    save_db = _pg_save
    get_db = _pg_get
else:
    print("[DB] Using file backend (db.json)")
    load_db = _file_load
    save_db = _file_save
    get_db = _file_get

_write_lock = threading.RLock()
_tx_depth = threading.local()

@contextmanager
def transaction():
    """Serialize a unit of work against the shared state.

    Yields the live db dict. Saved when the block exits cleanly; on any
    exception every collection is put back as it was and nothing is written.
    Nested use joins the outer unit of work.
    """
    with _write_lock:
        db = get_db()
        if getattr(_tx_depth, "n", 0) > 0:
            _tx_depth.n += 1
            try:
                yield db
            finally:
                _tx_depth.n -= 1
            return
        snapshot = copy.deepcopy(db)
        _tx_depth.n = 1
        try:
            yield db
        except BaseException:
            db.clear()
            db.update(snapshot)
            raise
        finally:
            _tx_depth.n = 0
        save_db(db)

def reset_db() -> dict:
    """Wipe all collections (tests, RESET_ON_START)."""
    with _write_lock:
        db = get_db()
        db.clear()
        db.update(_fresh_db())
        save_db(db)
        return db

def next_id(db: dict, collection: str) -> int:
    """Issue the next integer identity for a collection."""
    counters = db.setdefault("_counters", {})
    counters[collection] = int(counters.get(collection, 0)) + 1
    return counters[collection]

def find_one(rows: list, **eq):
    """First row whose keys equal all given values, else None."""
    for r in rows:
        if all(r.get(k) == v for k, v in eq.items()):
            return r
    return None

# ============================================================
# FILE STORAGE
# ============================================================
def save_uploaded_file(filename: str, content: bytes) -> None:
    """Save an uploaded file to local filesystem."""
    path = UPLOAD_DIR / filename
    path.write_bytes(content)

def load_uploaded_file(filename: str) -> tuple:
    """Load an uploaded file, return (path, exists)."""
    path = UPLOAD_DIR / filename
    return path, path.exists()

def delete_uploaded_file(filename: str) -> bool:
    path = UPLOAD_DIR / filename
    if path.exists():
        path.unlink()
        return True
    return False

# ============================================================
# UTILITIES
# ============================================================
def _n(val, default=0):
    """Safe numeric conversion: None/empty → default, strings → float."""
    if val is None or val == "":
        return float(default)
    try:
        return float(val)
    except (ValueError, TypeError):
        return float(default)

def paginate(rows: list, page, page_size, default_size: int = 20, max_size: int = 100) -> dict:
    """Clamp paging params and slice; returns {page, pageSize, total, items}."""
    try:
        page = max(1, int(page or 1))
    except (ValueError, TypeError):
        page = 1
    try:
        page_size = int(page_size or default_size)
    except (ValueError, TypeError):
        page_size = default_size
    page_size = min(max(1, page_size), max_size)
    start = (page - 1) * page_size
    return {"page": page, "pageSize": page_size, "total": len(rows),
            "items": rows[start:start + page_size]}
