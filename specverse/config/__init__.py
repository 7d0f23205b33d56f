"""
SpecVerse — Configuration & Constants
Environment variables, feature flags, roles/permissions matrix, workflow constants.
"""
import os
from pathlib import Path

# ============================================================
# PATHS
# ============================================================
BASE_DIR = Path(__file__).parent.parent.parent
DATA_DIR = Path(os.environ.get("SPECVERSE_DATA_DIR", str(BASE_DIR / "data")))
UPLOAD_DIR = DATA_DIR / "uploads"
EXPORTS_DIR = DATA_DIR / "exports"
EXPORT_JOBS_DIR = EXPORTS_DIR / "jobs"

for d in (DATA_DIR, UPLOAD_DIR, EXPORT_JOBS_DIR):
    d.mkdir(parents=True, exist_ok=True)

DB_PATH = DATA_DIR / "db.json"

# ============================================================
# FEATURE FLAGS
# ============================================================
PERSIST_DATA = os.environ.get("PERSIST_DATA", "true").lower() == "true"
SEED_DEMO = os.environ.get("SEED_DEMO", "false").lower() == "true"
RESET_ON_START = os.environ.get("RESET_ON_START", "false").lower() == "true"
DEV_SHOW_INVITE_LINKS = os.environ.get("DEV_SHOW_INVITE_LINKS", "true").lower() == "true"

# ============================================================
# AUTH
# ============================================================
JWT_SECRET = os.environ.get("JWT_SECRET", os.urandom(32).hex())
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = int(os.environ.get("JWT_EXPIRY_HOURS", "1"))
SESSION_COOKIE = "token"

ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@specverse.local")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "admin123")
DEMO_ACCOUNT_NAME = os.environ.get("DEMO_ACCOUNT_NAME", "SpecVerse Demo")

# ============================================================
# ROLES & PERMISSIONS
# ============================================================
PERMISSIONS = [
    "DATASHEET_VIEW", "DATASHEET_CREATE", "DATASHEET_EDIT", "DATASHEET_VERIFY",
    "DATASHEET_APPROVE", "DATASHEET_NOTE_EDIT", "DATASHEET_ATTACHMENT_UPLOAD",
    "TEMPLATE_VIEW", "TEMPLATE_CREATE", "TEMPLATE_EDIT", "TEMPLATE_VERIFY", "TEMPLATE_APPROVE",
    "LAYOUT_VIEW", "LAYOUT_EDIT",
    "INVENTORY_VIEW", "INVENTORY_CREATE", "INVENTORY_EDIT", "INVENTORY_DELETE",
    "INVENTORY_TRANSACTION_CREATE", "INVENTORY_MAINTENANCE_VIEW", "INVENTORY_MAINTENANCE_CREATE",
    "ACCOUNT_VIEW", "ACCOUNT_MANAGE", "ACCOUNT_INVITE",
    "REPORTS_VIEW", "AUDIT_VIEW", "EXPORT_CREATE",
]

_VIEW = ["DATASHEET_VIEW", "TEMPLATE_VIEW", "LAYOUT_VIEW", "INVENTORY_VIEW",
         "INVENTORY_MAINTENANCE_VIEW", "ACCOUNT_VIEW", "REPORTS_VIEW"]
_ENGINEER = _VIEW + [
    "DATASHEET_CREATE", "DATASHEET_EDIT", "DATASHEET_NOTE_EDIT", "DATASHEET_ATTACHMENT_UPLOAD",
    "TEMPLATE_CREATE", "TEMPLATE_EDIT", "LAYOUT_EDIT",
    "INVENTORY_CREATE", "INVENTORY_EDIT", "INVENTORY_TRANSACTION_CREATE",
    "INVENTORY_MAINTENANCE_CREATE", "EXPORT_CREATE",
]
_MANAGER = _ENGINEER + [
    "DATASHEET_VERIFY", "DATASHEET_APPROVE", "TEMPLATE_VERIFY", "TEMPLATE_APPROVE",
    "INVENTORY_DELETE", "ACCOUNT_INVITE", "AUDIT_VIEW",
]

ROLES = {
    1: {"roleName": "Admin",    "permissions": list(PERMISSIONS)},
    2: {"roleName": "Manager",  "permissions": _MANAGER},
    3: {"roleName": "Engineer", "permissions": _ENGINEER},
    4: {"roleName": "Viewer",   "permissions": _VIEW},
}
ADMIN_ROLE_ID = 1
DEFAULT_ROLE_ID = 3

# ============================================================
# DATASHEET WORKFLOW
# ============================================================
SHEET_STATUSES = ["Draft", "Rejected", "Modified Draft", "Verified", "Approved"]
EDITABLE_STATUSES = ("Draft", "Rejected", "Modified Draft")
VERIFIABLE_STATUSES = ("Draft", "Modified Draft")
REVISABLE_STATUSES = ("Verified", "Approved")
INFO_TYPES = ("int", "decimal", "varchar")

# Header fields copied between templates, filled sheets and revision snapshots
HEADER_FIELDS = [
    "sheetName", "sheetDesc", "sheetDesc2", "clientId", "projectId", "categoryId",
    "areaId", "manuId", "suppId", "clientDocNum", "clientProjectNum", "companyDocNum",
    "companyProjectNum", "packageName", "revisionNum", "revisionDate", "equipmentName",
    "equipmentTagNum", "serviceName", "requiredQty", "itemLocation", "installPackNum",
    "equipSize", "modelNum", "driver", "locationDwg", "pid", "installDwg", "codeStd",
]
TEMPLATE_REQUIRED_FIELDS = ["sheetName", "equipmentName", "equipmentTagNum"]

# ============================================================
# LAYOUTS
# ============================================================
PAPER_SIZES = ("A4", "Letter")
ORIENTATIONS = ("portrait", "landscape")
DEFAULT_GRID_COLS = 24
DEFAULT_GRID_GAP_MM = 4
DEFAULT_MARGINS_MM = 10
DEFAULT_REGIONS = [
    {"name": "Header", "kind": "locked",  "x": 0, "y": 0,  "w": 24, "h": 2},
    {"name": "Body",   "kind": "dynamic", "x": 0, "y": 2,  "w": 24, "h": 28},
    {"name": "Footer", "kind": "locked",  "x": 0, "y": 30, "w": 24, "h": 2},
]
REGION_KINDS = ("locked", "dynamic")
BLOCK_TYPES = ("Subsheet", "Field", "Table", "Text", "Image", "QRCode",
               "Signature", "Spacer", "TwoColumn", "ThreeColumn")

# ============================================================
# INVENTORY
# ============================================================
TRANSACTION_TYPES = ("Receive", "Issue", "Adjust", "Transfer", "Return")

# ============================================================
# INVITES
# ============================================================
INVITE_EXPIRY_DAYS = int(os.environ.get("INVITE_EXPIRY_DAYS", "7"))
INVITE_BASE_URL = os.environ.get("INVITE_BASE_URL", "http://localhost:3000")

# ============================================================
# EXPORTS
# ============================================================
EXPORT_CSV_LIMIT = int(os.environ.get("EXPORT_CSV_LIMIT", "10000"))
EXPORT_RETENTION_HOURS = int(os.environ.get("EXPORT_RETENTION_HOURS", "24"))
DOWNLOAD_TOKEN_MINUTES = int(os.environ.get("DOWNLOAD_TOKEN_MINUTES", "5"))

# ============================================================
# PAGING
# ============================================================
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# ============================================================
# VERSION
# ============================================================
VERSION = "1.0.0"
