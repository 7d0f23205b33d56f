"""
SpecVerse — In-app Notifications
Best effort: a failure to notify is logged and never aborts the caller's action.
"""
from datetime import datetime

from specverse.db import get_db, transaction, next_id


def notify_users(account_id: int, title: str, message: str, category: str = "Datasheet",
                 created_by: int = None, recipient_user_ids=None, recipient_role_ids=None,
                 sheet_id: int = None) -> int:
    """Fan a notification out to users and/or role holders of an account.

    Returns the number of rows written (0 on failure).
    """
    try:
        from specverse.accounts import active_member_user_ids
        recipients = list(recipient_user_ids or [])
        if recipient_role_ids:
            recipients += active_member_user_ids(account_id, role_ids=set(recipient_role_ids))
        seen, unique = set(), []
        for uid in recipients:
            if uid is not None and uid not in seen:
                seen.add(uid)
                unique.append(uid)
        if not unique:
            return 0
        now = datetime.now().isoformat()
        with transaction() as db:
            for uid in unique:
                db["notifications"].append({
                    "notificationId": next_id(db, "notifications"),
                    "accountId": account_id,
                    "userId": uid,
                    "title": title,
                    "message": message,
                    "category": category,
                    "sheetId": sheet_id,
                    "createdBy": created_by,
                    "createdAt": now,
                    "isRead": False,
                })
        return len(unique)
    except Exception as e:
        print(f"[Notify] Failed to notify users (non-fatal): {e}")
        return 0


def list_notifications(user_id: int, account_id: int = None, unread_only: bool = False, limit: int = 50) -> list:
    rows = [n for n in get_db()["notifications"] if n["userId"] == user_id
            and (account_id is None or n["accountId"] == account_id)
            and (not unread_only or not n["isRead"])]
    rows.sort(key=lambda n: (n["createdAt"], n["notificationId"]), reverse=True)
    return rows[:limit]


def mark_read(user_id: int, notification_ids: list) -> int:
    ids = set(notification_ids or [])
    count = 0
    with transaction() as db:
        for n in db["notifications"]:
            if n["userId"] == user_id and n["notificationId"] in ids and not n["isRead"]:
                n["isRead"] = True
                count += 1
    return count
