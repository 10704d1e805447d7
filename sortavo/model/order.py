# Order statuses and columns as stored in the `orders` table.
# The table itself is owned by the backend; we only read ids and patch
# status + timestamps.

TABLE = "orders"

STATUS_PENDING_APPROVAL = "pending_approval"
STATUS_COMPLETED = "completed"

COL_ID = "id"
COL_STATUS = "status"
COL_APPROVED_AT = "approved_at"
COL_SOLD_AT = "sold_at"


def approval_patch(now_iso: str) -> dict:
    return {
        COL_STATUS: STATUS_COMPLETED,
        COL_APPROVED_AT: now_iso,
        COL_SOLD_AT: now_iso,
    }
