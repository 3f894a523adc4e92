from typing import Optional

VALID_STATUSES = {"available", "maintenance", "out_of_service"}
VALID_LOAN_STATUSES = {"active", "returned", "overdue"}
VALID_ROLES = {"normal", "becario", "admin"}
VALID_SORTS = {"name", "serial_number", "available_quantity", "updated_at"}
VALID_ORDERS = {"asc", "desc"}


def blank_to_none(value: Optional[str]) -> Optional[str]:
    if value == "":
        return None
    return value


def normalize_status(status: Optional[str]) -> Optional[str]:
    if status in VALID_STATUSES:
        return status
    return None


def normalize_loan_status(status: Optional[str]) -> Optional[str]:
    if status in VALID_LOAN_STATUSES:
        return status
    return None


def normalize_role(role: Optional[str]) -> Optional[str]:
    if role in VALID_ROLES:
        return role
    return None


def normalize_active(value: Optional[str]) -> Optional[bool]:
    # "active" / "inactive" / それ以外は絞り込みなし
    if value == "active":
        return True
    if value == "inactive":
        return False
    return None


def normalize_sort(sort: str) -> str:
    if sort in VALID_SORTS:
        return sort
    return "name"


def normalize_order(order: str) -> str:
    if order in VALID_ORDERS:
        return order
    return "asc"


def normalize_limit(limit: int, *, min_value: int = 1, max_value: int = 500) -> int:
    if limit < min_value:
        return min_value
    if limit > max_value:
        return max_value
    return limit


def normalize_offset(offset: int) -> int:
    if offset < 0:
        return 0
    return offset
