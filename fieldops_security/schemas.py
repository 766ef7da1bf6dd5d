"""
Reusable input schemas for validate_input and validate_body.

Usage:
    from fieldops_security.schemas import Name, WorkOrderStatus

    class AssignWorkOrder(BaseModel):
        assignee_name: Name
        status: WorkOrderStatus
"""

import re
from typing import Annotated, Literal
from uuid import UUID

from pydantic import AfterValidator, BaseModel, Field, StringConstraints

Id = UUID

Email = Annotated[
    str,
    StringConstraints(max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
]

Name = Annotated[
    str,
    StringConstraints(min_length=1, max_length=100, pattern=r"^[a-zA-Z\s\-'.]+$"),
]

Phone = Annotated[str, StringConstraints(max_length=20, pattern=r"^\+?[\d\s\-()]+$")]


def _check_password_strength(value: str) -> str:
    if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
        raise ValueError("Password must contain uppercase, lowercase, and number")
    return value


Password = Annotated[
    str,
    StringConstraints(min_length=8, max_length=128),
    AfterValidator(_check_password_strength),
]

WorkOrderStatus = Literal["scheduled", "confirmed", "in_progress", "pending", "completed", "cancelled"]

Priority = Literal["low", "medium", "high", "urgent"]

RoleName = Literal[
    "operations_director",
    "administrator",
    "project_manager",
    "manager",
    "dispatcher",
    "field_engineer",
    "field_agent",
    "client",
]

CompanyType = Literal["service", "client"]


class PaginationQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort_by: str | None = None
    sort_order: Literal["asc", "desc"] = "desc"
