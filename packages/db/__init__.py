"""Database models and utilities."""

from .models import DepartmentTable, TicketTable, TopicTable, UserTable, as_utc, ensure_schema

__all__ = [
    "DepartmentTable",
    "TicketTable",
    "TopicTable",
    "UserTable",
    "as_utc",
    "ensure_schema",
]
