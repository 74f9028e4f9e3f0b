"""Database client, unit of work and schema migrations."""

from .supabase_client import SupabaseClient, get_db_client
from .unit_of_work import Operation, OperationKind, UnitOfWork

__all__ = ["Operation", "OperationKind", "SupabaseClient", "UnitOfWork", "get_db_client"]
