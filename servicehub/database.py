"""
Canonical Supabase client module - SINGLE SOURCE OF TRUTH.

IMPORTANT: This is the ONLY module allowed to import create_async_client directly.
All other modules receive a client from get_supabase_client() through their
constructors.
"""
import asyncio
import os
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from supabase import AsyncClient, create_async_client
from supabase.lib.client_options import AsyncClientOptions

from servicehub import config

logger = logging.getLogger(__name__)


class Table:
    """Table name constants."""
    APPOINTMENTS = 'appointments'
    USERS = 'users'
    NOTIFICATION_OUTBOX = 'notification_outbox'
    PROPERTIES = 'real_estate_properties'
    INSURANCE_POLICIES = 'insurance_policies'
    VISA_APPLICATIONS = 'visa_applications'
    TAX_CASES = 'tax_cases'


def _get_credentials() -> tuple:
    """Get Supabase credentials from environment."""
    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY")

    if not supabase_url or not supabase_key:
        raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY/SERVICE_ROLE_KEY must be set")

    return supabase_url, supabase_key


# Async-safe singleton cache
_async_supabase_clients: Dict[str, AsyncClient] = {}
_async_client_lock = asyncio.Lock()


async def get_supabase_client(schema: str = config.SUPABASE_SCHEMA) -> AsyncClient:
    """
    Create or get cached async Supabase client for specified schema.

    Args:
        schema: Database schema to bind

    Returns:
        Cached or newly created async Supabase client
    """
    async with _async_client_lock:
        if schema in _async_supabase_clients:
            return _async_supabase_clients[schema]

        supabase_url, supabase_key = _get_credentials()

        options = AsyncClientOptions(
            schema=schema,
            auto_refresh_token=False,  # For server/service-role usage
            persist_session=False,
        )

        client = await create_async_client(supabase_url, supabase_key, options=options)

        _async_supabase_clients[schema] = client
        logger.info(f"Created async Supabase client for schema: {schema}")

        return client


async def close_all_clients() -> None:
    """Drop all cached clients (for graceful shutdown)."""
    async with _async_client_lock:
        for schema, client in _async_supabase_clients.items():
            try:
                if hasattr(client, 'aclose'):
                    await client.aclose()
            except Exception as e:
                logger.warning(f"Error closing async client for {schema}: {e}")
        _async_supabase_clients.clear()

    logger.info("All Supabase clients closed")


# =============================================================================
# Mock Database (for testing)
# =============================================================================

def _coerce(value: Any) -> Any:
    """Parse ISO timestamps so range filters compare chronologically."""
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return value
    return value


class MockDatabase:
    """In-memory stand-in for the Supabase async client."""

    def __init__(self):
        self.data: Dict[str, List[Dict[str, Any]]] = {}

    def table(self, table_name: str) -> "MockTable":
        return MockTable(table_name, self.data)

    def rows(self, table_name: str) -> List[Dict[str, Any]]:
        return self.data.setdefault(table_name, [])


class MockTable:
    """Mock PostgREST query builder supporting the filters this codebase uses."""

    def __init__(self, table_name: str, data_store: dict):
        self.table_name = table_name
        self.data_store = data_store
        if table_name not in self.data_store:
            self.data_store[table_name] = []
        self._filters = []
        self._updates = {}
        self._limit = None
        self._range = None
        self._order = []
        self._count = None
        self._operation = None
        self._insert_data = None

    def select(self, *columns, count: Optional[str] = None):
        self._operation = 'select'
        self._count = count
        return self

    def insert(self, data: dict):
        self._operation = 'insert'
        self._insert_data = data
        return self

    def update(self, data: dict):
        self._operation = 'update'
        self._updates = data
        return self

    def eq(self, column: str, value):
        self._filters.append(lambda r: r.get(column) == value)
        return self

    def in_(self, column: str, values):
        values = list(values)
        self._filters.append(lambda r: r.get(column) in values)
        return self

    def gte(self, column: str, value):
        self._filters.append(
            lambda r: r.get(column) is not None and _coerce(r.get(column)) >= _coerce(value)
        )
        return self

    def lte(self, column: str, value):
        self._filters.append(
            lambda r: r.get(column) is not None and _coerce(r.get(column)) <= _coerce(value)
        )
        return self

    def lt(self, column: str, value):
        self._filters.append(
            lambda r: r.get(column) is not None and _coerce(r.get(column)) < _coerce(value)
        )
        return self

    def or_(self, expression: str):
        # Only "col.eq.value" terms are supported
        terms = []
        for term in expression.split(','):
            column, op, value = term.split('.', 2)
            if op != 'eq':
                raise NotImplementedError(f"MockTable.or_ does not support {op}")
            terms.append((column, value))
        self._filters.append(lambda r: any(str(r.get(c)) == v for c, v in terms))
        return self

    def order(self, column: str, desc: bool = False):
        self._order.append((column, desc))
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def range(self, start: int, end: int):
        self._range = (start, end)
        return self


    def _matching(self) -> List[Dict[str, Any]]:
        rows = self.data_store.get(self.table_name, [])
        return [r for r in rows if all(f(r) for f in self._filters)]

    async def execute(self):
        if self._operation == 'insert':
            row = dict(self._insert_data)
            if 'id' not in row:
                row['id'] = str(uuid.uuid4())
            self.data_store[self.table_name].append(row)
            return MockResult(data=[dict(row)])

        if self._operation == 'update':
            updated = []
            for row in self._matching():
                row.update(self._updates)
                updated.append(dict(row))
            return MockResult(data=updated)

        if self._operation == 'select':
            result = self._matching()
            total = len(result)
            for column, desc in reversed(self._order):
                result = sorted(result, key=lambda r: _coerce(r.get(column)), reverse=desc)
            if self._range:
                result = result[self._range[0]:self._range[1] + 1]
            if self._limit is not None:
                result = result[:self._limit]
            result = [dict(r) for r in result]
            count = total if self._count else None
            return MockResult(data=result, count=count)

        return MockResult()


class MockResult:
    """Mock query result."""

    def __init__(self, data=None, count=None):
        self.data = data
        self.count = count
