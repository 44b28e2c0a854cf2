"""
Audit trail for HTTP requests
Entries are appended to the api_logs table in the background so the
response is never held up by the write
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set
from loguru import logger

from apiforge.core.config import settings
from apiforge.core.query import quote_ident


@dataclass
class AuditEntry:
    tenant_id: str
    endpoint: str
    method: str
    status_code: int
    response_time_ms: float
    api_id: Optional[str] = None
    is_api_request: bool = False
    request: Dict[str, Any] = field(default_factory=dict)
    response: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditLogStore:
    """Append-only api_logs table"""

    def __init__(self, db, table: Optional[str] = None):
        self.db = db
        self.table = quote_ident(table or settings.AUDIT_TABLE)

    async def append(self, entry: AuditEntry) -> None:
        api_id = None
        if entry.api_id:
            try:
                api_id = uuid.UUID(entry.api_id)
            except ValueError:
                api_id = None

        await self.db.execute(
            f"""
            INSERT INTO {self.table}
                (timestamp, tenant_id, endpoint, method, api_id, is_api_request,
                 request, response, response_time_ms, status_code)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10)
            """,
            entry.timestamp,
            entry.tenant_id,
            entry.endpoint,
            entry.method,
            api_id,
            entry.is_api_request,
            entry.request,
            entry.response,
            int(round(entry.response_time_ms)),
            entry.status_code,
        )


class AuditLogger:
    """Fire-and-forget writer; failures are logged and dropped"""

    def __init__(self, store):
        self.store = store
        self._pending: Set[asyncio.Task] = set()

    def record(self, entry: AuditEntry) -> None:
        task = asyncio.get_running_loop().create_task(self._write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, entry: AuditEntry) -> None:
        try:
            await self.store.append(entry)
        except Exception as e:
            logger.error(f"Failed to write audit entry for {entry.method} {entry.endpoint}: {e}")

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
