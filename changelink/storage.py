"""
Persistence for ChangeLink.

A namespaced key-value store over SQLite (aiosqlite), with optional Fernet
encryption per value, and the two typed stores built on it: tracking
configurations and execution results.
"""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite
from cryptography.fernet import Fernet, InvalidToken

from .errors import ChangeLinkError, ErrorType, ValidationError
from .models import TrackingConfiguration

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"
CONFIGURATION_NAMESPACE = "tracking-configurations"
EXECUTION_NAMESPACE = "google_ads_automation_exec"


class StorageError(ChangeLinkError):
    error_type = ErrorType.CLIENT_ERROR


class KeyValueStore:
    """
    Async namespaced key-value store.

    Values are JSON documents. `encrypt=True` stores the document as a Fernet
    token, which requires an encryption key.
    """

    def __init__(self, db_path: Union[str, Path], encryption_key: Optional[str] = None):
        self.db_path = Path(db_path)
        self._cipher = Fernet(encryption_key) if encryption_key else None
        self._initialized = False

    @property
    def can_encrypt(self) -> bool:
        return self._cipher is not None

    async def initialize(self):
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    encrypted BOOLEAN DEFAULT 0,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (namespace, key)
                )
            """)
            await db.commit()
        self._initialized = True

    async def get_item(self, key: str, default: Any = None, namespace: str = DEFAULT_NAMESPACE) -> Any:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT value, encrypted FROM kv_store WHERE namespace = ? AND key = ?",
                (namespace, key)
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return default

        value, encrypted = row
        if encrypted:
            if self._cipher is None:
                raise StorageError(f"Value {namespace}/{key} is encrypted but no encryption key is configured")
            try:
                value = self._cipher.decrypt(value.encode()).decode()
            except InvalidToken:
                raise StorageError(f"Value {namespace}/{key} could not be decrypted")
        return json.loads(value)

    async def set_item(self, key: str, value: Any, namespace: str = DEFAULT_NAMESPACE, encrypt: bool = False):
        if encrypt and self._cipher is None:
            raise ValidationError("Encryption requested but CHANGELINK_ENCRYPTION_KEY is not set")

        await self.initialize()
        payload = json.dumps(value, default=str)
        if encrypt:
            payload = self._cipher.encrypt(payload.encode()).decode()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO kv_store (namespace, key, value, encrypted, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    value = excluded.value,
                    encrypted = excluded.encrypted,
                    updated_at = excluded.updated_at
                """,
                (namespace, key, payload, 1 if encrypt else 0, datetime.now().isoformat())
            )
            await db.commit()

    async def delete_data(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> bool:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
                (namespace, key)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_all_keys(self, namespace: str = DEFAULT_NAMESPACE) -> List[str]:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT key FROM kv_store WHERE namespace = ? ORDER BY key",
                (namespace,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [row[0] for row in rows]


class ConfigurationStorage:
    """TrackingConfigurations, one key per configuration id."""

    def __init__(self, store: KeyValueStore, namespace: str = CONFIGURATION_NAMESPACE):
        self.store = store
        self.namespace = namespace

    async def save(self, configuration: TrackingConfiguration) -> TrackingConfiguration:
        configuration.updated_at = datetime.now()
        # Account credentials are only ever written encrypted when a key exists
        await self.store.set_item(
            configuration.id,
            configuration.to_dict(),
            namespace=self.namespace,
            encrypt=self.store.can_encrypt
        )
        logger.info(f"[Storage] Saved configuration {configuration.id} ({configuration.name})")
        return configuration

    async def get(self, configuration_id: str) -> Optional[TrackingConfiguration]:
        data = await self.store.get_item(configuration_id, None, namespace=self.namespace)
        return TrackingConfiguration.from_dict(data) if data else None

    async def get_all(self) -> List[TrackingConfiguration]:
        configurations = []
        for key in await self.store.get_all_keys(self.namespace):
            configuration = await self.get(key)
            if configuration is not None:
                configurations.append(configuration)
        return sorted(configurations, key=lambda c: c.updated_at, reverse=True)

    async def delete(self, configuration_id: str) -> bool:
        deleted = await self.store.delete_data(configuration_id, namespace=self.namespace)
        if deleted:
            logger.info(f"[Storage] Deleted configuration {configuration_id}")
        return deleted

    async def search(self, term: str) -> List[TrackingConfiguration]:
        term = term.lower()
        return [
            c for c in await self.get_all()
            if term in c.name.lower()
            or term in c.environment_id.lower()
            or any(term in link.lower() for link in c.original_links)
        ]

    async def mark_executed(self, configuration_id: str, status: str, when: Optional[datetime] = None):
        configuration = await self.get(configuration_id)
        if configuration is None:
            logger.warning(f"[Storage] Cannot mark unknown configuration {configuration_id} as executed")
            return None
        configuration.last_executed = when or datetime.now()
        configuration.status = status
        return await self.save(configuration)


class ExecutionStorage:
    """
    Execution results (WorkflowResult dicts), newest first.

    Bounded by `max_executions`; `cleanup_expired` drops entries older than
    `retention_days`.
    """

    LIST_KEY = "executions"

    def __init__(
        self,
        store: KeyValueStore,
        max_executions: int = 1000,
        retention_days: int = 30,
        namespace: str = EXECUTION_NAMESPACE
    ):
        self.store = store
        self.max_executions = max_executions
        self.retention_days = retention_days
        self.namespace = namespace

    async def _load(self) -> List[Dict[str, Any]]:
        return await self.store.get_item(self.LIST_KEY, [], namespace=self.namespace)

    async def _write(self, executions: List[Dict[str, Any]]):
        await self.store.set_item(self.LIST_KEY, executions[:self.max_executions], namespace=self.namespace)

    async def save(self, execution: Dict[str, Any]):
        """Upsert by execution_id and keep the newest first."""
        executions = [
            e for e in await self._load()
            if e.get("execution_id") != execution.get("execution_id")
        ]
        executions.insert(0, execution)
        await self._write(executions)
        logger.debug(f"[Storage] Saved execution {execution.get('execution_id')} ({len(executions)} stored)")

    async def get(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return next((e for e in await self._load() if e.get("execution_id") == execution_id), None)

    async def get_by_configuration(self, configuration_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        matches = [e for e in await self._load() if e.get("configuration_id") == configuration_id]
        return matches[:limit] if limit else matches

    async def get_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return (await self._load())[:limit]

    async def delete(self, execution_id: str) -> bool:
        executions = await self._load()
        remaining = [e for e in executions if e.get("execution_id") != execution_id]
        if len(remaining) == len(executions):
            return False
        await self._write(remaining)
        return True

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now()) - timedelta(days=self.retention_days)
        executions = await self._load()
        kept = [
            e for e in executions
            if not e.get("start_time") or datetime.fromisoformat(e["start_time"]) >= cutoff
        ]
        removed = len(executions) - len(kept)
        if removed:
            await self._write(kept)
            logger.info(f"[Storage] Removed {removed} expired executions")
        return removed

    async def get_statistics(self, configuration_id: Optional[str] = None) -> Dict[str, Any]:
        executions = await self._load()
        if configuration_id:
            executions = [e for e in executions if e.get("configuration_id") == configuration_id]

        total = len(executions)
        successful = sum(1 for e in executions if e.get("success"))
        durations = [e.get("duration") or 0.0 for e in executions]
        by_status: Dict[str, int] = {}
        for e in executions:
            by_status[e.get("status", "UNKNOWN")] = by_status.get(e.get("status", "UNKNOWN"), 0) + 1

        return {
            "total_executions": total,
            "successful_executions": successful,
            "failed_executions": total - successful,
            "success_rate": successful / total if total else 0.0,
            "average_duration": sum(durations) / total if total else 0.0,
            "by_status": by_status,
            "last_execution": executions[0].get("start_time") if executions else None,
        }
