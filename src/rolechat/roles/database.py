"""
SQLite role store.

Thread-safe persistent RoleStore for single-node deployments. Blocking
sqlite calls run in a worker thread so the event loop never stalls.
"""

import asyncio
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from loguru import logger

from ..auth.models import CHANNEL_RESOURCE, ResourceInstance, RoleAssignment, User
from ..auth.permissions import policy_allows
from .store import AssignmentResult, AssignmentStatus, RoleStore

# Global roles are stored with an empty scope so the primary key holds
GLOBAL_SCOPE = ""


class SQLiteRoleStore(RoleStore):
    """
    Role store backed by SQLite.

    Manages users, resource instances and role assignments. All
    operations are protected by threading.RLock for thread safety.
    """

    def __init__(self, db_path: Path, tenant: str = "default", channels: Iterable[str] = ()):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
            tenant: Tenant the store operates in
            channels: Channel keys to create as resource instances
        """
        self.db_path = Path(db_path)
        self.tenant = tenant
        self._lock = threading.RLock()
        self._init_db(list(channels))

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self, channels: List[str]):
        """Create tables if they don't exist and seed channels."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    key TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    first_name TEXT DEFAULT '',
                    last_name TEXT DEFAULT '',
                    avatar_url TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS resource_instances (
                    id TEXT PRIMARY KEY,
                    key TEXT NOT NULL,
                    resource TEXT NOT NULL,
                    tenant TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (resource, key, tenant)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS role_assignments (
                    user_key TEXT NOT NULL,
                    role TEXT NOT NULL,
                    tenant TEXT NOT NULL,
                    scope TEXT NOT NULL DEFAULT '',
                    assigned_at TEXT NOT NULL,
                    PRIMARY KEY (user_key, role, tenant, scope)
                )
            """)

            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_assignments_user ON role_assignments(user_key)"
            )

            for key in channels:
                cursor.execute("""
                    INSERT OR IGNORE INTO resource_instances (id, key, resource, tenant, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (uuid.uuid4().hex, key, CHANNEL_RESOURCE, self.tenant, datetime.now().isoformat()))

            conn.commit()
            conn.close()

            logger.info(f"Role database initialized: {self.db_path}")

    # ========================================================================
    # Users
    # ========================================================================

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            key=row["key"],
            email=row["email"],
            first_name=row["first_name"] or "",
            last_name=row["last_name"] or "",
            avatar_url=row["avatar_url"],
        )

    def _sync_user(self, user: User) -> User:
        with self._lock:
            conn = self._connect()
            conn.execute("""
                INSERT INTO users (key, email, first_name, last_name, avatar_url, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    email = excluded.email,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    avatar_url = excluded.avatar_url
            """, (
                user.key,
                user.email,
                user.first_name,
                user.last_name,
                user.avatar_url,
                datetime.now().isoformat(),
            ))
            conn.commit()
            conn.close()
            logger.debug(f"User synced: {user.key}")
            return user

    def _get_user(self, key: str) -> Optional[User]:
        with self._lock:
            conn = self._connect()
            row = conn.execute("SELECT * FROM users WHERE key = ?", (key,)).fetchone()
            conn.close()
            return self._row_to_user(row) if row else None

    def _list_users(self) -> List[User]:
        with self._lock:
            conn = self._connect()
            rows = conn.execute("SELECT * FROM users ORDER BY key").fetchall()
            conn.close()
            return [self._row_to_user(row) for row in rows]

    async def sync_user(self, user: User) -> User:
        return await asyncio.to_thread(self._sync_user, user)

    async def get_user(self, key: str) -> Optional[User]:
        return await asyncio.to_thread(self._get_user, key)

    async def list_users(self) -> List[User]:
        return await asyncio.to_thread(self._list_users)

    # ========================================================================
    # Role assignments
    # ========================================================================

    def _get_assignments(self, user_key: str) -> List[RoleAssignment]:
        with self._lock:
            conn = self._connect()
            rows = conn.execute("""
                SELECT user_key, role, tenant, scope FROM role_assignments
                WHERE user_key = ? AND tenant = ?
                ORDER BY assigned_at
            """, (user_key, self.tenant)).fetchall()
            conn.close()
            return [
                RoleAssignment(
                    user=row["user_key"],
                    role=row["role"],
                    tenant=row["tenant"],
                    resource_instance=row["scope"] or None,
                )
                for row in rows
            ]

    def _assign(self, user_key: str, role: str, scope: Optional[str]) -> AssignmentResult:
        assignment = RoleAssignment(user_key, role, self.tenant, scope)
        with self._lock:
            conn = self._connect()
            cursor = conn.execute("""
                INSERT OR IGNORE INTO role_assignments (user_key, role, tenant, scope, assigned_at)
                VALUES (?, ?, ?, ?, ?)
            """, (user_key, role, self.tenant, scope or GLOBAL_SCOPE, datetime.now().isoformat()))
            conn.commit()
            created = cursor.rowcount > 0
            conn.close()

        if not created:
            return AssignmentResult(AssignmentStatus.EXISTS, assignment)
        logger.info(f"Role assigned: {role} on {scope or self.tenant} -> {user_key}")
        return AssignmentResult(AssignmentStatus.CREATED, assignment)

    def _unassign(self, user_key: str, role: str, scope: Optional[str]) -> AssignmentResult:
        assignment = RoleAssignment(user_key, role, self.tenant, scope)
        with self._lock:
            conn = self._connect()
            cursor = conn.execute("""
                DELETE FROM role_assignments
                WHERE user_key = ? AND role = ? AND tenant = ? AND scope = ?
            """, (user_key, role, self.tenant, scope or GLOBAL_SCOPE))
            conn.commit()
            removed = cursor.rowcount > 0
            conn.close()

        if not removed:
            return AssignmentResult(AssignmentStatus.ABSENT, assignment)
        logger.info(f"Role unassigned: {role} on {scope or self.tenant} -> {user_key}")
        return AssignmentResult(AssignmentStatus.REMOVED, assignment)

    async def get_assignments(self, user_key: str) -> List[RoleAssignment]:
        return await asyncio.to_thread(self._get_assignments, user_key)

    async def assign(
        self,
        user_key: str,
        role: str,
        resource_instance: Optional[str] = None,
    ) -> AssignmentResult:
        return await asyncio.to_thread(self._assign, user_key, role, resource_instance)

    async def unassign(
        self,
        user_key: str,
        role: str,
        resource_instance: Optional[str] = None,
    ) -> AssignmentResult:
        return await asyncio.to_thread(self._unassign, user_key, role, resource_instance)

    # ========================================================================
    # Resource instances and policy
    # ========================================================================

    def _list_resource_instances(self) -> List[ResourceInstance]:
        with self._lock:
            conn = self._connect()
            rows = conn.execute(
                "SELECT * FROM resource_instances WHERE tenant = ? ORDER BY created_at",
                (self.tenant,),
            ).fetchall()
            conn.close()
            return [
                ResourceInstance(
                    id=row["id"],
                    key=row["key"],
                    resource=row["resource"],
                    tenant=row["tenant"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in rows
            ]

    async def list_resource_instances(self) -> List[ResourceInstance]:
        return await asyncio.to_thread(self._list_resource_instances)

    async def check(self, user_key: str, action: str, resource_type: str) -> bool:
        assignments = await self.get_assignments(user_key)
        roles = [a.role for a in assignments if a.resource_instance is None]
        return policy_allows(roles, action, resource_type)
