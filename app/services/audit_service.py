"""
Calibra — Audit Sink

Append-only log of privileged calibration actions.  Each entry carries a
SHA-256 hash over its canonical content and the hash of the previous entry
for the same account, so edits or deletions are detectable with
``verify_chain``.

Writes are best-effort: ``record`` runs in its own session and transaction,
after the business transaction has committed, and swallows (but logs) any
failure.  Losing an audit write never undoes a committed close or cancel.

Appends to one account's chain are serialised: an in-process lock per account,
plus a transaction-scoped advisory lock on PostgreSQL so that several
workers never read the same chain head.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.audit import AuditLogEntry

logger = structlog.get_logger("calibra.audit_service")

# ── Action tags ────────────────────────────────────────────────────────────

ACTION_SESSION_CREATED = "CALIBRATION_SESSION_CREATED"
ACTION_SESSION_UPDATED = "CALIBRATION_SESSION_UPDATED"
ACTION_SESSION_STARTED = "CALIBRATION_SESSION_STARTED"
ACTION_SESSION_CANCELLED = "CALIBRATION_SESSION_CANCELLED"
ACTION_SESSION_CLOSED = "CALIBRATION_SESSION_CLOSED"
ACTION_PARTICIPANT_ADDED = "CALIBRATION_PARTICIPANT_ADDED"
ACTION_ADJUSTMENT_CREATED = "CALIBRATION_ADJUSTMENT_CREATED"

ENTITY_SESSION = "calibration_session"
ENTITY_ADJUSTMENT = "calibration_adjustment"


def _canonical_timestamp(value: datetime) -> str:
    # SQLite hands back naive datetimes; they were written as UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _canonical_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def compute_entry_hash(
    entry_id: uuid.UUID,
    account_id: uuid.UUID,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict[str, Any],
    created_at: datetime,
    previous_hash: str | None,
) -> str:
    material = "|".join(
        [
            str(entry_id),
            str(account_id),
            action,
            entity_type,
            entity_id,
            _canonical_payload(payload),
            _canonical_timestamp(created_at),
            previous_hash or "",
        ]
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class AuditService:
    """Writes and verifies the per-account audit chain."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from app.database import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory
        self._chain_locks: defaultdict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def record(
        self,
        *,
        account_id: uuid.UUID,
        action: str,
        entity_type: str,
        entity_id: uuid.UUID | str,
        payload: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        """Append one entry.  Returns ``None`` if the write failed."""
        log = logger.bind(
            account_id=str(account_id),
            action=action,
            entity_id=str(entity_id),
        )
        # Round-trip through JSON so the stored payload is exactly what was hashed.
        normalised = json.loads(_canonical_payload(payload or {}))

        try:
            async with self._chain_locks[account_id], self._session_factory() as session:
                async with session.begin():
                    await self._lock_chain(session, account_id)
                    previous_hash = await self._last_hash(session, account_id)
                    entry_id = uuid.uuid4()
                    created_at = datetime.now(timezone.utc)
                    entry = AuditLogEntry(
                        id=entry_id,
                        account_id=account_id,
                        action=action,
                        entity_type=entity_type,
                        entity_id=str(entity_id),
                        payload=normalised,
                        created_at=created_at,
                        previous_hash=previous_hash,
                        entry_hash=compute_entry_hash(
                            entry_id=entry_id,
                            account_id=account_id,
                            action=action,
                            entity_type=entity_type,
                            entity_id=str(entity_id),
                            payload=normalised,
                            created_at=created_at,
                            previous_hash=previous_hash,
                        ),
                    )
                    session.add(entry)
        except Exception:
            log.exception("audit_write_failed")
            return None

        log.info("audit_recorded", entry_id=str(entry.id))
        return entry

    @staticmethod
    async def _lock_chain(session: AsyncSession, account_id: uuid.UUID) -> None:
        """Hold the account's chain until the transaction ends (PostgreSQL only)."""
        connection = await session.connection()
        if connection.dialect.name != "postgresql":
            return
        key = int.from_bytes(hashlib.sha256(str(account_id).encode()).digest()[:8], "big", signed=True)
        await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})

    async def _last_hash(self, session: AsyncSession, account_id: uuid.UUID) -> str | None:
        result = await session.execute(
            select(AuditLogEntry.entry_hash)
            .where(AuditLogEntry.account_id == account_id)
            .order_by(AuditLogEntry.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_entries(
        self,
        account_id: uuid.UUID,
        entity_id: uuid.UUID | str | None = None,
        action: str | None = None,
    ) -> list[AuditLogEntry]:
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.account_id == account_id)
            .order_by(AuditLogEntry.created_at.asc())
        )
        if entity_id is not None:
            stmt = stmt.where(AuditLogEntry.entity_id == str(entity_id))
        if action is not None:
            stmt = stmt.where(AuditLogEntry.action == action)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def verify_chain(self, account_id: uuid.UUID) -> dict:
        """Recompute every hash in the account's chain.

        Returns a report with ``chain_intact`` and up to ten breaks.
        """
        entries = await self.list_entries(account_id)

        breaks: list[dict] = []
        previous_hash: str | None = None

        for entry in entries:
            if entry.previous_hash != previous_hash:
                breaks.append({
                    "entry_id": str(entry.id),
                    "issue": "previous_hash_mismatch",
                    "expected": previous_hash,
                    "actual": entry.previous_hash,
                })

            expected_hash = compute_entry_hash(
                entry_id=entry.id,
                account_id=entry.account_id,
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                payload=entry.payload,
                created_at=entry.created_at,
                previous_hash=entry.previous_hash,
            )
            if entry.entry_hash != expected_hash:
                breaks.append({
                    "entry_id": str(entry.id),
                    "issue": "entry_hash_mismatch",
                    "expected": expected_hash,
                    "actual": entry.entry_hash,
                })

            previous_hash = entry.entry_hash

        report = {
            "account_id": str(account_id),
            "total_entries": len(entries),
            "chain_intact": not breaks,
            "breaks_found": len(breaks),
            "breaks": breaks[:10],
        }
        logger.info(
            "audit_chain_verified",
            account_id=str(account_id),
            total_entries=len(entries),
            chain_intact=not breaks,
        )
        return report
