"""Append-only record of applied package versions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from installer_api.database import updates, utcnow
from installer_api.errors import LedgerWriteFailure


@dataclass(frozen=True)
class LedgerEntry:
    """One applied version."""

    version: str
    applied_at: datetime

    def to_dict(self) -> dict:
        return {"version": self.version, "applied_at": self.applied_at.isoformat()}


class VersionLedger:
    """Read and append ``updates`` rows; the newest row is the current version."""

    def __init__(self, engine: Engine, logger: Optional[logging.Logger] = None) -> None:
        self.engine = engine
        self.log = logger or logging.getLogger("installer_api.ledger")

    def current_version(self) -> Optional[str]:
        query = (
            sa.select(updates.c.version)
            .order_by(updates.c.applied_at.desc(), updates.c.id.desc())
            .limit(1)
        )
        with self.engine.connect() as connection:
            return connection.execute(query).scalar_one_or_none()

    def history(self, limit: int = 50) -> List[LedgerEntry]:
        """Return applied versions, newest first."""
        safe_limit = max(1, min(500, int(limit or 50)))
        query = (
            sa.select(updates.c.version, updates.c.applied_at)
            .order_by(updates.c.applied_at.desc(), updates.c.id.desc())
            .limit(safe_limit)
        )
        with self.engine.connect() as connection:
            rows = connection.execute(query).all()
        return [LedgerEntry(version=row.version, applied_at=row.applied_at) for row in rows]

    def record(self, version: str) -> LedgerEntry:
        entry = LedgerEntry(version=str(version), applied_at=utcnow())
        try:
            with self.engine.begin() as connection:
                connection.execute(
                    updates.insert().values(version=entry.version, applied_at=entry.applied_at)
                )
        except SQLAlchemyError as exc:
            self.log.error("Could not record version %s: %s", version, exc)
            raise LedgerWriteFailure(version=entry.version, hint=str(exc)) from exc
        self.log.info("Recorded applied version %s", entry.version)
        return entry


__all__ = ["LedgerEntry", "VersionLedger"]
