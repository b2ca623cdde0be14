"""
Append-only activity ledger for stock items.

Every create/update/adjust/delete/image-upload against a stock item (or
one of its shades) appends one entry with before/after snapshots. The
ledger never raises to the code that mutates stock: a failed write is
returned as a ``LedgerResult`` carrying a ``LedgerWriteFailure`` and
logged by ``record()``. Business data durability takes priority over
audit completeness.

Each write runs in its own session, so a ledger failure can never roll
back the stock mutation it describes.
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from .database import session_scope
from .errors import LedgerWriteFailure
from .models import LedgerEntry, StockAction, utcnow

logger = logging.getLogger(__name__)

LEDGER_DEFAULT_LIMIT = int(os.environ.get("LEDGER_DEFAULT_LIMIT", "50"))

SENSITIVE_KEYS = frozenset({"password", "token", "secret"})


def sanitize_snapshot(data: Any) -> Any:
    """Strip password/token/secret keys from a snapshot, including nested dicts."""
    if isinstance(data, dict):
        return {
            key: sanitize_snapshot(value)
            for key, value in data.items()
            if key not in SENSITIVE_KEYS
        }
    if isinstance(data, list):
        return [sanitize_snapshot(item) for item in data]
    return data


def _as_action(action: Union[StockAction, str]) -> StockAction:
    if isinstance(action, StockAction):
        return action
    return StockAction(str(action).upper())


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a ledger write: exactly one of ``entry`` or ``error`` is set."""

    entry: Optional[LedgerEntry] = None
    error: Optional[LedgerWriteFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StockLedger:
    """
    Writes and reads stock ledger entries.

    Args:
        session_factory: Callable returning a new SQLAlchemy session.
        clock: Callable returning the timestamp for new entries
            (naive UTC). Defaults to the current time.
    """

    def __init__(self, session_factory: Callable, clock: Callable[[], datetime] = None):
        self.session_factory = session_factory
        self.clock = clock or utcnow

    def append(self,
               stock,
               action: Union[StockAction, str],
               actor: str,
               description: Optional[str] = None,
               old_data: Optional[Dict[str, Any]] = None,
               new_data: Optional[Dict[str, Any]] = None,
               ip_address: Optional[str] = None,
               user_agent: Optional[str] = None) -> LedgerResult:
        """
        Persist one ledger entry.

        Never raises for storage or serialisation problems; those come
        back as ``LedgerResult.error``.

        Args:
            stock: The StockItem the action applies to.
            action: StockAction (or its name).
            actor: Identifier of the user performing the action.
            description: Human-readable summary of the change.
            old_data: Snapshot before the change (None for creates).
            new_data: Snapshot after the change (None for deletes).
            ip_address: Optional client address.
            user_agent: Optional client user agent.

        Returns:
            LedgerResult with the saved entry or the failure.
        """
        db = None
        try:
            entry = LedgerEntry(
                stock_id=stock.id,
                stock_code=stock.stock_id,
                product=stock.product,
                action=_as_action(action),
                description=description,
                old_data=sanitize_snapshot(old_data),
                new_data=sanitize_snapshot(new_data),
                performed_by=actor or "system",
                performed_at=self.clock(),
                ip_address=ip_address,
                user_agent=user_agent,
            )
            db = self.session_factory()
            db.add(entry)
            db.commit()
            return LedgerResult(entry=entry)
        except (SQLAlchemyError, AttributeError, TypeError, ValueError) as e:
            if db is not None:
                db.rollback()
            return LedgerResult(error=LedgerWriteFailure(f"Failed to record {action} for stock {getattr(stock, 'id', None)}: {e}"))
        finally:
            if db is not None:
                db.close()

    def record(self, stock, action, actor, description=None, old_data=None, new_data=None,
               ip_address=None, user_agent=None) -> Optional[LedgerEntry]:
        """Append an entry, logging any failure. Returns the entry or None."""
        result = self.append(stock, action, actor, description, old_data, new_data,
                             ip_address, user_agent)
        if not result.ok:
            logger.error(f"Error logging stock action: {result.error}")
            return None
        return result.entry

    # ---- reads (newest first) ----

    @staticmethod
    def _ordered(db):
        return db.query(LedgerEntry).order_by(
            LedgerEntry.performed_at.desc(), LedgerEntry.id.desc()
        )

    def by_stock(self, stock_id: int) -> List[LedgerEntry]:
        with session_scope(self.session_factory) as db:
            return self._ordered(db).filter(LedgerEntry.stock_id == stock_id).all()

    def by_actor(self, username: str, limit: Optional[int] = None) -> List[LedgerEntry]:
        with session_scope(self.session_factory) as db:
            query = self._ordered(db).filter(LedgerEntry.performed_by == username)
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def recent(self, limit: int = LEDGER_DEFAULT_LIMIT) -> List[LedgerEntry]:
        with session_scope(self.session_factory) as db:
            return self._ordered(db).limit(limit).all()

    def by_action(self, action: Union[StockAction, str],
                  limit: int = LEDGER_DEFAULT_LIMIT) -> List[LedgerEntry]:
        action = _as_action(action)
        with session_scope(self.session_factory) as db:
            return self._ordered(db).filter(LedgerEntry.action == action).limit(limit).all()

    def by_date_range(self, start: datetime, end: datetime) -> List[LedgerEntry]:
        """Entries with start <= performed_at <= end."""
        with session_scope(self.session_factory) as db:
            return self._ordered(db).filter(
                LedgerEntry.performed_at >= start,
                LedgerEntry.performed_at <= end,
            ).all()

    def all(self, limit: Optional[int] = 1000, offset: int = 0) -> Dict[str, Any]:
        """
        Page through the whole ledger.

        Args:
            limit: Page size; None returns every entry after ``offset``.
            offset: Number of newest entries to skip.

        Returns:
            Dict with 'data' (list of entries) and 'total' (entry count).
        """
        with session_scope(self.session_factory) as db:
            total = db.query(func.count(LedgerEntry.id)).scalar()
            query = self._ordered(db).offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return {"data": query.all(), "total": total}

    def stats(self, recent_limit: int = 10) -> Dict[str, Any]:
        """Totals per action plus the most recently touched stock items."""
        with session_scope(self.session_factory) as db:
            total = db.query(func.count(LedgerEntry.id)).scalar()
            counts = dict(
                db.query(LedgerEntry.action, func.count(LedgerEntry.id))
                .group_by(LedgerEntry.action)
                .all()
            )
            recent = self._ordered(db).limit(recent_limit).all()

        return {
            "total_actions": total,
            "by_action": {action.value: counts.get(action, 0) for action in StockAction},
            "recent_stocks": [
                {
                    "id": entry.stock_id,
                    "product": entry.product,
                    "stock_code": entry.stock_code,
                    "action": entry.action.value,
                    "performed_by": entry.performed_by,
                    "performed_at": entry.performed_at.isoformat(),
                    "description": entry.description,
                }
                for entry in recent
            ],
        }
