"""
Per-mailroom pool of recyclable package display numbers (1-999).

acquire() hands out the smallest free number; release() gives it back.
Selection and reservation are one step: the claim is a conditional UPDATE
(`... WHERE is_available`) and only a matched row counts as reserved. Within
one process, calls for the same mailroom are also serialized by a
per-mailroom lock; different mailrooms never share a lock.

The allocator runs its own short transactions so a claim is durable before the
caller persists anything that depends on it.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import Flask, current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.mailroom.constants import PACKAGE_NUMBER_MAX, PACKAGE_NUMBER_MIN
from app.mailroom.errors import InvalidPackageNumber, PersistenceFailure, PoolExhausted
from app.mailroom.modules.packages.models import PackageNumber

logger = logging.getLogger(__name__)

POOL_SIZE = PACKAGE_NUMBER_MAX - PACKAGE_NUMBER_MIN + 1


@dataclass(frozen=True)
class PoolStats:
    total: int
    available: int
    in_use: int

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "available": self.available, "in_use": self.in_use}


def validate_number(number: object) -> int:
    if isinstance(number, bool) or not isinstance(number, int):
        raise InvalidPackageNumber(number)
    if number < PACKAGE_NUMBER_MIN or number > PACKAGE_NUMBER_MAX:
        raise InvalidPackageNumber(number)
    return number


class PackageNumberAllocator:
    def __init__(self, session_factory: Callable[[], Session], *, max_attempts: int = 10) -> None:
        self._session_factory = session_factory
        self.max_attempts = max(1, max_attempts)
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, mailroom_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(mailroom_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[mailroom_id] = lock
            return lock

    @contextmanager
    def _session(self) -> Iterator[Session]:
        s = self._session_factory()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    # ── pool setup ──────────────────────────────────────────────────────────

    def seed(self, mailroom_id: int) -> int:
        """Insert any missing numbers as available. Idempotent; returns rows inserted."""
        with self.lock_for(mailroom_id):
            try:
                with self._session() as s:
                    inserted = self._seed_missing(s, mailroom_id)
            except IntegrityError:
                # Another process seeded concurrently; what it inserted is just as good.
                logger.info("Concurrent seed detected for mailroom %s", mailroom_id)
                with self._session() as s:
                    inserted = self._seed_missing(s, mailroom_id)
            except SQLAlchemyError as e:
                raise PersistenceFailure(f"Failed to seed package numbers: {e}", mailroom_id=mailroom_id) from e
        if inserted:
            logger.info("Seeded %s package numbers for mailroom %s", inserted, mailroom_id)
        return inserted

    def _seed_missing(self, s: Session, mailroom_id: int) -> int:
        existing = set(
            s.execute(select(PackageNumber.number).where(PackageNumber.mailroom_id == mailroom_id)).scalars()
        )
        missing = [n for n in range(PACKAGE_NUMBER_MIN, PACKAGE_NUMBER_MAX + 1) if n not in existing]
        if missing:
            s.add_all(PackageNumber(mailroom_id=mailroom_id, number=n, is_available=True) for n in missing)
            s.flush()
        return len(missing)

    # ── acquire / release ───────────────────────────────────────────────────

    def acquire(self, mailroom_id: int) -> int:
        """
        Claim the smallest available number for `mailroom_id`.
        Raises PoolExhausted when all numbers are in use (no mutation happens).
        """
        with self.lock_for(mailroom_id):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    with self._session() as s:
                        number = self._claim_smallest(s, mailroom_id)
                except PoolExhausted:
                    logger.warning("Package number pool exhausted for mailroom %s", mailroom_id)
                    raise
                except SQLAlchemyError as e:
                    raise PersistenceFailure(
                        f"Failed to acquire a package number: {e}", mailroom_id=mailroom_id
                    ) from e
                if number is not None:
                    logger.debug("Acquired package number %s for mailroom %s (attempt %s)", number, mailroom_id, attempt)
                    return number
                logger.info("Lost package number claim race for mailroom %s (attempt %s)", mailroom_id, attempt)
        raise PersistenceFailure(
            f"Could not claim a package number after {self.max_attempts} attempts.", mailroom_id=mailroom_id
        )

    def _claim_smallest(self, s: Session, mailroom_id: int) -> int | None:
        candidate = s.execute(
            select(PackageNumber.number)
            .where(PackageNumber.mailroom_id == mailroom_id, PackageNumber.is_available.is_(True))
            .order_by(PackageNumber.number.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        ).scalar()

        if candidate is None:
            seeded = s.execute(
                select(func.count()).select_from(PackageNumber).where(PackageNumber.mailroom_id == mailroom_id)
            ).scalar_one()
            if seeded:
                raise PoolExhausted(mailroom_id)
            logger.warning("Package number pool for mailroom %s was never seeded; seeding now", mailroom_id)
            self._seed_missing(s, mailroom_id)
            candidate = PACKAGE_NUMBER_MIN

        claimed = s.execute(
            update(PackageNumber)
            .where(
                PackageNumber.mailroom_id == mailroom_id,
                PackageNumber.number == candidate,
                PackageNumber.is_available.is_(True),
            )
            .values(is_available=False, last_used_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        return candidate if claimed == 1 else None

    def release(self, mailroom_id: int, number: int) -> None:
        """
        Return `number` to the pool. Releasing a number that is already
        available is a no-op, so a retried release never double-counts.
        """
        number = validate_number(number)
        with self.lock_for(mailroom_id):
            try:
                with self._session() as s:
                    released = s.execute(
                        update(PackageNumber)
                        .where(
                            PackageNumber.mailroom_id == mailroom_id,
                            PackageNumber.number == number,
                            PackageNumber.is_available.is_(False),
                        )
                        .values(is_available=True, last_used_at=datetime.utcnow())
                        .execution_options(synchronize_session=False)
                    ).rowcount
            except SQLAlchemyError as e:
                raise PersistenceFailure(
                    f"Failed to release package number {number}: {e}", mailroom_id=mailroom_id
                ) from e
        if released:
            logger.debug("Released package number %s for mailroom %s", number, mailroom_id)
        else:
            logger.info("Package number %s for mailroom %s was already available", number, mailroom_id)

    # ── introspection / maintenance ─────────────────────────────────────────

    def is_available(self, mailroom_id: int, number: int) -> bool:
        number = validate_number(number)
        with self._session() as s:
            row = s.get(PackageNumber, (mailroom_id, number))
            return bool(row and row.is_available)

    def stats(self, mailroom_id: int) -> PoolStats:
        with self._session() as s:
            rows = s.execute(
                select(PackageNumber.is_available, func.count())
                .where(PackageNumber.mailroom_id == mailroom_id)
                .group_by(PackageNumber.is_available)
            ).all()
        counts = {bool(avail): int(n) for avail, n in rows}
        available = counts.get(True, 0)
        in_use = counts.get(False, 0)
        return PoolStats(total=available + in_use, available=available, in_use=in_use)

    def reconcile(
        self,
        mailroom_id: int,
        live_numbers: Iterable[int],
        *,
        grace: timedelta = timedelta(minutes=10),
        now: datetime | None = None,
    ) -> list[int]:
        """
        Release numbers marked in use that no live package holds.

        Numbers claimed within `grace` are left alone: their registration may
        still be in flight. Returns the numbers that were released.
        """
        held = set(live_numbers)
        cutoff = (now or datetime.utcnow()) - grace
        with self.lock_for(mailroom_id):
            with self._session() as s:
                stale = [
                    n
                    for n, last_used in s.execute(
                        select(PackageNumber.number, PackageNumber.last_used_at).where(
                            PackageNumber.mailroom_id == mailroom_id,
                            PackageNumber.is_available.is_(False),
                        )
                    ).all()
                    if n not in held and (last_used is None or last_used <= cutoff)
                ]
                if stale:
                    s.execute(
                        update(PackageNumber)
                        .where(
                            PackageNumber.mailroom_id == mailroom_id,
                            PackageNumber.number.in_(stale),
                            PackageNumber.is_available.is_(False),
                        )
                        .values(is_available=True, last_used_at=datetime.utcnow())
                        .execution_options(synchronize_session=False)
                    )
        if stale:
            logger.warning("Reconciled %s leaked package numbers for mailroom %s: %s", len(stale), mailroom_id, stale)
        return sorted(stale)


def init_allocator(app: Flask) -> PackageNumberAllocator:
    allocator = PackageNumberAllocator(
        app.extensions["sqlalchemy_sessionmaker"],
        max_attempts=int(app.config.get("ALLOCATOR_MAX_ATTEMPTS") or 10),
    )
    app.extensions["package_allocator"] = allocator
    return allocator


def get_allocator(app: Flask | None = None) -> PackageNumberAllocator:
    app = app or current_app  # type: ignore[assignment]
    return app.extensions["package_allocator"]
