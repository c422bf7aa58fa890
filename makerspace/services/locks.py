from __future__ import annotations

import threading
import zlib
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.orm import Session


_REGISTRY_LOCK = threading.Lock()
_RESOURCE_LOCKS: dict[str, threading.Lock] = {}

LOCK_NAMESPACES = {
    "manager": 7001,
    "machine": 7002,
    "user": 7003,
}


def _lock_for(key: str) -> threading.Lock:
    with _REGISTRY_LOCK:
        lock = _RESOURCE_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _RESOURCE_LOCKS[key] = lock
        return lock


def resource_key(kind: str, identifier: int) -> str:
    return f"{kind}:{identifier}"


def _advisory_lock(db: Session, key: str) -> None:
    kind, _, identifier = key.partition(":")
    namespace = LOCK_NAMESPACES.get(kind, 7000)
    db.execute(
        text("SELECT pg_advisory_xact_lock(:namespace, :key)"),
        {"namespace": namespace, "key": zlib.crc32(identifier.encode("utf-8")) & 0x7FFFFFFF},
    )


@contextmanager
def resource_guard(db: Session, *keys: str):
    """Serialize check-then-insert sections per resource.

    Process-local locks are taken in sorted order so concurrent guards over
    overlapping key sets cannot deadlock. On PostgreSQL a transaction-scoped
    advisory lock per key extends the guarantee across processes; it is
    released when the caller commits.
    """
    ordered = sorted(set(keys))
    acquired: list[threading.Lock] = []
    try:
        for key in ordered:
            lock = _lock_for(key)
            lock.acquire()
            acquired.append(lock)
        bind = db.get_bind()
        if bind.dialect.name == "postgresql":
            for key in ordered:
                _advisory_lock(db, key)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()
