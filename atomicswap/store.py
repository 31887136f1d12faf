"""
Offer persistence for atomicswap.

Stores hold the serialized form (`Offer.to_dict()`), so a loaded Offer never
aliases another caller's copy. `save()` is a compare-and-swap on the offer's
`version`: the caller passes the version it read, and the write is refused
with `Conflict` if someone else wrote in between.
"""

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Dict, Any, List

from .core import OfferStatus
from .errors import NotFound, Conflict, StoreUnavailable
from .offer import Offer

log = logging.getLogger(__name__)


class OfferStore:
    """Base store. Subclasses provide `_read_all` / `_write_all`."""

    def __init__(self):
        self._lock = threading.Lock()

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    def _write_all(self, db: Dict[str, Dict[str, Any]]):
        raise NotImplementedError

    @contextlib.contextmanager
    def _locked(self):
        """Exclusive access to the whole database for one read-check-write."""
        with self._lock:
            yield

    def load(self, offer_id: str) -> Offer:
        with self._locked():
            entry = self._read_all().get(offer_id)
        if entry is None:
            raise NotFound(f"offer {offer_id} not found", context={"offer_id": offer_id})
        return Offer.from_dict(entry)

    def save(self, offer: Offer, expected_version: Optional[int] = None) -> Offer:
        """
        Persist `offer`. `expected_version=None` means insert-only.

        Returns the stored offer (version bumped).
        """
        with self._locked():
            db = self._read_all()
            current = db.get(offer.offer_id)
            if expected_version is None:
                if current is not None:
                    raise Conflict(f"offer {offer.offer_id} already exists",
                                   context={"offer_id": offer.offer_id})
            else:
                if current is None:
                    raise NotFound(f"offer {offer.offer_id} not found",
                                   context={"offer_id": offer.offer_id})
                if int(current.get("version", 0)) != expected_version:
                    raise Conflict(
                        f"offer {offer.offer_id} changed concurrently "
                        f"(expected version {expected_version}, found {current.get('version')})",
                        context={"offer_id": offer.offer_id},
                    )
            stored = offer.evolve(version=(expected_version or 0) + 1)
            db[offer.offer_id] = stored.to_dict()
            self._write_all(db)
        return stored

    def list(self, status: Optional[OfferStatus] = None) -> List[Offer]:
        """All offers, newest first."""
        with self._locked():
            entries = list(self._read_all().values())
        offers = [Offer.from_dict(e) for e in entries]
        if status is not None:
            offers = [o for o in offers if o.status is status]
        offers.sort(key=lambda o: (o.created_at, o.offer_id), reverse=True)
        return offers

    def find_by_idempotency_key(self, key: str) -> Optional[Offer]:
        with self._locked():
            for entry in self._read_all().values():
                if entry.get("idempotency_key") == key:
                    return Offer.from_dict(entry)
        return None


class MemoryOfferStore(OfferStore):
    """In-process store."""

    def __init__(self):
        super().__init__()
        self._db: Dict[str, Dict[str, Any]] = {}

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        return self._db

    def _write_all(self, db: Dict[str, Dict[str, Any]]):
        self._db = db


class JsonFileOfferStore(OfferStore):
    """
    Offers persisted to a single JSON file.

    Every call holds an exclusive `flock` on `<path>.lock` for its whole
    read-check-write, so stores in other threads or processes on the same
    path are serialized and the version check is a real compare-and-swap.
    Writes go to a uniquely named temp file that replaces the original, so
    readers never see a half-written database.

    Each call re-reads and re-parses the whole file, even `load()` of a
    single offer. Fine for an audit log of swaps; not meant for large books.
    """

    def __init__(self, path):
        super().__init__()
        self.path = Path(os.path.expanduser(str(path)))
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @contextlib.contextmanager
    def _locked(self):
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
            except OSError as e:
                log.error(f"Failed to open offer db lock {self.lock_path}: {e}")
                raise StoreUnavailable(f"offer store lock unavailable: {e}")
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            log.error(f"Failed to load offer db {self.path}: {e}")
            raise StoreUnavailable(f"offer store unreadable: {e}")

    def _write_all(self, db: Dict[str, Dict[str, Any]]):
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile("w", dir=self.path.parent, prefix=self.path.name + ".",
                                             suffix=".tmp", delete=False) as tmp:
                tmp_path = tmp.name
                json.dump(db, tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            log.error(f"Failed to save offer db {self.path}: {e}")
            raise StoreUnavailable(f"offer store unwritable: {e}")
        finally:
            if tmp_path is not None:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_path)
