"""
Storage Backend Module

Provides the abstract persistence port and its four implementations:

- ``TransientStorage``: nothing is stored, everything is lost at exit
- ``JSONFileStorage``: one JSON document per collection
- ``SQLiteStorage``: one table per entity, written row by row
- ``SnapshotStorage``: the whole object graph pickled as one unit

Document and relational backends rebuild fresh objects on every load and
re-resolve rentals against bikes and customers by id. The snapshot backend
restores the exact graph it captured, allocator counters included.
All monetary values stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Union
from pathlib import Path
from contextlib import contextmanager
import json
import logging
import os
import pickle
import sqlite3
import tempfile
import threading

from .errors import StorageError
from .models import (
    BIKES, CUSTOMERS, RENTALS, COLLECTIONS,
    Bike, Customer, Rental, RentalState
)

logger = logging.getLogger(__name__)

ENTITY_TYPES = {BIKES: Bike, CUSTOMERS: Customer, RENTALS: Rental}


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")


def _atomic_write(path: Path, payload: bytes) -> None:
    """Write to a temp file in the same directory, then rename over ``path``"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    name = "abstract"

    preserves_identity = False
    """True when a reload hands back the very object graph that was saved."""

    @abstractmethod
    def load_all(self, collection: str) -> List[Any]:
        """Load all records of a collection, in insertion order"""
        pass

    @abstractmethod
    def save_all(self, collection: str, records: Sequence[Any]) -> None:
        """Replace the stored contents of a collection"""
        pass

    @abstractmethod
    def save(self, collection: str, record: Any) -> None:
        """Insert or update a single record"""
        pass

    @abstractmethod
    def sync(self, state: RentalState, collection: str, record: Any) -> None:
        """
        Durably reflect one mutation of ``record`` in ``state``.

        Each backend maps this onto its own write policy (whole document,
        single row, whole snapshot, or nothing).
        """
        pass

    def load_state(self) -> RentalState:
        """Rehydrate the whole graph, linking rentals by id"""
        return RentalState.link(
            self.load_all(BIKES),
            self.load_all(CUSTOMERS),
            self.load_all(RENTALS)
        )

    @contextmanager
    def operation(self):
        """
        Group the writes of one engine operation.

        Backends that can commit several writes together make them all or
        nothing (default: each write stands alone).
        """
        yield

    def load_sequences(self) -> Dict[str, int]:
        """Persisted allocator counters (default: none persisted)"""
        return {}

    def save_sequences(self, sequences: Dict[str, int]) -> None:
        """Persist allocator counters (default no-op)"""
        pass

    def close(self) -> None:
        """Close storage (default no-op)"""
        pass


class TransientStorage(StorageInterface):
    """Keeps nothing. Loads are empty and saves are no-ops."""

    name = "memory"

    def load_all(self, collection: str) -> List[Any]:
        _check_collection(collection)
        return []

    def save_all(self, collection: str, records: Sequence[Any]) -> None:
        _check_collection(collection)

    def save(self, collection: str, record: Any) -> None:
        _check_collection(collection)

    def sync(self, state: RentalState, collection: str, record: Any) -> None:
        _check_collection(collection)


class JSONFileStorage(StorageInterface):
    """
    One JSON document per collection inside ``directory``.

    Every sync rewrites the affected collection's document in full, through
    a temp file and an atomic rename.
    """

    name = "json"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def path_for(self, collection: str) -> Path:
        _check_collection(collection)
        return self.directory / f"{collection}.json"

    def _read_documents(self, collection: str) -> List[Dict[str, Any]]:
        path = self.path_for(collection)
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as fh:
                document = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

        records = document.get("records") if isinstance(document, dict) else None
        if not isinstance(records, list):
            raise StorageError(f"Malformed document {path}: missing 'records' list")
        return records

    def _write_documents(self, collection: str, documents: List[Dict[str, Any]]) -> None:
        path = self.path_for(collection)
        payload = json.dumps(
            {"collection": collection, "records": documents},
            indent=2, ensure_ascii=False
        ).encode("utf-8")
        try:
            _atomic_write(path, payload)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e

    def load_all(self, collection: str) -> List[Any]:
        """Load all records from a collection document"""
        _check_collection(collection)
        with self._lock:
            entity_type = ENTITY_TYPES[collection]
            documents = self._read_documents(collection)
            try:
                return [entity_type.from_dict(doc) for doc in documents]
            except (KeyError, TypeError, ValueError) as e:
                raise StorageError(f"Malformed record in {self.path_for(collection)}: {e}") from e

    def save_all(self, collection: str, records: Sequence[Any]) -> None:
        with self._lock:
            self._write_documents(collection, [record.to_dict() for record in records])

    def save(self, collection: str, record: Any) -> None:
        """Upsert one record, keeping the position of an existing one"""
        with self._lock:
            identity = _identity_of(collection, record)
            documents = self._read_documents(collection)
            updated = record.to_dict()
            for index, doc in enumerate(documents):
                if _identity_of_dict(collection, doc) == identity:
                    documents[index] = updated
                    break
            else:
                documents.append(updated)
            self._write_documents(collection, documents)

    def sync(self, state: RentalState, collection: str, record: Any) -> None:
        self.save_all(collection, state.records(collection))


def _identity_of(collection: str, record: Any) -> Any:
    if collection == BIKES:
        return record.key
    if collection == CUSTOMERS:
        return record.customer_id
    return record.rental_id


def _identity_of_dict(collection: str, doc: Dict[str, Any]) -> Any:
    if collection == BIKES:
        return doc["bike_id"].strip().casefold()
    if collection == CUSTOMERS:
        return int(doc["customer_id"])
    return int(doc["rental_id"])


class SQLiteStorage(StorageInterface):
    """
    SQLite storage with one table per entity.

    Bike status is stored as its string tag and rentals carry foreign keys to
    their bike and customer. ``sync`` upserts and commits the single changed
    row, so a crash mid-session leaves only fully committed rows behind.
    """

    name = "sqlite"

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS bikes (
            bike_key TEXT PRIMARY KEY,
            bike_id TEXT NOT NULL,
            label TEXT NOT NULL,
            hourly_rate TEXT NOT NULL,
            currency TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('AVAILABLE', 'RENTED', 'IN_REPAIR')),
            last_maintenance TEXT,
            note TEXT NOT NULL DEFAULT ''
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS customers (
            customer_id INTEGER PRIMARY KEY,
            name TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS rentals (
            rental_id INTEGER PRIMARY KEY,
            customer_id INTEGER NOT NULL REFERENCES customers(customer_id),
            bike_key TEXT NOT NULL REFERENCES bikes(bike_key),
            bike_id TEXT NOT NULL,
            start_time TEXT NOT NULL,
            closed INTEGER NOT NULL DEFAULT 0,
            total_charge TEXT,
            charge_currency TEXT,
            duration_hours INTEGER,
            end_time TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS id_sequences (
            entity TEXT PRIMARY KEY,
            next_id INTEGER NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_rentals_bike_key ON rentals(bike_key)",
    )

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._in_transaction = False
        try:
            # Set isolation_level to 'DEFERRED' to enable manual transaction control
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")

            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

            for statement in self.SCHEMA:
                self._connection.execute(statement)
            self._connection.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open SQLite database {self.db_path}: {e}") from e

    def _require_open(self) -> None:
        if self._connection is None:
            raise StorageError(f"SQLite database {self.db_path} is closed")

    # Row mapping

    @staticmethod
    def _bike_from_row(row: sqlite3.Row) -> Bike:
        return Bike.from_dict({
            "bike_id": row["bike_id"],
            "label": row["label"],
            "hourly_rate": {"amount": row["hourly_rate"], "currency": row["currency"]},
            "status": row["status"],
            "last_maintenance": row["last_maintenance"],
            "note": row["note"],
        })

    @staticmethod
    def _rental_from_row(row: sqlite3.Row) -> Rental:
        charge = None
        if row["total_charge"] is not None:
            charge = {"amount": row["total_charge"], "currency": row["charge_currency"]}
        return Rental.from_dict({
            "rental_id": row["rental_id"],
            "customer_id": row["customer_id"],
            "bike_id": row["bike_id"],
            "start_time": row["start_time"],
            "closed": bool(row["closed"]),
            "total_charge": charge,
            "duration_hours": row["duration_hours"],
            "end_time": row["end_time"],
        })

    def _upsert(self, collection: str, record: Any) -> None:
        self._require_open()
        if collection == BIKES:
            data = record.to_dict()
            self._connection.execute("""
                INSERT INTO bikes (bike_key, bike_id, label, hourly_rate, currency, status, last_maintenance, note)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(bike_key) DO UPDATE SET
                    bike_id = excluded.bike_id,
                    label = excluded.label,
                    hourly_rate = excluded.hourly_rate,
                    currency = excluded.currency,
                    status = excluded.status,
                    last_maintenance = excluded.last_maintenance,
                    note = excluded.note
            """, (
                record.key, data["bike_id"], data["label"],
                data["hourly_rate"]["amount"], data["hourly_rate"]["currency"],
                data["status"], data["last_maintenance"], data["note"]
            ))
        elif collection == CUSTOMERS:
            self._connection.execute("""
                INSERT INTO customers (customer_id, name) VALUES (?, ?)
                ON CONFLICT(customer_id) DO UPDATE SET name = excluded.name
            """, (record.customer_id, record.name))
        elif collection == RENTALS:
            data = record.to_dict()
            charge = data["total_charge"] or {}
            self._connection.execute("""
                INSERT INTO rentals (rental_id, customer_id, bike_key, bike_id, start_time,
                                     closed, total_charge, charge_currency, duration_hours, end_time)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(rental_id) DO UPDATE SET
                    closed = excluded.closed,
                    total_charge = excluded.total_charge,
                    charge_currency = excluded.charge_currency,
                    duration_hours = excluded.duration_hours,
                    end_time = excluded.end_time
            """, (
                record.rental_id, record.customer_id, record.bike_key, record.bike_id,
                data["start_time"], int(record.closed), charge.get("amount"),
                charge.get("currency"), data["duration_hours"], data["end_time"]
            ))
        else:
            raise ValueError(f"Unknown collection: {collection}")

    # Port

    def load_all(self, collection: str) -> List[Any]:
        """Load all rows of a table"""
        _check_collection(collection)
        self._require_open()
        with self._lock:
            try:
                if collection == BIKES:
                    rows = self._connection.execute("SELECT * FROM bikes ORDER BY rowid").fetchall()
                    return [self._bike_from_row(row) for row in rows]
                if collection == CUSTOMERS:
                    rows = self._connection.execute("SELECT * FROM customers ORDER BY customer_id").fetchall()
                    return [Customer(customer_id=row["customer_id"], name=row["name"]) for row in rows]
                rows = self._connection.execute("SELECT * FROM rentals ORDER BY rental_id").fetchall()
                return [self._rental_from_row(row) for row in rows]
            except sqlite3.Error as e:
                raise StorageError(f"Cannot load {collection}: {e}") from e

    def save_all(self, collection: str, records: Sequence[Any]) -> None:
        """Upsert every record in one transaction"""
        _check_collection(collection)
        self._require_open()
        with self._lock:
            try:
                with self.atomic():
                    for record in records:
                        self._upsert(collection, record)
            except sqlite3.Error as e:
                raise StorageError(f"Cannot save {collection}: {e}") from e

    def save(self, collection: str, record: Any) -> None:
        """Upsert a single row and commit it"""
        _check_collection(collection)
        with self._lock:
            try:
                self._upsert(collection, record)
                if not self._in_transaction:
                    self._connection.commit()
            except sqlite3.Error as e:
                if not self._in_transaction:
                    self._connection.rollback()
                raise StorageError(f"Cannot save {collection} record: {e}") from e

    def sync(self, state: RentalState, collection: str, record: Any) -> None:
        self.save(collection, record)

    def load_sequences(self) -> Dict[str, int]:
        self._require_open()
        with self._lock:
            try:
                rows = self._connection.execute("SELECT entity, next_id FROM id_sequences").fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Cannot load id sequences: {e}") from e
            return {row["entity"]: row["next_id"] for row in rows}

    def save_sequences(self, sequences: Dict[str, int]) -> None:
        self._require_open()
        with self._lock:
            try:
                with self.atomic():
                    for entity, next_id in sequences.items():
                        self._connection.execute("""
                            INSERT INTO id_sequences (entity, next_id) VALUES (?, ?)
                            ON CONFLICT(entity) DO UPDATE SET next_id = excluded.next_id
                        """, (entity, next_id))
            except sqlite3.Error as e:
                raise StorageError(f"Cannot save id sequences: {e}") from e

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # SQLite with isolation_level='DEFERRED' automatically starts transactions
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._in_transaction = False
                if self._connection is not None:
                    self._connection.rollback()

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations; nested blocks join the outer one"""
        with self._lock:
            if self._in_transaction:
                yield
                return
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise

    @contextmanager
    def operation(self):
        """Commit every row written by one engine operation in one transaction"""
        self._require_open()
        try:
            with self.atomic():
                yield
        except sqlite3.Error as e:
            raise StorageError(f"Cannot commit operation: {e}") from e

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class SnapshotStorage(StorageInterface):
    """
    Pickles the entire ``RentalState`` together with the allocator counters
    as one unit, and restores it as one unit.

    Unlike the other backends, a reload yields the captured object graph
    itself rather than objects rebuilt from ids.
    """

    name = "snapshot"
    preserves_identity = True

    FORMAT_VERSION = 1

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._state: Optional[RentalState] = None
        self._sequences: Dict[str, int] = {}

    def _read(self) -> None:
        if self._state is not None:
            return
        if not self.path.exists():
            self._state = RentalState()
            return
        try:
            with open(self.path, "rb") as fh:
                snapshot = pickle.load(fh)
        except (OSError, pickle.UnpicklingError, EOFError, AttributeError, ImportError) as e:
            raise StorageError(f"Cannot read snapshot {self.path}: {e}") from e

        if not isinstance(snapshot, dict) or snapshot.get("version") != self.FORMAT_VERSION:
            raise StorageError(f"Unsupported snapshot format in {self.path}")
        self._state = snapshot["state"]
        self._sequences = dict(snapshot.get("sequences", {}))

    def _write(self) -> None:
        snapshot = {
            "version": self.FORMAT_VERSION,
            "state": self._state,
            "sequences": self._sequences,
        }
        try:
            _atomic_write(self.path, pickle.dumps(snapshot, protocol=pickle.HIGHEST_PROTOCOL))
        except (OSError, pickle.PicklingError) as e:
            raise StorageError(f"Cannot write snapshot {self.path}: {e}") from e

    def load_state(self) -> RentalState:
        with self._lock:
            self._read()
            return self._state

    def load_all(self, collection: str) -> List[Any]:
        _check_collection(collection)
        with self._lock:
            self._read()
            return self._state.records(collection)

    def save_all(self, collection: str, records: Sequence[Any]) -> None:
        _check_collection(collection)
        with self._lock:
            self._read()
            if collection == BIKES:
                self._state.bikes = {record.key: record for record in records}
            elif collection == CUSTOMERS:
                self._state.customers = {record.customer_id: record for record in records}
            else:
                self._state.rentals = {record.rental_id: record for record in records}
            self._write()

    def save(self, collection: str, record: Any) -> None:
        _check_collection(collection)
        with self._lock:
            self._read()
            if collection == BIKES:
                self._state.bikes[record.key] = record
            elif collection == CUSTOMERS:
                self._state.customers[record.customer_id] = record
            else:
                self._state.rentals[record.rental_id] = record
            self._write()

    def sync(self, state: RentalState, collection: str, record: Any) -> None:
        with self._lock:
            self._state = state
            self._write()

    def load_sequences(self) -> Dict[str, int]:
        with self._lock:
            self._read()
            return dict(self._sequences)

    def save_sequences(self, sequences: Dict[str, int]) -> None:
        # Written out with the next snapshot
        with self._lock:
            self._sequences = dict(sequences)


def create_storage(config) -> StorageInterface:
    """
    Build the backend named by ``config.storage_backend``.

    Args:
        config: A ``RentalConfig`` (or anything with the same attributes)

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = config.storage_backend.lower()
    data_dir = Path(config.data_dir)

    if backend == "memory":
        return TransientStorage()
    if backend == "json":
        return JSONFileStorage(data_dir / config.json_dir_name)
    if backend == "sqlite":
        data_dir.mkdir(parents=True, exist_ok=True)
        return SQLiteStorage(data_dir / config.sqlite_file)
    if backend == "snapshot":
        return SnapshotStorage(data_dir / config.snapshot_file)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
