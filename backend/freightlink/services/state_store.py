"""SQLite-backed state store for loads, bids, shipments, OTPs and documents."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Optional, Sequence

from pydantic import BaseModel, TypeAdapter

from freightlink.core.config import get_settings
from freightlink.core.logging import logger
from freightlink.models.marketplace import (
    BidRecord,
    BidStatus,
    CarrierProfile,
    DocumentRecord,
    LoadRecord,
    LoadStateChange,
    LoadStatus,
    OtpRecord,
    OtpRequestRecord,
    OtpRequestStatus,
    OtpRequestType,
    ShipmentRecord,
    ShipmentStatus,
)


_carrier_adapter: TypeAdapter = TypeAdapter(CarrierProfile)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _dump(model: BaseModel) -> str:
    return _json_dumps(model.model_dump(mode="json"))


class MarketplaceStateStore:
    """Durable state manager for the marketplace transaction core.

    All writes go through ``transaction()``, which holds a lock shared by every
    store instance on the same database file and runs the body inside
    ``BEGIN IMMEDIATE``. Multi-row operations (accepting a bid, verifying an
    OTP) therefore commit or roll back as a unit, and concurrent writers are
    serialized so the loser re-reads the winner's state.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: Optional[str] = None) -> None:
        settings = get_settings()
        path = (db_path or settings.marketplace_db_path or "").strip() or "./data/marketplace.db"

        self._db_path = Path(path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._tx_depth = 0
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS loads (
                    load_id TEXT PRIMARY KEY,
                    shipper_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_loads_status ON loads (status);
                CREATE INDEX IF NOT EXISTS idx_loads_shipper ON loads (shipper_id);

                CREATE TABLE IF NOT EXISTS bids (
                    bid_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL REFERENCES loads (load_id),
                    carrier_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_bids_load ON bids (load_id, status);
                CREATE INDEX IF NOT EXISTS idx_bids_carrier ON bids (carrier_id);

                CREATE TABLE IF NOT EXISTS shipments (
                    shipment_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL UNIQUE REFERENCES loads (load_id),
                    carrier_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS otp_requests (
                    request_id TEXT PRIMARY KEY,
                    shipment_id TEXT NOT NULL REFERENCES shipments (shipment_id),
                    request_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    requested_at TEXT NOT NULL,
                    processed_at TEXT,
                    data_json TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS uq_otp_requests_pending
                    ON otp_requests (shipment_id, request_type) WHERE status = 'pending';
                CREATE INDEX IF NOT EXISTS idx_otp_requests_status ON otp_requests (status, requested_at);

                CREATE TABLE IF NOT EXISTS otps (
                    otp_id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES otp_requests (request_id),
                    valid_until TEXT NOT NULL,
                    consumed_at TEXT,
                    invalidated_at TEXT,
                    data_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_otps_request ON otps (request_id);

                CREATE TABLE IF NOT EXISTS documents (
                    document_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    document_type TEXT NOT NULL,
                    expiry_date TEXT,
                    uploaded_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_documents_owner_type
                    ON documents (owner_id, document_type, uploaded_at DESC);

                CREATE TABLE IF NOT EXISTS carriers (
                    carrier_id TEXT PRIMARY KEY,
                    carrier_type TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS load_history (
                    change_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    from_status TEXT,
                    to_status TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_load_history_load ON load_history (load_id, timestamp);

                CREATE TABLE IF NOT EXISTS idempotency (
                    key_name TEXT PRIMARY KEY,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL
                );
                """
            )

    @contextmanager
    def transaction(self) -> Iterator["MarketplaceStateStore"]:
        """Run the body as one atomic, serialized write unit. Re-entrant."""
        with self._lock:
            outermost = self._tx_depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._tx_depth -= 1
                if outermost:
                    self._conn.execute("COMMIT")

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ------------------------------------------------------------------
    # Sequences and identifiers
    # ------------------------------------------------------------------

    def next_sequence(self, key: str) -> int:
        with self.transaction():
            row = self._conn.execute(
                "SELECT next_value FROM sequences WHERE key_name = ?",
                (key,),
            ).fetchone()
            if row is None:
                current = 1
                self._conn.execute(
                    "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                    (key, current + 1),
                )
            else:
                current = int(row["next_value"])
                self._conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE key_name = ?",
                    (current + 1, key),
                )
            return current

    def generate_id(self, prefix: str) -> str:
        return f"{prefix}-{self.next_sequence(prefix.lower()):06d}"

    def generate_reference_number(self) -> str:
        return f"FL-{self.next_sequence('reference'):06d}"

    # ------------------------------------------------------------------
    # Loads
    # ------------------------------------------------------------------

    def save_load(self, load: LoadRecord) -> LoadRecord:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO loads (load_id, shipper_id, status, version, updated_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(load_id)
                DO UPDATE SET status = excluded.status, version = excluded.version,
                              updated_at = excluded.updated_at, data_json = excluded.data_json
                """,
                (
                    load.load_id,
                    load.shipper_id,
                    load.status.value,
                    load.version,
                    _iso(load.updated_at),
                    _dump(load),
                ),
            )
        return load

    def get_load(self, load_id: str) -> Optional[LoadRecord]:
        row = self._fetchone("SELECT data_json FROM loads WHERE load_id = ?", (load_id,))
        if not row:
            return None
        return LoadRecord.model_validate_json(row["data_json"])

    def list_loads(
        self,
        status: Optional[LoadStatus] = None,
        shipper_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[LoadRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if shipper_id:
            clauses.append("shipper_id = ?")
            params.append(shipper_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(limit, 1000)))
        rows = self._fetchall(
            f"SELECT data_json FROM loads {where} ORDER BY updated_at DESC LIMIT ?",
            params,
        )
        return [LoadRecord.model_validate_json(row["data_json"]) for row in rows]

    def record_load_change(self, change: LoadStateChange) -> LoadStateChange:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO load_history (change_id, load_id, from_status, to_status, timestamp, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    change.change_id,
                    change.load_id,
                    change.from_status.value if change.from_status else None,
                    change.to_status.value,
                    _iso(change.timestamp),
                    _dump(change),
                ),
            )
        return change

    def list_load_history(self, load_id: str) -> List[LoadStateChange]:
        rows = self._fetchall(
            "SELECT data_json FROM load_history WHERE load_id = ? ORDER BY timestamp ASC, change_id ASC",
            (load_id,),
        )
        return [LoadStateChange.model_validate_json(row["data_json"]) for row in rows]

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    def save_bid(self, bid: BidRecord) -> BidRecord:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO bids (bid_id, load_id, carrier_id, status, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(bid_id)
                DO UPDATE SET status = excluded.status, data_json = excluded.data_json
                """,
                (bid.bid_id, bid.load_id, bid.carrier_id, bid.status.value, _iso(bid.created_at), _dump(bid)),
            )
        return bid

    def get_bid(self, bid_id: str) -> Optional[BidRecord]:
        row = self._fetchone("SELECT data_json FROM bids WHERE bid_id = ?", (bid_id,))
        if not row:
            return None
        return BidRecord.model_validate_json(row["data_json"])

    def list_bids_for_load(
        self,
        load_id: str,
        statuses: Optional[Sequence[BidStatus]] = None,
    ) -> List[BidRecord]:
        rows = self._fetchall(
            "SELECT data_json FROM bids WHERE load_id = ? ORDER BY created_at ASC, bid_id ASC",
            (load_id,),
        )
        bids = [BidRecord.model_validate_json(row["data_json"]) for row in rows]
        if statuses:
            wanted = set(statuses)
            bids = [bid for bid in bids if bid.status in wanted]
        return bids

    def list_bids(
        self,
        status: Optional[BidStatus] = None,
        carrier_id: Optional[str] = None,
        shipper_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[BidRecord]:
        """Bids across loads, newest first; ``shipper_id`` keeps bids on that shipper's loads."""
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("b.status = ?")
            params.append(status.value)
        if carrier_id:
            clauses.append("b.carrier_id = ?")
            params.append(carrier_id)
        if shipper_id:
            clauses.append("l.shipper_id = ?")
            params.append(shipper_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(limit, 1000)))
        rows = self._fetchall(
            f"""
            SELECT b.data_json
            FROM bids b
            JOIN loads l ON l.load_id = b.load_id
            {where}
            ORDER BY b.created_at DESC, b.bid_id DESC
            LIMIT ?
            """,
            params,
        )
        return [BidRecord.model_validate_json(row["data_json"]) for row in rows]

    # ------------------------------------------------------------------
    # Shipments
    # ------------------------------------------------------------------

    def insert_shipment(self, shipment: ShipmentRecord) -> ShipmentRecord:
        """Insert a new shipment; raises sqlite3.IntegrityError if the load already has one."""
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO shipments (shipment_id, load_id, carrier_id, status, data_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    shipment.shipment_id,
                    shipment.load_id,
                    shipment.carrier_id,
                    shipment.status.value,
                    _dump(shipment),
                ),
            )
        return shipment

    def save_shipment(self, shipment: ShipmentRecord) -> ShipmentRecord:
        with self.transaction():
            self._conn.execute(
                "UPDATE shipments SET status = ?, data_json = ? WHERE shipment_id = ?",
                (shipment.status.value, _dump(shipment), shipment.shipment_id),
            )
        return shipment

    def get_shipment(self, shipment_id: str) -> Optional[ShipmentRecord]:
        row = self._fetchone("SELECT data_json FROM shipments WHERE shipment_id = ?", (shipment_id,))
        if not row:
            return None
        return ShipmentRecord.model_validate_json(row["data_json"])

    def get_shipment_for_load(self, load_id: str) -> Optional[ShipmentRecord]:
        row = self._fetchone("SELECT data_json FROM shipments WHERE load_id = ?", (load_id,))
        if not row:
            return None
        return ShipmentRecord.model_validate_json(row["data_json"])

    def list_shipments(
        self,
        status: Optional[ShipmentStatus] = None,
        carrier_id: Optional[str] = None,
        shipper_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[ShipmentRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("s.status = ?")
            params.append(status.value)
        if carrier_id:
            clauses.append("s.carrier_id = ?")
            params.append(carrier_id)
        if shipper_id:
            clauses.append("l.shipper_id = ?")
            params.append(shipper_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(limit, 1000)))
        rows = self._fetchall(
            f"""
            SELECT s.data_json
            FROM shipments s
            JOIN loads l ON l.load_id = s.load_id
            {where}
            ORDER BY s.shipment_id DESC
            LIMIT ?
            """,
            params,
        )
        return [ShipmentRecord.model_validate_json(row["data_json"]) for row in rows]

    # ------------------------------------------------------------------
    # OTP requests and codes
    # ------------------------------------------------------------------

    def insert_otp_request(self, request: OtpRequestRecord) -> OtpRequestRecord:
        """Insert a new request; the partial unique index rejects a second pending one per pair."""
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO otp_requests (request_id, shipment_id, request_type, status, requested_at, processed_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.request_id,
                    request.shipment_id,
                    request.request_type.value,
                    request.status.value,
                    _iso(request.requested_at),
                    _iso(request.processed_at),
                    _dump(request),
                ),
            )
        return request

    def save_otp_request(self, request: OtpRequestRecord) -> OtpRequestRecord:
        with self.transaction():
            self._conn.execute(
                """
                UPDATE otp_requests
                SET status = ?, processed_at = ?, data_json = ?
                WHERE request_id = ?
                """,
                (request.status.value, _iso(request.processed_at), _dump(request), request.request_id),
            )
        return request

    def get_otp_request(self, request_id: str) -> Optional[OtpRequestRecord]:
        row = self._fetchone("SELECT data_json FROM otp_requests WHERE request_id = ?", (request_id,))
        if not row:
            return None
        return OtpRequestRecord.model_validate_json(row["data_json"])

    def find_otp_requests(
        self,
        shipment_id: str,
        request_type: OtpRequestType,
        status: Optional[OtpRequestStatus] = None,
    ) -> List[OtpRequestRecord]:
        """Requests for one (shipment, type) pair, most recent first."""
        if status:
            rows = self._fetchall(
                """
                SELECT data_json FROM otp_requests
                WHERE shipment_id = ? AND request_type = ? AND status = ?
                ORDER BY COALESCE(processed_at, requested_at) DESC, request_id DESC
                """,
                (shipment_id, request_type.value, status.value),
            )
        else:
            rows = self._fetchall(
                """
                SELECT data_json FROM otp_requests
                WHERE shipment_id = ? AND request_type = ?
                ORDER BY COALESCE(processed_at, requested_at) DESC, request_id DESC
                """,
                (shipment_id, request_type.value),
            )
        return [OtpRequestRecord.model_validate_json(row["data_json"]) for row in rows]

    def list_otp_requests(
        self,
        status: Optional[OtpRequestStatus] = None,
        shipment_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[OtpRequestRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if shipment_id:
            clauses.append("shipment_id = ?")
            params.append(shipment_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "ASC" if status == OtpRequestStatus.PENDING else "DESC"
        params.append(max(1, min(limit, 1000)))
        rows = self._fetchall(
            f"SELECT data_json FROM otp_requests {where} ORDER BY requested_at {order}, request_id {order} LIMIT ?",
            params,
        )
        return [OtpRequestRecord.model_validate_json(row["data_json"]) for row in rows]

    def save_otp(self, otp: OtpRecord) -> OtpRecord:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO otps (otp_id, request_id, valid_until, consumed_at, invalidated_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(otp_id)
                DO UPDATE SET consumed_at = excluded.consumed_at, invalidated_at = excluded.invalidated_at,
                              data_json = excluded.data_json
                """,
                (
                    otp.otp_id,
                    otp.request_id,
                    _iso(otp.valid_until),
                    _iso(otp.consumed_at),
                    _iso(otp.invalidated_at),
                    _dump(otp),
                ),
            )
        return otp

    def get_otp(self, otp_id: str) -> Optional[OtpRecord]:
        row = self._fetchone("SELECT data_json FROM otps WHERE otp_id = ?", (otp_id,))
        if not row:
            return None
        return OtpRecord.model_validate_json(row["data_json"])

    def list_live_otps_for_pair(self, shipment_id: str, request_type: OtpRequestType) -> List[OtpRecord]:
        """Unconsumed, non-invalidated codes issued for one (shipment, type) pair."""
        rows = self._fetchall(
            """
            SELECT o.data_json
            FROM otps o
            JOIN otp_requests r ON r.request_id = o.request_id
            WHERE r.shipment_id = ? AND r.request_type = ?
              AND o.consumed_at IS NULL AND o.invalidated_at IS NULL
            """,
            (shipment_id, request_type.value),
        )
        return [OtpRecord.model_validate_json(row["data_json"]) for row in rows]

    # ------------------------------------------------------------------
    # Documents and carriers
    # ------------------------------------------------------------------

    def save_document(self, document: DocumentRecord) -> DocumentRecord:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO documents (document_id, owner_id, document_type, expiry_date, uploaded_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(document_id)
                DO UPDATE SET expiry_date = excluded.expiry_date, data_json = excluded.data_json
                """,
                (
                    document.document_id,
                    document.owner_id,
                    document.document_type,
                    _iso(document.expiry_date),
                    _iso(document.uploaded_at),
                    _dump(document),
                ),
            )
        return document

    def list_documents(self, owner_id: str, document_type: Optional[str] = None) -> List[DocumentRecord]:
        """Documents for an owner, most recently uploaded first."""
        if document_type:
            rows = self._fetchall(
                """
                SELECT data_json FROM documents
                WHERE owner_id = ? AND document_type = ?
                ORDER BY uploaded_at DESC, document_id DESC
                """,
                (owner_id, document_type),
            )
        else:
            rows = self._fetchall(
                """
                SELECT data_json FROM documents
                WHERE owner_id = ?
                ORDER BY uploaded_at DESC, document_id DESC
                """,
                (owner_id,),
            )
        return [DocumentRecord.model_validate_json(row["data_json"]) for row in rows]

    def latest_document(self, owner_id: str, document_type: str) -> Optional[DocumentRecord]:
        documents = self.list_documents(owner_id, document_type)
        return documents[0] if documents else None

    def save_carrier(self, profile: CarrierProfile) -> CarrierProfile:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO carriers (carrier_id, carrier_type, updated_at, data_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(carrier_id)
                DO UPDATE SET carrier_type = excluded.carrier_type, updated_at = excluded.updated_at,
                              data_json = excluded.data_json
                """,
                (profile.carrier_id, profile.carrier_type, _utc_now_iso(), _dump(profile)),
            )
        return profile

    def get_carrier(self, carrier_id: str) -> Optional[CarrierProfile]:
        row = self._fetchone("SELECT data_json FROM carriers WHERE carrier_id = ?", (carrier_id,))
        if not row:
            return None
        return _carrier_adapter.validate_json(row["data_json"])

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------

    def get_idempotent(self, key: str) -> Optional[Dict[str, Any]]:
        row = self._fetchone("SELECT response_json FROM idempotency WHERE key_name = ?", (key,))
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, key: str, response: Dict[str, Any]) -> None:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO idempotency (key_name, stored_at, response_json)
                VALUES (?, ?, ?)
                ON CONFLICT(key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (key, _utc_now_iso(), _json_dumps(response)),
            )
            self._conn.execute(
                """
                DELETE FROM idempotency
                WHERE key_name NOT IN (
                    SELECT key_name FROM idempotency
                    ORDER BY stored_at DESC
                    LIMIT 10000
                )
                """
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug("Marketplace state store closed", db_path=str(self._db_path))


marketplace_store = MarketplaceStateStore()
