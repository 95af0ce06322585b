from __future__ import annotations
from typing import Any, Dict, List, Optional
import json, sqlite3, os, threading

from ...errors import StoreIOError
from ...key import Key
from ...logger import get_logger
from ...utils import now_ts
from ..provider import KeyStore, batch_signing_key_name, packet_encryption_key_name

log = get_logger("keyrotator.storage")


class SQLiteKeyStore(KeyStore):
    """Single-file keyring for local and single-host deployments."""
    name = "sqlite"

    def __init__(self, path="db/keyrotator.db", env: str = ""):
        # If no directory, default to current working directory
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        self.env = env
        self._lock = threading.Lock()
        self.db = sqlite3.connect(path, check_same_thread=False)
        self._init()

    def _init(self) -> None:
        c = self.db.cursor()
        c.execute("""CREATE TABLE IF NOT EXISTS keyring(
            secret_name TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            key_versions TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS audit(
            ts TEXT,
            event_type TEXT,
            payload TEXT
        )""")
        self.db.commit()

    # --------- KeyStore ----------
    def get_batch_signing_key(self, locality, ingestor):
        return self._get_key(batch_signing_key_name(self.env, locality, ingestor))

    def get_packet_encryption_key(self, locality):
        return self._get_key(packet_encryption_key_name(self.env, locality))

    def put_batch_signing_key(self, locality, ingestor, key):
        self._put_key("batch-signing", batch_signing_key_name(self.env, locality, ingestor), key)

    def put_packet_encryption_key(self, locality, key):
        self._put_key("packet-encryption", packet_encryption_key_name(self.env, locality), key)

    def _get_key(self, secret_name: str) -> Key:
        try:
            with self._lock:
                row = self.db.execute(
                    "SELECT key_versions FROM keyring WHERE secret_name=?", (secret_name,)).fetchone()
        except sqlite3.Error as err:
            raise StoreIOError(f"couldn't read key {secret_name!r}: {err}") from err
        if not row:
            return Key()
        return Key.from_json(row[0])

    def _put_key(self, kind: str, secret_name: str, key: Key) -> None:
        log.info(f"Writing key to {secret_name!r}",
                 extra={"storage": self.name, "kind": kind, "secret": secret_name})
        ts = now_ts()
        try:
            with self._lock:
                self.db.execute(
                    "INSERT INTO keyring(secret_name,kind,key_versions,updated_at) VALUES(?,?,?,?) "
                    "ON CONFLICT(secret_name) DO UPDATE SET kind=excluded.kind, "
                    "key_versions=excluded.key_versions, updated_at=excluded.updated_at",
                    (secret_name, kind, key.to_json(), ts))
                self.db.execute(
                    "INSERT INTO audit(ts,event_type,payload) VALUES(?,?,?)",
                    (ts, "key_written", json.dumps({
                        "secret": secret_name,
                        "versions": [v.creation_timestamp for v in key],
                    }, separators=(",", ":"), sort_keys=True)))
                self.db.commit()
        except sqlite3.Error as err:
            raise StoreIOError(f"couldn't write key {secret_name!r}: {err}") from err

    # --------- inspection ----------
    def list_keys(self) -> List[Dict[str, Any]]:
        with self._lock:
            cur = self.db.execute("SELECT secret_name, kind, updated_at FROM keyring ORDER BY secret_name")
            return [dict(zip(["secret_name", "kind", "updated_at"], r)) for r in cur.fetchall()]

    def audit_events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if event_type:
                cur = self.db.execute(
                    "SELECT ts, event_type, payload FROM audit WHERE event_type=? ORDER BY rowid", (event_type,))
            else:
                cur = self.db.execute("SELECT ts, event_type, payload FROM audit ORDER BY rowid")
            return [{"ts": ts, "event_type": et, "payload": json.loads(p)} for ts, et, p in cur.fetchall()]

    def close(self):
        with self._lock:
            self.db.close()
