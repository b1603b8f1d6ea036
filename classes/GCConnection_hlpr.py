import threading
from typing import Optional

from google.cloud import firestore

from classes.google_helpers import FIRESTORE_DATABASE, PROJECT_ID, _build_creds, logger


class GCConnection:
    def __init__(self) -> None:
        self.PROJECT_ID = PROJECT_ID
        self.FIRESTORE_DATABASE = FIRESTORE_DATABASE
        self.creds = _build_creds()
        self._firestore: Optional[firestore.Client] = None

    # -------- Firestore client --------
    def build_firestore_client(self) -> firestore.Client:
        if self._firestore is None:
            logger.info(
                f"[DB] Connecting to Firestore project={self.PROJECT_ID} database={self.FIRESTORE_DATABASE}"
            )
            self._firestore = firestore.Client(
                project=self.PROJECT_ID,
                credentials=self.creds,
                database=self.FIRESTORE_DATABASE,
            )
        return self._firestore


_connection_lock = threading.Lock()
_connection: Optional[GCConnection] = None


def get_firestore_client() -> firestore.Client:
    """
    Process-wide Firestore client, created on first use.
    """
    global _connection
    with _connection_lock:
        if _connection is None:
            _connection = GCConnection()
        return _connection.build_firestore_client()
