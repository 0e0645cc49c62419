from typing import List, Optional

import numpy as np
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from facekiosk.config import DATABASE_URL
from facekiosk.log import get_logger
from facekiosk.models import FaceRecord

logger = get_logger(__name__)

# Features are stored as raw little-endian float32
FEATURE_DTYPE = np.dtype("<f4")

SCHEMA = """
CREATE TABLE IF NOT EXISTS faces (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feature BLOB NOT NULL
)
"""


class StoreNotReadyError(RuntimeError):
    """Raised when the face store is used before a successful init()."""


def feature_to_blob(feature: np.ndarray) -> bytes:
    """Packs a feature vector as little-endian float32 bytes."""
    return np.asarray(feature, dtype=np.float32).reshape(-1).astype(FEATURE_DTYPE).tobytes()


def blob_to_feature(blob: bytes) -> np.ndarray:
    """Unpacks little-endian float32 bytes into a native float32 vector."""
    extra = len(blob) % FEATURE_DTYPE.itemsize
    if extra:
        logger.warning("Feature blob of %d bytes has %d trailing bytes, ignoring them", len(blob), extra)
    usable = len(blob) - extra
    return np.frombuffer(blob[:usable], dtype=FEATURE_DTYPE).astype(np.float32)


class FaceStore:
    """
    SQLite-backed feature collection.

    Ids come from AUTOINCREMENT, so they are monotonic and never reused,
    including after clear(). Each insert is its own transaction.
    """

    def __init__(self, database_url: str = DATABASE_URL):
        self.database_url = database_url
        self._engine: Optional[Engine] = None

    @property
    def ready(self) -> bool:
        return self._engine is not None

    def init(self) -> bool:
        """Opens the database and creates the table. Returns False on failure."""
        if self.ready:
            return True
        try:
            engine = create_engine(self.database_url, pool_pre_ping=True)
            with engine.begin() as conn:
                conn.exec_driver_sql(SCHEMA)
        except SQLAlchemyError as e:
            logger.error("Failed to open face database %s: %s", self.database_url, e)
            return False
        self._engine = engine
        logger.info("Face database ready at %s (%d faces)", self.database_url, self.count())
        return True

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise StoreNotReadyError("Face database is not initialized")
        return self._engine

    def count(self) -> int:
        with self._require_engine().connect() as conn:
            return int(conn.execute(text("SELECT COUNT(*) FROM faces")).scalar_one())

    def dimension(self) -> Optional[int]:
        """Feature width shared by the collection, or None when it is empty."""
        with self._require_engine().connect() as conn:
            size = conn.execute(text("SELECT length(feature) FROM faces ORDER BY id LIMIT 1")).scalar()
        if size is None:
            return None
        return int(size) // FEATURE_DTYPE.itemsize

    def all_records(self) -> List[FaceRecord]:
        """Full snapshot of the collection, ordered by id."""
        with self._require_engine().connect() as conn:
            rows = conn.execute(text("SELECT id, feature FROM faces ORDER BY id")).all()
        records = []
        for face_id, blob in rows:
            if not blob or len(blob) % FEATURE_DTYPE.itemsize:
                logger.warning("Skipping face No. %d: corrupted feature (%d bytes)", face_id, len(blob or b""))
                continue
            records.append(FaceRecord(id=int(face_id), feature=blob_to_feature(bytes(blob))))
        return records

    def insert(self, feature: np.ndarray) -> int:
        """Stores one feature vector and returns its new id."""
        vec = np.asarray(feature, dtype=np.float32).reshape(-1)
        if vec.size == 0:
            raise ValueError("Cannot store an empty feature vector")

        engine = self._require_engine()
        dim = self.dimension()
        if dim is not None and dim != vec.size:
            raise ValueError(f"Feature dimension {vec.size} does not match collection dimension {dim}")

        with engine.begin() as conn:
            res = conn.execute(
                text("INSERT INTO faces (feature) VALUES (:feature)"),
                {"feature": feature_to_blob(vec)},
            )
            new_id = int(res.lastrowid)
        logger.info("Stored face No. %d (dim=%d)", new_id, vec.size)
        return new_id

    def clear(self) -> None:
        """Deletes every record. The id sequence is kept."""
        with self._require_engine().begin() as conn:
            conn.execute(text("DELETE FROM faces"))
        logger.info("Cleared face database")

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
