"""
Miroirs durables du store de transactions.

Deux implémentations interchangeables :
- DatabaseMirror : table SQLAlchemy (SQLite par défaut)
- JsonFileMirror : un fichier <reference>.json par transaction
"""
import logging
import os
import tempfile
from datetime import timezone
from pathlib import Path
from typing import List

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.config import Settings
from app.database import create_session_factory
from app.exceptions import StoreError
from app.models.payment_models import MpesaTransaction
from app.schemas.transaction_schemas import Transaction

logger = logging.getLogger(__name__)

_COLUMNS = [column.name for column in MpesaTransaction.__table__.columns]


class TransactionMirror:
    def save(self, record: Transaction) -> None:
        raise NotImplementedError

    def load_all(self) -> List[Transaction]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class DatabaseMirror(TransactionMirror):
    def __init__(self, database_url: str):
        self.engine, self.SessionLocal = create_session_factory(database_url)

    def save(self, record: Transaction) -> None:
        db = self.SessionLocal()
        try:
            db.merge(MpesaTransaction(**record.model_dump(include=set(_COLUMNS))))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Erreur écriture transaction {record.internal_reference}: {e}")
            raise StoreError(f"Écriture impossible pour {record.internal_reference}") from e
        finally:
            db.close()

    def load_all(self) -> List[Transaction]:
        db = self.SessionLocal()
        try:
            rows = db.query(MpesaTransaction).all()
            return [self._to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Lecture des transactions impossible: {e}") from e
        finally:
            db.close()

    @staticmethod
    def _to_record(row: MpesaTransaction) -> Transaction:
        data = {name: getattr(row, name) for name in _COLUMNS}
        # SQLite ne conserve pas le fuseau : tout est écrit en UTC
        for field in ("created_at", "terminal_at"):
            if data[field] is not None and data[field].tzinfo is None:
                data[field] = data[field].replace(tzinfo=timezone.utc)
        return Transaction(**data)

    def close(self) -> None:
        self.engine.dispose()


class JsonFileMirror(TransactionMirror):
    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path_for(self, reference: str) -> Path:
        return self.directory / f"{reference}.json"

    def save(self, record: Transaction) -> None:
        target = self._path_for(record.internal_reference)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(record.model_dump_json(by_alias=True, indent=2))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, target)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            logger.error(f"❌ Erreur sauvegarde fichier {target}: {e}")
            raise StoreError(f"Écriture impossible pour {record.internal_reference}") from e

        logger.debug(f"Transaction sauvegardée: {target}")

    def load_all(self) -> List[Transaction]:
        records = []
        for path in sorted(self.directory.glob("*.json")):
            if path.name.startswith(".tmp-"):
                continue
            try:
                records.append(Transaction.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, PydanticValidationError) as e:
                logger.error(f"❌ Fichier transaction illisible ignoré: {path} ({e})")
        return records


def build_mirror(settings: Settings) -> TransactionMirror:
    if settings.TRANSACTION_STORE_BACKEND == "json":
        return JsonFileMirror(settings.TRANSACTIONS_DIR)
    return DatabaseMirror(settings.DATABASE_URL)
