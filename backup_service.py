import csv
import datetime
import io
import json
import logging
import os
import shutil
from typing import List, Optional

from cache import CacheManager
from db import Database, ExerciseRepository, SetRepository
from errors import AppError, FileError
from invalidation import CacheInvalidation

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "backup_"
BACKUP_SUFFIX = ".db"


class BackupService:
    """File snapshots of the database and plain-text exports.

    A restore replaces every row behind the cache's back, so it ends by
    clearing the whole cache.
    """

    def __init__(
        self,
        db: Database,
        cache: CacheManager,
        backup_dir: str = "backups",
        keep: int = 5,
        invalidation: Optional[CacheInvalidation] = None,
    ) -> None:
        self.db = db
        self.backup_dir = backup_dir
        self.keep = keep
        self.invalidation = invalidation or CacheInvalidation(cache)
        self.exercises = ExerciseRepository(db)
        self.sets = SetRepository(db)

    async def create_backup(self, dest: Optional[str] = None) -> str:
        prune = dest is None
        if dest is None:
            stamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            dest = os.path.join(self.backup_dir, f"{BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}")
        if os.path.exists(dest):
            raise FileError("Backup target already exists", "backup", dest)
        os.makedirs(os.path.dirname(os.path.abspath(dest)), exist_ok=True)
        try:
            await self.db.run_statement("VACUUM INTO ?;", (dest,))
        except AppError as e:
            raise FileError(f"Failed to create backup: {e.message}", "backup", dest) from e
        logger.info("Backup written to %s", dest)
        if prune:
            self._prune_backups()
        return dest

    def _prune_backups(self) -> None:
        for entry in self.list_backups()[self.keep :]:
            try:
                os.remove(entry["path"])
                logger.info("Removed old backup %s", entry["path"])
            except OSError as e:
                logger.warning("Could not remove old backup %s: %s", entry["path"], e)

    def list_backups(self, backup_dir: Optional[str] = None) -> List[dict]:
        """Backups in ``backup_dir``, newest first."""
        directory = backup_dir or self.backup_dir
        if not os.path.isdir(directory):
            return []
        backups = []
        for name in os.listdir(directory):
            if not (name.startswith(BACKUP_PREFIX) and name.endswith(BACKUP_SUFFIX)):
                continue
            path = os.path.join(directory, name)
            stat = os.stat(path)
            backups.append(
                {"name": name, "path": path, "size": stat.st_size, "modified": stat.st_mtime}
            )
        backups.sort(key=lambda b: (b["modified"], b["name"]), reverse=True)
        return backups

    async def restore_backup(self, src: str) -> None:
        if not os.path.exists(src):
            raise FileError("Backup file not found", "restore", src)
        if self.db.is_memory:
            raise FileError("Cannot restore into an in-memory database", "restore", src)
        db_path = self.db.db_path
        previous = f"{db_path}.pre-restore"

        await self.db.close()
        had_previous = os.path.exists(db_path)
        if had_previous:
            shutil.copy(db_path, previous)
        try:
            self._remove_sidecars(db_path)
            shutil.copy(src, db_path)
            await self.db.connect()
            if not await self.db.verify_integrity():
                raise FileError("Restored database failed the integrity check", "restore", src)
        except Exception as e:
            logger.error("Restore from %s failed, keeping the current database: %s", src, e)
            await self.db.close()
            self._remove_sidecars(db_path)
            if had_previous:
                shutil.copy(previous, db_path)
            elif os.path.exists(db_path):
                os.remove(db_path)
            await self.db.connect()
            if isinstance(e, FileError):
                raise
            raise FileError(f"Failed to restore backup: {e}", "restore", src) from e
        finally:
            if os.path.exists(previous):
                os.remove(previous)

        self.invalidation.on_full_reset()
        logger.info("Database restored from %s", src)

    @staticmethod
    def _remove_sidecars(db_path: str) -> None:
        for suffix in ("-wal", "-shm"):
            if os.path.exists(db_path + suffix):
                os.remove(db_path + suffix)

    async def export_sets_csv(self) -> str:
        rows = await self.sets.export_rows()
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(
            ["Date", "TimeOfDay", "Exercise", "Weight", "Reps", "Warmup", "Failure", "SetOrder", "Notes"]
        )
        for r in rows:
            writer.writerow(
                [
                    r["date"],
                    r["time_of_day"] or "",
                    r["exercise"],
                    r["weight"],
                    r["reps"],
                    "Yes" if r["is_warmup"] else "No",
                    "Yes" if r["is_failure"] else "No",
                    r["set_order"],
                    r["notes"] or "",
                ]
            )
        return buffer.getvalue()

    async def export_exercises_json(self) -> str:
        exercises = await self.exercises.fetch_all_exercises()
        data = [
            {
                "name": e.name,
                "notes": e.notes,
                "default_weight": e.default_weight,
                "default_reps": e.default_reps,
                "unit": e.unit,
                "is_favorite": e.is_favorite,
                "tags": [t.name for t in e.tags],
            }
            for e in exercises
        ]
        return json.dumps(data, indent=2, ensure_ascii=False)
