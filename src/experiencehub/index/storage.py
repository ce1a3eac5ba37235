"""SQLite store for experiences and their image metadata."""

from __future__ import annotations

import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List

from experiencehub.errors import RecordNotFoundError, StoreError
from experiencehub.models import Attachment, Experience, ExperiencePayload

_EXPERIENCE_COLUMNS = (
    "id",
    "company_name",
    "experience_type",
    "assessment_type",
    "candidate_name",
    "graduating_year",
    "branch",
    "result",
    "experience_description",
    "additional_tips",
    "created_at",
    "user_id",
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _row_to_attachment(row: sqlite3.Row) -> Attachment:
    return Attachment(
        id=row["id"],
        experience_id=row["experience_id"],
        image_url=row["image_url"],
        image_name=row["image_name"],
        created_at=row["created_at"],
    )


def _row_to_experience(row: sqlite3.Row, images: List[Attachment] | None = None) -> Experience:
    return Experience(**{column: row[column] for column in _EXPERIENCE_COLUMNS}, images=images or [])


class SQLiteExperienceStore:
    """Persistence layer for experiences and experience images."""

    def __init__(self, db_path: Path, *, check_same_thread: bool = True) -> None:
        self.db_path = Path(db_path)
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=check_same_thread)
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to open database at {self.db_path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise StoreError(str(exc)) from exc
        except Exception:
            self._conn.rollback()
            raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS experiences (
                    id TEXT PRIMARY KEY,
                    company_name TEXT NOT NULL,
                    experience_type TEXT NOT NULL
                        CHECK (experience_type IN ('intern', 'placement')),
                    assessment_type TEXT NOT NULL
                        CHECK (assessment_type IN ('online_assessment', 'interview')),
                    candidate_name TEXT NOT NULL,
                    graduating_year INTEGER
                        CHECK (graduating_year BETWEEN 1900 AND 2100),
                    branch TEXT,
                    result TEXT NOT NULL
                        CHECK (result IN ('selected', 'waitlisted', 'rejected')),
                    experience_description TEXT,
                    additional_tips TEXT,
                    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    user_id TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS experience_images (
                    id TEXT PRIMARY KEY,
                    experience_id TEXT NOT NULL,
                    image_url TEXT NOT NULL,
                    image_name TEXT,
                    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    FOREIGN KEY(experience_id) REFERENCES experiences(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_experience_images_experience_id
                    ON experience_images(experience_id)
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_experience_images_url
                    ON experience_images(image_url)
                """
            )

    def insert_experience(self, payload: ExperiencePayload, *, user_id: str | None) -> Experience:
        """Insert a new experience and return the stored row."""
        experience_id = _new_id()
        row = payload.as_row()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO experiences(
                    id, company_name, experience_type, assessment_type, candidate_name,
                    graduating_year, branch, result, experience_description,
                    additional_tips, user_id
                )
                VALUES (
                    :id, :company_name, :experience_type, :assessment_type, :candidate_name,
                    :graduating_year, :branch, :result, :experience_description,
                    :additional_tips, :user_id
                )
                """,
                {**row, "id": experience_id, "user_id": user_id},
            )
        return self.get_experience(experience_id)  # type: ignore[return-value]

    def update_experience(self, experience_id: str, payload: ExperiencePayload) -> Experience:
        """Replace the scalar fields of an experience."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE experiences SET
                    company_name = :company_name,
                    experience_type = :experience_type,
                    assessment_type = :assessment_type,
                    candidate_name = :candidate_name,
                    graduating_year = :graduating_year,
                    branch = :branch,
                    result = :result,
                    experience_description = :experience_description,
                    additional_tips = :additional_tips
                WHERE id = :id
                """,
                {**payload.as_row(), "id": experience_id},
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Experience {experience_id} not found")
        return self.get_experience(experience_id)  # type: ignore[return-value]

    def delete_experience(self, experience_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM experiences WHERE id = ?", (experience_id,))
        return cursor.rowcount > 0

    def get_experience(self, experience_id: str) -> Experience | None:
        try:
            row = self._conn.execute(
                "SELECT * FROM experiences WHERE id = ?", (experience_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if row is None:
            return None
        return _row_to_experience(row, self.list_images(experience_id))

    def list_experiences(self) -> List[Experience]:
        """Every experience, newest first, with its images embedded."""
        try:
            rows = self._conn.execute(
                "SELECT * FROM experiences ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
            image_rows = self._conn.execute(
                "SELECT * FROM experience_images ORDER BY created_at, rowid"
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

        images: Dict[str, List[Attachment]] = {}
        for image_row in image_rows:
            images.setdefault(image_row["experience_id"], []).append(_row_to_attachment(image_row))
        return [_row_to_experience(row, images.get(row["id"])) for row in rows]

    def insert_image(
        self, experience_id: str, image_url: str, image_name: str | None = None
    ) -> Attachment:
        image_id = _new_id()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO experience_images(id, experience_id, image_url, image_name)
                VALUES (?, ?, ?, ?)
                """,
                (image_id, experience_id, image_url, image_name),
            )
            row = conn.execute(
                "SELECT * FROM experience_images WHERE id = ?", (image_id,)
            ).fetchone()
        return _row_to_attachment(row)

    def list_images(self, experience_id: str) -> List[Attachment]:
        try:
            rows = self._conn.execute(
                """
                SELECT * FROM experience_images
                WHERE experience_id = ?
                ORDER BY created_at, rowid
                """,
                (experience_id,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return [_row_to_attachment(row) for row in rows]

    def delete_images_by_url(self, image_url: str) -> int:
        """Delete image rows referencing exactly this URL."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM experience_images WHERE image_url = ?", (image_url,))
        return cursor.rowcount

    def delete_images_for(self, experience_id: str) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM experience_images WHERE experience_id = ?", (experience_id,)
            )
        return cursor.rowcount

    def referenced_urls(self) -> set[str]:
        try:
            rows = self._conn.execute("SELECT image_url FROM experience_images").fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return {row["image_url"] for row in rows}

    def markup_texts(self) -> List[str]:
        """Stored rich-text fields, which may embed bucket URLs inline."""
        try:
            rows = self._conn.execute(
                "SELECT experience_description, additional_tips FROM experiences"
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return [text for row in rows for text in row if text]
