"""
SQLite-backed store for briefs, pipeline runs and finished stories.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

from wholesome_library.common import ClaimLostError, PersistenceError
from wholesome_library.models import (
    GeneratedStory,
    PipelineRun,
    PublicationStatus,
    RunOutcome,
    StageResult,
)
from wholesome_library.story_generation import BriefStatus, Chapter, StoryBrief
from wholesome_library.story_generation.brief import ALLOWED_TRANSITIONS

from .base import StoryStore

logger = logging.getLogger(__name__)

# Candidates fetched per claim round, and rounds tried before giving up on a busy queue.
CLAIM_CANDIDATE_LIMIT = 10
MAX_CLAIM_ROUNDS = 5

SCHEMA = """
CREATE TABLE IF NOT EXISTS story_briefs (
    id TEXT PRIMARY KEY,
    theme TEXT NOT NULL,
    reading_level TEXT NOT NULL,
    primary_virtue TEXT NOT NULL,
    genre TEXT NOT NULL,
    target_word_count INTEGER NOT NULL,
    target_chapters INTEGER NOT NULL,
    setting TEXT,
    premise TEXT,
    avoid_content_json TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'queued',
    priority INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    claimed_at TEXT,
    failure_reason TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_story_briefs_claim
    ON story_briefs(status, priority DESC, created_at ASC);

CREATE TABLE IF NOT EXISTS stories (
    id TEXT PRIMARY KEY,
    brief_id TEXT NOT NULL REFERENCES story_briefs(id),
    title TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    blurb TEXT NOT NULL,
    reading_level TEXT NOT NULL,
    genre TEXT NOT NULL,
    primary_virtue TEXT NOT NULL,
    chapter_count INTEGER NOT NULL,
    total_word_count INTEGER NOT NULL,
    estimated_read_minutes INTEGER NOT NULL,
    cover_image_ref TEXT NOT NULL,
    cover_degraded INTEGER NOT NULL,
    safety_passed INTEGER NOT NULL,
    values_score REAL NOT NULL,
    quality_score REAL NOT NULL,
    publication_status TEXT NOT NULL,
    published_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chapters (
    story_id TEXT NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
    chapter_number INTEGER NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    word_count INTEGER NOT NULL,
    PRIMARY KEY (story_id, chapter_number)
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    brief_id TEXT NOT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    outcome TEXT,
    error TEXT,
    error_kind TEXT,
    failing_stage TEXT,
    duration_ms INTEGER,
    token_usage INTEGER NOT NULL DEFAULT 0,
    story_id TEXT,
    stages_json TEXT NOT NULL DEFAULT '[]',
    notes_json TEXT NOT NULL DEFAULT '[]',
    recovery_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_brief ON pipeline_runs(brief_id, started_at);
"""


def _to_db(moment: datetime | None) -> str | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SqliteStoryStore(StoryStore):
    """
    :class:`StoryStore` on a local SQLite file.

    Every call opens its own connection with a bounded busy ``timeout``, so the store can
    be shared by threads and by separate processes. Writes run inside ``BEGIN IMMEDIATE``;
    :meth:`transaction` pins one connection to the calling thread so that several calls
    commit together.
    """

    def __init__(self, db_path: str | Path, *, timeout: float = 30.0) -> None:
        self.db_path = str(Path(db_path).expanduser())
        self._timeout = timeout
        self._local = threading.local()
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_db(self) -> None:
        try:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(SCHEMA)
                _add_missing_columns(conn)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to initialise database at {self.db_path}: {exc}") from exc

    # -- connection handling --------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "conn", None) is not None:
            yield
            return

        conn = self._begin()
        self._local.conn = conn
        try:
            yield
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            _rollback(conn)
            raise PersistenceError(f"Transaction failed: {exc}") from exc
        except BaseException:
            _rollback(conn)
            raise
        finally:
            self._local.conn = None
            conn.close()

    @contextmanager
    def _write(self, action: str) -> Iterator[sqlite3.Connection]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            try:
                yield active
            except sqlite3.Error as exc:
                raise PersistenceError(f"Failed to {action}: {exc}") from exc
            return

        conn = self._begin()
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            _rollback(conn)
            raise PersistenceError(f"Failed to {action}: {exc}") from exc
        except BaseException:
            _rollback(conn)
            raise
        finally:
            conn.close()

    @contextmanager
    def _read(self, action: str) -> Iterator[sqlite3.Connection]:
        active = getattr(self._local, "conn", None)
        try:
            if active is not None:
                yield active
                return
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to {action}: {exc}") from exc

    def _begin(self) -> sqlite3.Connection:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not open database {self.db_path}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            conn.close()
            raise PersistenceError(f"Could not start a write transaction: {exc}") from exc
        return conn

    # -- briefs ---------------------------------------------------------------

    def insert_briefs(self, briefs: Sequence[StoryBrief]) -> None:
        now = _to_db(datetime.now(timezone.utc))
        with self._write("insert briefs") as conn:
            conn.executemany(
                """
                INSERT INTO story_briefs(
                    id, theme, reading_level, primary_virtue, genre, target_word_count,
                    target_chapters, setting, premise, avoid_content_json, status, priority,
                    attempts, created_at, claimed_at, failure_reason, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        brief.id,
                        brief.theme,
                        brief.reading_level,
                        brief.primary_virtue,
                        brief.genre,
                        brief.target_word_count,
                        brief.target_chapters,
                        brief.setting,
                        brief.premise,
                        json.dumps(list(brief.avoid_content)),
                        brief.status.value,
                        brief.priority,
                        brief.attempts,
                        _to_db(brief.created_at),
                        _to_db(brief.claimed_at),
                        brief.failure_reason,
                        now,
                    )
                    for brief in briefs
                ],
            )

    def get_brief(self, brief_id: str) -> StoryBrief | None:
        with self._read("load brief") as conn:
            row = conn.execute("SELECT * FROM story_briefs WHERE id = ?", (brief_id,)).fetchone()
        return _row_to_brief(row) if row else None

    def claim_next_brief(
        self,
        *,
        now: datetime,
        stale_before: datetime,
        max_attempts: int | None = None,
    ) -> StoryBrief | None:
        for _ in range(MAX_CLAIM_ROUNDS):
            candidates = self._claim_candidates(stale_before, max_attempts)
            if not candidates:
                return None

            for row in candidates:
                claimed = self.try_claim_brief(
                    row["id"],
                    expected_status=BriefStatus(row["status"]),
                    expected_claimed_at=_from_db(row["claimed_at"]),
                    now=now,
                )
                if claimed:
                    return self.get_brief(row["id"])
                logger.debug("Lost claim race for brief %s", row["id"])
        return None

    def _claim_candidates(self, stale_before: datetime, max_attempts: int | None) -> list[sqlite3.Row]:
        query = """
            SELECT id, status, claimed_at FROM story_briefs
            WHERE status = 'queued'
               OR (status = 'processing' AND claimed_at < ?{attempts_clause})
            ORDER BY priority DESC, created_at ASC
            LIMIT ?
        """
        params: list[Any] = [_to_db(stale_before)]
        attempts_clause = ""
        if max_attempts is not None:
            attempts_clause = " AND attempts < ?"
            params.append(max_attempts)
        params.append(CLAIM_CANDIDATE_LIMIT)

        with self._read("select claim candidates") as conn:
            return conn.execute(query.format(attempts_clause=attempts_clause), params).fetchall()

    def try_claim_brief(
        self,
        brief_id: str,
        *,
        expected_status: BriefStatus,
        expected_claimed_at: datetime | None,
        now: datetime,
    ) -> bool:
        if BriefStatus.PROCESSING not in ALLOWED_TRANSITIONS[expected_status]:
            return False

        stamp = _to_db(now)
        with self._write("claim brief") as conn:
            cursor = conn.execute(
                """
                UPDATE story_briefs
                SET status = 'processing', claimed_at = ?, attempts = attempts + 1, updated_at = ?
                WHERE id = ? AND status = ? AND claimed_at IS ?
                """,
                (stamp, stamp, brief_id, expected_status.value, _to_db(expected_claimed_at)),
            )
            return cursor.rowcount == 1

    def expire_stale_briefs(
        self,
        *,
        stale_before: datetime,
        max_attempts: int,
        reason: str,
    ) -> list[str]:
        now = _to_db(datetime.now(timezone.utc))
        with self._write("expire stale briefs") as conn:
            rows = conn.execute(
                """
                SELECT id FROM story_briefs
                WHERE status = 'processing' AND claimed_at < ? AND attempts >= ?
                """,
                (_to_db(stale_before), max_attempts),
            ).fetchall()
            expired = [row["id"] for row in rows]
            conn.executemany(
                """
                UPDATE story_briefs
                SET status = 'failed', failure_reason = ?, updated_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                [(reason, now, brief_id) for brief_id in expired],
            )
        return expired

    def mark_brief_status(
        self,
        brief_id: str,
        status: BriefStatus,
        *,
        expected: BriefStatus,
        reason: str | None = None,
        claimed_at: datetime | None = None,
    ) -> None:
        if status not in ALLOWED_TRANSITIONS[expected]:
            raise ValueError(f"Brief status cannot move from {expected.value} to {status.value}.")

        query = """
            UPDATE story_briefs
            SET status = ?, failure_reason = COALESCE(?, failure_reason), updated_at = ?
            WHERE id = ? AND status = ?
        """
        params: list[Any] = [status.value, reason, _to_db(datetime.now(timezone.utc)), brief_id, expected.value]
        if claimed_at is not None:
            query += " AND claimed_at = ?"
            params.append(_to_db(claimed_at))

        with self._write("update brief status") as conn:
            cursor = conn.execute(query, params)
            if cursor.rowcount != 1 and claimed_at is not None:
                raise ClaimLostError(
                    f"Brief {brief_id} is no longer held by the claim from {_to_db(claimed_at)}; "
                    f"refusing to mark it {status.value}."
                )
            if cursor.rowcount != 1:
                raise PersistenceError(
                    f"Brief {brief_id} is no longer {expected.value}; refusing to mark it {status.value}."
                )

    def brief_combinations(self) -> list[tuple[str, str, str]]:
        with self._read("list brief combinations") as conn:
            rows = conn.execute(
                "SELECT DISTINCT genre, primary_virtue, reading_level FROM story_briefs"
            ).fetchall()
        return [(row["genre"], row["primary_virtue"], row["reading_level"]) for row in rows]

    def count_briefs_by_status(self) -> dict[BriefStatus, int]:
        counts = {status: 0 for status in BriefStatus}
        with self._read("count briefs") as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS total FROM story_briefs GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[BriefStatus(row["status"])] = row["total"]
        return counts

    # -- runs -----------------------------------------------------------------

    def insert_run(self, run: PipelineRun) -> None:
        with self._write("write pipeline run") as conn:
            conn.execute(
                """
                INSERT INTO pipeline_runs(
                    run_id, brief_id, started_at, ended_at, outcome, error, error_kind,
                    failing_stage, duration_ms, token_usage, story_id, stages_json, notes_json, recovery_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    ended_at = excluded.ended_at,
                    outcome = excluded.outcome,
                    error = excluded.error,
                    error_kind = excluded.error_kind,
                    failing_stage = excluded.failing_stage,
                    duration_ms = excluded.duration_ms,
                    token_usage = excluded.token_usage,
                    story_id = COALESCE(excluded.story_id, pipeline_runs.story_id),
                    stages_json = excluded.stages_json,
                    notes_json = excluded.notes_json,
                    recovery_json = excluded.recovery_json
                WHERE pipeline_runs.outcome IS NULL
                """,
                (
                    run.run_id,
                    run.brief_id,
                    _to_db(run.started_at),
                    _to_db(run.ended_at),
                    run.outcome.value if run.outcome else None,
                    run.error,
                    run.error_kind,
                    run.failing_stage,
                    run.duration_ms,
                    run.token_usage,
                    run.story_id,
                    json.dumps([result.as_dict() for result in run.stages.values()], default=str),
                    json.dumps(run.notes),
                    json.dumps(run.recovery_payload, default=str) if run.recovery_payload else None,
                ),
            )

    def attach_story(self, run_id: str, story_id: str) -> None:
        with self._write("attach story to run") as conn:
            cursor = conn.execute(
                "UPDATE pipeline_runs SET story_id = ? WHERE run_id = ? AND outcome IS NULL",
                (story_id, run_id),
            )
            if cursor.rowcount != 1:
                raise PersistenceError(f"No active run {run_id} to attach story {story_id} to.")

    def get_run(self, run_id: str) -> PipelineRun | None:
        with self._read("load pipeline run") as conn:
            row = conn.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,)).fetchone()
        return _row_to_run(row) if row else None

    def list_runs(self, brief_id: str) -> list[PipelineRun]:
        with self._read("list pipeline runs") as conn:
            rows = conn.execute(
                "SELECT * FROM pipeline_runs WHERE brief_id = ? ORDER BY started_at ASC",
                (brief_id,),
            ).fetchall()
        return [_row_to_run(row) for row in rows]

    # -- stories --------------------------------------------------------------

    def insert_story(self, story: GeneratedStory) -> str:
        with self._write("insert story") as conn:
            conn.execute(
                """
                INSERT INTO stories(
                    id, brief_id, title, slug, blurb, reading_level, genre, primary_virtue,
                    chapter_count, total_word_count, estimated_read_minutes, cover_image_ref,
                    cover_degraded, safety_passed, values_score, quality_score,
                    publication_status, published_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    story.id,
                    story.brief_id,
                    story.title,
                    story.slug,
                    story.blurb,
                    story.reading_level,
                    story.genre,
                    story.primary_virtue,
                    len(story.chapters),
                    story.total_word_count,
                    story.estimated_read_minutes,
                    story.cover_image_ref,
                    int(story.cover_degraded),
                    int(story.safety_passed),
                    story.values_score,
                    story.quality_score,
                    story.publication_status.value,
                    _to_db(story.published_at),
                    _to_db(story.created_at),
                ),
            )
            conn.executemany(
                """
                INSERT INTO chapters(story_id, chapter_number, title, content, word_count)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (story.id, chapter.number, chapter.title, chapter.text, chapter.word_count)
                    for chapter in story.chapters
                ],
            )
        return story.id

    def get_story(self, story_id: str) -> GeneratedStory | None:
        with self._read("load story") as conn:
            row = conn.execute("SELECT * FROM stories WHERE id = ?", (story_id,)).fetchone()
            if row is None:
                return None
            chapter_rows = conn.execute(
                "SELECT * FROM chapters WHERE story_id = ? ORDER BY chapter_number ASC",
                (story_id,),
            ).fetchall()

        return GeneratedStory(
            id=row["id"],
            brief_id=row["brief_id"],
            title=row["title"],
            slug=row["slug"],
            blurb=row["blurb"],
            reading_level=row["reading_level"],
            genre=row["genre"],
            primary_virtue=row["primary_virtue"],
            chapters=tuple(
                Chapter(number=item["chapter_number"], title=item["title"], text=item["content"])
                for item in chapter_rows
            ),
            cover_image_ref=row["cover_image_ref"],
            cover_degraded=bool(row["cover_degraded"]),
            safety_passed=bool(row["safety_passed"]),
            values_score=row["values_score"],
            quality_score=row["quality_score"],
            publication_status=PublicationStatus(row["publication_status"]),
            created_at=_from_db(row["created_at"]),
            published_at=_from_db(row["published_at"]),
        )

    def count_stories(self) -> int:
        with self._read("count stories") as conn:
            return conn.execute("SELECT COUNT(*) FROM stories").fetchone()[0]

    def slug_exists(self, slug: str) -> bool:
        with self._read("look up slug") as conn:
            row = conn.execute("SELECT 1 FROM stories WHERE slug = ? LIMIT 1", (slug,)).fetchone()
        return row is not None


# Columns added after the first release; databases created earlier gain them on open.
ADDED_COLUMNS: dict[str, dict[str, str]] = {
    "pipeline_runs": {"token_usage": "INTEGER NOT NULL DEFAULT 0"},
}


def _add_missing_columns(conn: sqlite3.Connection) -> None:
    for table, columns in ADDED_COLUMNS.items():
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
        for name, definition in columns.items():
            if name not in existing:
                logger.info("Adding column %s.%s", table, name)
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {definition}")

def _rollback(conn: sqlite3.Connection) -> None:
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as exc:
        logger.warning("Rollback failed: %s", exc)


def _row_to_brief(row: sqlite3.Row) -> StoryBrief:
    data = dict(row)
    data["avoid_content"] = json.loads(data.pop("avoid_content_json") or "[]")
    return StoryBrief.from_mapping(data)


def _row_to_run(row: sqlite3.Row) -> PipelineRun:
    run = PipelineRun(
        run_id=row["run_id"],
        brief_id=row["brief_id"],
        started_at=_from_db(row["started_at"]),
    )
    for payload in json.loads(row["stages_json"] or "[]"):
        result = StageResult.from_dict(payload)
        run.stages[result.stage] = result
    run.notes = list(json.loads(row["notes_json"] or "[]"))
    run.story_id = row["story_id"]
    run.recovery_payload = json.loads(row["recovery_json"]) if row["recovery_json"] else None
    run.ended_at = _from_db(row["ended_at"])
    run.outcome = RunOutcome(row["outcome"]) if row["outcome"] else None
    run.error = row["error"]
    run.error_kind = row["error_kind"]
    run.failing_stage = row["failing_stage"]
    return run
