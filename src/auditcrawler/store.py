"""
Narrow persistence interface for crawl sessions, pages and analysis results.

The crawl and analysis services only ever call the methods on ``PageStore``;
``MemoryStore`` keeps everything in dicts (tests, one-off runs) and
``SQLiteStore`` writes to a single aiosqlite database.
"""
from __future__ import annotations
import asyncio
import base64
import itertools
import json
import time
import zlib
from typing import Any, Dict, List, Optional, Protocol

import aiosqlite

from .models import PageRecord, SessionStatus

SESSION_COUNT_FIELDS = ("pages_count", "succeeded", "failed")


class PageStore(Protocol):
    async def create_session(self, base_url: str, kind: str = "crawl") -> int: ...

    async def update_session_status(self, session_id: int, status: SessionStatus, error: Optional[str] = None, **counts: int) -> None: ...

    async def update_session_counts(self, session_id: int, **counts: int) -> None: ...

    async def get_session(self, session_id: int) -> Optional[Dict[str, Any]]: ...

    async def get_session_status(self, session_id: int) -> Optional[SessionStatus]: ...

    async def save_page(self, session_id: int, page: PageRecord) -> int: ...

    async def get_page(self, page_id: int) -> Optional[PageRecord]: ...

    async def list_page_ids(self, session_id: int) -> List[int]: ...

    async def get_analysis(self, page_id: int, kind: str) -> Optional[Dict[str, Any]]: ...

    async def save_analysis(self, page_id: int, kind: str, result: Dict[str, Any]) -> None: ...


def _check_counts(counts: Dict[str, int]) -> None:
    unknown = set(counts) - set(SESSION_COUNT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown session count field(s): {', '.join(sorted(unknown))}")


# ------------------ in-memory ------------------

class MemoryStore:
    def __init__(self):
        self.sessions: Dict[int, Dict[str, Any]] = {}
        self.pages: Dict[int, PageRecord] = {}
        self.page_sessions: Dict[int, int] = {}
        self.analysis: Dict[tuple, Dict[str, Any]] = {}
        self._session_ids = itertools.count(1)
        self._page_ids = itertools.count(1)
        self._by_url: Dict[tuple, int] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, base_url: str, kind: str = "crawl") -> int:
        async with self._lock:
            session_id = next(self._session_ids)
            now = time.time()
            self.sessions[session_id] = {
                "id": session_id, "base_url": base_url, "kind": kind,
                "status": SessionStatus.PENDING, "pages_count": 0, "succeeded": 0, "failed": 0,
                "error": None, "created_at": now, "updated_at": now,
            }
            return session_id

    async def update_session_status(self, session_id: int, status: SessionStatus, error: Optional[str] = None, **counts: int) -> None:
        _check_counts(counts)
        async with self._lock:
            session = self.sessions[session_id]
            session.update(counts)
            session["status"] = SessionStatus(status)
            if error is not None:
                session["error"] = error
            session["updated_at"] = time.time()

    async def update_session_counts(self, session_id: int, **counts: int) -> None:
        _check_counts(counts)
        async with self._lock:
            session = self.sessions[session_id]
            session.update(counts)
            session["updated_at"] = time.time()

    async def get_session(self, session_id: int) -> Optional[Dict[str, Any]]:
        session = self.sessions.get(session_id)
        return dict(session) if session else None

    async def get_session_status(self, session_id: int) -> Optional[SessionStatus]:
        session = self.sessions.get(session_id)
        return session["status"] if session else None

    async def save_page(self, session_id: int, page: PageRecord) -> int:
        async with self._lock:
            key = (session_id, page.url)
            page_id = self._by_url.get(key)
            if page_id is None:
                page_id = next(self._page_ids)
                self._by_url[key] = page_id
            self.pages[page_id] = page
            self.page_sessions[page_id] = session_id
            return page_id

    async def get_page(self, page_id: int) -> Optional[PageRecord]:
        return self.pages.get(page_id)

    async def list_page_ids(self, session_id: int) -> List[int]:
        return sorted(pid for pid, sid in self.page_sessions.items() if sid == session_id)

    async def get_analysis(self, page_id: int, kind: str) -> Optional[Dict[str, Any]]:
        return self.analysis.get((page_id, kind))

    async def save_analysis(self, page_id: int, kind: str, result: Dict[str, Any]) -> None:
        self.analysis[(page_id, kind)] = dict(result)


# ------------------ sqlite ------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  base_url TEXT NOT NULL,
  kind TEXT NOT NULL DEFAULT 'crawl',
  status TEXT NOT NULL,
  pages_count INTEGER NOT NULL DEFAULT 0,
  succeeded INTEGER NOT NULL DEFAULT 0,
  failed INTEGER NOT NULL DEFAULT 0,
  error TEXT,
  created_at INTEGER NOT NULL,
  updated_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS pages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_id INTEGER NOT NULL REFERENCES sessions(id),
  url TEXT NOT NULL,
  final_url TEXT,
  status_code INTEGER NOT NULL,
  title TEXT,
  text_content TEXT,
  html_compressed BLOB,
  outgoing_links_json TEXT,
  images_json TEXT,
  meta_tags_json TEXT,
  error TEXT,
  fetched_at INTEGER NOT NULL,
  UNIQUE(session_id, url)
);
CREATE INDEX IF NOT EXISTS idx_pages_session ON pages(session_id);
CREATE TABLE IF NOT EXISTS analysis_results (
  page_id INTEGER NOT NULL REFERENCES pages(id),
  kind TEXT NOT NULL,
  result_json TEXT NOT NULL,
  analyzed_at INTEGER NOT NULL,
  PRIMARY KEY(page_id, kind)
)
"""


async def optimize_connection(conn: aiosqlite.Connection) -> None:
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA temp_store=MEMORY")


def compress_html(html: str) -> bytes:
    """Compress HTML using zlib at maximum level, base64 encoded."""
    return base64.b64encode(zlib.compress(html.encode("utf-8"), level=9))


def decompress_html(encoded: Optional[bytes]) -> str:
    if not encoded:
        return ""
    try:
        return zlib.decompress(base64.b64decode(encoded)).decode("utf-8")
    except (zlib.error, ValueError):
        return ""


class SQLiteStore:
    """PageStore backed by one SQLite file; each call opens its own connection."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialized = False

    async def init(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await optimize_connection(db)
            for stmt in SCHEMA.split(";\n"):
                if stmt.strip():
                    await db.execute(stmt)
            await db.commit()
        self._initialized = True

    async def _connect(self) -> aiosqlite.Connection:
        if not self._initialized:
            await self.init()
        conn = aiosqlite.connect(self.db_path, timeout=30.0)
        return conn

    async def create_session(self, base_url: str, kind: str = "crawl") -> int:
        now = int(time.time())
        async with await self._connect() as db:
            cursor = await db.execute(
                "INSERT INTO sessions(base_url, kind, status, created_at, updated_at) VALUES (?,?,?,?,?)",
                (base_url, kind, SessionStatus.PENDING.value, now, now),
            )
            await db.commit()
            return cursor.lastrowid

    async def update_session_status(self, session_id: int, status: SessionStatus, error: Optional[str] = None, **counts: int) -> None:
        await self._update_session(session_id, status, error, counts)

    async def update_session_counts(self, session_id: int, **counts: int) -> None:
        await self._update_session(session_id, None, None, counts)

    async def _update_session(self, session_id: int, status: Optional[SessionStatus], error: Optional[str], counts: Dict[str, int]) -> None:
        _check_counts(counts)
        assignments = ["updated_at=?"]
        params: List[Any] = [int(time.time())]
        if status is not None:
            assignments.append("status=?")
            params.append(SessionStatus(status).value)
        for key, value in counts.items():
            assignments.append(f"{key}=?")
            params.append(value)
        if error is not None:
            assignments.append("error=?")
            params.append(error)
        params.append(session_id)
        async with await self._connect() as db:
            await db.execute(f"UPDATE sessions SET {', '.join(assignments)} WHERE id=?", params)
            await db.commit()

    async def get_session(self, session_id: int) -> Optional[Dict[str, Any]]:
        async with await self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM sessions WHERE id=?", (session_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        session = dict(row)
        session["status"] = SessionStatus(session["status"])
        return session

    async def get_session_status(self, session_id: int) -> Optional[SessionStatus]:
        async with await self._connect() as db:
            async with db.execute("SELECT status FROM sessions WHERE id=?", (session_id,)) as cursor:
                row = await cursor.fetchone()
        return SessionStatus(row[0]) if row else None

    async def save_page(self, session_id: int, page: PageRecord) -> int:
        async with await self._connect() as db:
            await db.execute(
                """
            INSERT INTO pages(session_id, url, final_url, status_code, title, text_content, html_compressed,
                              outgoing_links_json, images_json, meta_tags_json, error, fetched_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(session_id, url) DO UPDATE SET
              final_url=excluded.final_url,
              status_code=excluded.status_code,
              title=excluded.title,
              text_content=excluded.text_content,
              html_compressed=excluded.html_compressed,
              outgoing_links_json=excluded.outgoing_links_json,
              images_json=excluded.images_json,
              meta_tags_json=excluded.meta_tags_json,
              error=excluded.error,
              fetched_at=excluded.fetched_at
            """,
                (
                    session_id, page.url, page.final_url, page.status_code, page.title, page.text_content,
                    compress_html(page.raw_document) if page.raw_document else None,
                    json.dumps(list(page.outgoing_links)), json.dumps(list(page.images)),
                    json.dumps(page.meta_tags, ensure_ascii=False), page.error, int(time.time()),
                ),
            )
            async with db.execute("SELECT id FROM pages WHERE session_id=? AND url=?", (session_id, page.url)) as cursor:
                row = await cursor.fetchone()
            await db.commit()
            return row[0]

    async def get_page(self, page_id: int) -> Optional[PageRecord]:
        async with await self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM pages WHERE id=?", (page_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return PageRecord(
            url=row["url"],
            title=row["title"] or "",
            text_content=row["text_content"] or "",
            raw_document=decompress_html(row["html_compressed"]),
            status_code=row["status_code"],
            outgoing_links=tuple(json.loads(row["outgoing_links_json"] or "[]")),
            images=tuple(json.loads(row["images_json"] or "[]")),
            meta_tags=json.loads(row["meta_tags_json"] or "{}"),
            final_url=row["final_url"],
            error=row["error"],
        )

    async def list_page_ids(self, session_id: int) -> List[int]:
        async with await self._connect() as db:
            async with db.execute("SELECT id FROM pages WHERE session_id=? ORDER BY id", (session_id,)) as cursor:
                rows = await cursor.fetchall()
        return [r[0] for r in rows]

    async def get_analysis(self, page_id: int, kind: str) -> Optional[Dict[str, Any]]:
        async with await self._connect() as db:
            async with db.execute(
                "SELECT result_json FROM analysis_results WHERE page_id=? AND kind=?", (page_id, kind)
            ) as cursor:
                row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def save_analysis(self, page_id: int, kind: str, result: Dict[str, Any]) -> None:
        async with await self._connect() as db:
            await db.execute(
                """
            INSERT INTO analysis_results(page_id, kind, result_json, analyzed_at) VALUES (?,?,?,?)
            ON CONFLICT(page_id, kind) DO UPDATE SET
              result_json=excluded.result_json,
              analyzed_at=excluded.analyzed_at
            """,
                (page_id, kind, json.dumps(result, ensure_ascii=False), int(time.time())),
            )
            await db.commit()
