#!/usr/bin/env python3
"""
Course storage backends
Supabase (through the supabase client) for production runs, SQLite for local runs and tests
"""

import logging
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
from dotenv import load_dotenv
from supabase import Client, ClientOptions, PostgrestAPIError, SupabaseException, create_client

logger = logging.getLogger(__name__)

ENV_FILES = ('.env.local', '.env')

COURSE_COLUMNS = ('subject', 'code', 'title', 'description', 'credits', 'url')


class StoreError(Exception):
    """A read or write against the course store failed"""


class MissingCredentialError(StoreError):
    """Required store configuration is absent from the environment"""


@dataclass
class StoreConfig:
    """Connection settings for the Supabase project"""
    url: str = ""
    service_key: str = ""
    anon_key: str = ""


def load_store_config(env_dir: Union[str, Path, None] = None) -> StoreConfig:
    """Build a StoreConfig from the environment, reading .env.local / .env first"""
    base = Path(env_dir) if env_dir else Path.cwd()
    for name in ENV_FILES:
        path = base / name
        if path.exists():
            # Existing environment variables take precedence
            load_dotenv(dotenv_path=path, override=False)

    return StoreConfig(
        url=os.getenv('SUPABASE_URL') or os.getenv('NEXT_PUBLIC_SUPABASE_URL') or "",
        service_key=os.getenv('SUPABASE_SERVICE_ROLE_KEY') or "",
        anon_key=os.getenv('SUPABASE_ANON_KEY') or os.getenv('NEXT_PUBLIC_SUPABASE_ANON_KEY') or "",
    )


def require_service_key(config: StoreConfig) -> None:
    """Raise if the credentials needed for writing are missing"""
    missing = [
        name for name, value in {
            'SUPABASE_URL': config.url,
            'SUPABASE_SERVICE_ROLE_KEY': config.service_key,
        }.items() if not value
    ]
    if missing:
        raise MissingCredentialError(f"Missing Supabase configuration: {', '.join(missing)}")


class SupabaseStore:
    """Courses table access through the Supabase client"""

    page_size = 1000

    def __init__(self, url: str, api_key: str, timeout: float = 30, client: Optional[Client] = None):
        if client is None:
            options = ClientOptions(
                auto_refresh_token=False,
                persist_session=False,
                postgrest_client_timeout=timeout,
            )
            try:
                client = create_client(url, api_key, options=options)
            except SupabaseException as e:
                raise StoreError(f"Could not create Supabase client for {url}: {e}") from e
        self.client = client

    @classmethod
    def from_config(cls, config: StoreConfig, **kwargs) -> 'SupabaseStore':
        require_service_key(config)
        return cls(config.url, config.service_key, **kwargs)

    def upsert(self, table: str, rows: Sequence[Dict[str, Any]], conflict_key: str) -> None:
        """Insert rows, overwriting any existing row with the same conflict key"""
        if not rows:
            return

        try:
            self.client.table(table).upsert(list(rows), on_conflict=conflict_key).execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise StoreError(f"Upsert into {table} failed: {e}") from e

        logger.debug(f"Upserted {len(rows)} rows into {table}")

    def select(self, table: str, columns: str = '*', filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Fetch all matching rows, paging through the server's row limit"""
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            query = self.client.table(table).select(columns)
            for column, value in (filters or {}).items():
                query = query.eq(column, value)

            try:
                response = query.order('code').range(offset, offset + self.page_size - 1).execute()
            except (PostgrestAPIError, httpx.HTTPError) as e:
                raise StoreError(f"Select from {table} failed: {e}") from e

            page = response.data or []
            rows.extend(page)
            logger.debug(f"Fetched page {offset // self.page_size + 1}: {len(page)} rows (total so far: {len(rows)})")

            if len(page) < self.page_size:
                break
            offset += self.page_size

        return rows


class SQLiteStore:
    """Local course store with the same upsert/select contract as SupabaseStore"""

    def __init__(self, db_path: Union[str, Path] = 'courses.db'):
        self.db_path = str(db_path)
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreError(f"Could not open {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row
        self.ensure_schema()

    def ensure_schema(self):
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS courses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject TEXT NOT NULL,
                    code TEXT NOT NULL UNIQUE,
                    title TEXT,
                    description TEXT,
                    credits REAL,
                    url TEXT
                )
                """
            )

    def _columns(self, table: str) -> List[str]:
        cur = self.conn.execute(f"PRAGMA table_info({table})")
        columns = [r[1] for r in cur.fetchall()]
        if not columns:
            raise StoreError(f"Unknown table: {table}")
        return columns

    def upsert(self, table: str, rows: Sequence[Dict[str, Any]], conflict_key: str) -> None:
        """Insert rows, overwriting any existing row with the same conflict key"""
        if not rows:
            return

        known = self._columns(table)
        columns = [c for c in rows[0].keys() if c in known]
        if conflict_key not in columns:
            raise StoreError(f"Conflict key {conflict_key!r} missing from rows")

        updates = ', '.join(f"{c} = excluded.{c}" for c in columns if c != conflict_key)
        action = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT({conflict_key}) {action}"
        )

        try:
            with self.conn:
                self.conn.executemany(sql, [tuple(row.get(c) for c in columns) for row in rows])
        except sqlite3.Error as e:
            raise StoreError(f"Upsert into {table} failed: {e}") from e

    def select(self, table: str, columns: str = '*', filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        known = self._columns(table)
        if columns != '*':
            wanted = [c.strip() for c in columns.split(',')]
            unknown = [c for c in wanted if c not in known]
            if unknown:
                raise StoreError(f"Unknown columns for {table}: {', '.join(unknown)}")
            columns = ', '.join(wanted)

        filters = filters or {}
        for column in filters:
            if column not in known:
                raise StoreError(f"Unknown filter column for {table}: {column}")

        sql = f"SELECT {columns} FROM {table}"
        if filters:
            sql += " WHERE " + ' AND '.join(f"{c} = ?" for c in filters)
        sql += " ORDER BY code"

        try:
            cur = self.conn.execute(sql, tuple(filters.values()))
            return [dict(r) for r in cur.fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"Select from {table} failed: {e}") from e

    def close(self):
        self.conn.close()
