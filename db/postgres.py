"""
Database connection pool and query methods for the API service.

This module provides a psycopg v3 AsyncConnectionPool configured for production use,
along with async helper functions for executing queries and public methods for
reading movie metadata and managing the favorites list.

Movie IDs cross this module's boundary as strings; the tables key movies by
bigint, so IDs are converted on the way in and rendered back on the way out.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import psycopg
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from implementation.classes.errors import InvalidInputError, NotFoundError, RemoteServiceError
from implementation.classes.schemas import FavoriteRecord

logger = logging.getLogger(__name__)


def _build_conninfo() -> str:
    """
    Build a libpq connection string from environment variables.

    Returns:
        A connection string in the format expected by psycopg.
    """
    return (
        f"host={os.getenv('POSTGRES_HOST')} "
        f"dbname={os.getenv('POSTGRES_DB')} "
        f"user={os.getenv('POSTGRES_USER')} "
        f"password={os.getenv('POSTGRES_PASSWORD')}"
    )


# Create the connection pool with production-ready settings
# The pool is created inert (open=False) and will be explicitly opened
# during FastAPI startup via the lifespan handler.
pool = AsyncConnectionPool(
    conninfo=_build_conninfo(),
    min_size=2,           # Keep 2 warm connections for steady-state traffic
    max_size=10,          # Allow up to 10 connections for burst capacity
    max_lifetime=1800,    # Recycle connections after 30 minutes to prevent staleness
    max_idle=300,         # Close idle connections above min_size after 5 minutes
    timeout=5.0,           # Wait up to 5s for a connection before raising PoolTimeout
    open=False,           # Don't open connections at import time; opened in lifespan
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS public.movies (
    movie_id        BIGINT PRIMARY KEY,
    title           TEXT NOT NULL,
    original_title  TEXT,
    overview        TEXT,
    genres          TEXT[] NOT NULL DEFAULT '{}',
    release_date    TEXT,
    poster_path     TEXT,
    backdrop_path   TEXT,
    vote_average    DOUBLE PRECISION,
    vote_count      INTEGER,
    popularity      DOUBLE PRECISION,
    qdrant_id       TEXT
);
CREATE TABLE IF NOT EXISTS public.favorites (
    movie_id   BIGINT PRIMARY KEY REFERENCES public.movies(movie_id) ON DELETE CASCADE,
    added_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

_MOVIE_COLUMNS = [
    "id", "title", "original_title", "overview", "genres", "release_date",
    "poster_path", "backdrop_path", "vote_average", "vote_count", "popularity",
    "qdrant_id",
]

_MOVIE_SELECT = """
    SELECT m.movie_id, m.title, m.original_title, m.overview, m.genres,
           m.release_date, m.poster_path, m.backdrop_path, m.vote_average,
           m.vote_count, m.popularity, m.qdrant_id
    FROM public.movies m"""


# ===============================
#     PRIVATE BASE METHODS
# ===============================

async def _execute_read(query: str, params: Sequence[object] | None = None) -> list[tuple]:
    """
    Execute a read query and return all rows.

    Private helper method for internal use.

    Args:
        query: SQL query string with parameter placeholders (%s).
        params: Optional sequence of parameters to bind to the query.

    Returns:
        List of tuples, where each tuple represents a row.
    """
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()


async def _execute_read_one(query: str, params: Sequence[object] | None = None) -> tuple | None:
    """
    Execute a read query and return a single row, or None if no rows match.

    Private helper method for internal use.
    """
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchone()


async def _execute_write(
    query: str,
    params: Sequence[object] | None = None,
    fetch_one: bool = False,
):
    """
    Execute a write query (INSERT, UPDATE, DELETE) with an explicit commit.

    Private helper method for internal use. The connection is used within a transaction.
    On clean exit, the transaction is explicitly committed. If an exception occurs,
    the transaction is rolled back automatically by the connection context manager.

    Args:
        query: SQL query string with parameter placeholders (%s).
        params: Optional sequence of parameters to bind to the query.
        fetch_one: If True, fetch and return the first row (e.g., for RETURNING clauses).

    Returns:
        If fetch_one is True, returns the first row as a tuple, otherwise None.
    """
    async with pool.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            result = await cur.fetchone() if fetch_one else None
        await conn.commit()  # Explicitly commit the transaction
        return result


# ===============================
#     PRIVATE HELPER METHODS
# ===============================

def _to_db_id(movie_id: str) -> int:
    """Convert a canonical string movie ID to the bigint primary key."""
    text = str(movie_id).strip()
    if not text.isdigit():
        raise InvalidInputError(f"Movie ID must be numeric, got {movie_id!r}")
    return int(text)


def _to_db_ids(movie_ids: Sequence[str]) -> list[int]:
    """Convert IDs, silently skipping any that cannot be primary keys."""
    ids: list[int] = []
    for movie_id in movie_ids:
        text = str(movie_id).strip()
        if text.isdigit():
            ids.append(int(text))
        else:
            logger.debug("Skipping non-numeric movie ID %r", movie_id)
    return ids


def _row_to_movie(row: tuple) -> dict:
    movie = dict(zip(_MOVIE_COLUMNS, row))
    movie["id"] = str(movie["id"])
    movie["genres"] = list(movie.get("genres") or [])
    return movie


# ===============================
#        PUBLIC METHODS
# ===============================

async def check_postgres() -> str:
    """
    Ping Postgres via the pool to verify connectivity.

    This validates that the pool can successfully obtain a connection
    and execute a simple query. Used by the /health endpoint.

    Returns:
        'ok' if the check succeeds, otherwise an error message string.
    """
    try:
        async with pool.connection() as conn:
            await conn.execute("SELECT 1")
        return "ok"
    except Exception as e:
        return str(e)


async def ensure_schema() -> None:
    """Create the movies and favorites tables if they do not exist."""
    async with pool.connection() as conn:
        await conn.execute(SCHEMA_SQL)
        await conn.commit()


# ===============================
#         MOVIE METHODS
# ===============================

async def fetch_movies_by_ids(movie_ids: Sequence[str]) -> list[dict]:
    """
    Bulk fetch movie records for a list of IDs.

    Single query for all candidates, never per-candidate. Row order is
    whatever Postgres returns; callers that need ranking order must
    reassemble it themselves. Unknown IDs are simply absent from the result.
    """
    ids = _to_db_ids(movie_ids)
    if not ids:
        return []
    query = f"{_MOVIE_SELECT}\n    WHERE m.movie_id = ANY(%s::bigint[])"
    rows = await _execute_read(query, (ids,))
    return [_row_to_movie(row) for row in rows]


async def fetch_movie(movie_id: str) -> Optional[dict]:
    query = f"{_MOVIE_SELECT}\n    WHERE m.movie_id = %s"
    row = await _execute_read_one(query, (_to_db_id(movie_id),))
    return _row_to_movie(row) if row else None


async def fetch_all_movies(limit: int | None = None) -> list[dict]:
    """Every movie ordered by ID, used by the re-embedding job."""
    query = f"{_MOVIE_SELECT}\n    ORDER BY m.movie_id"
    params: tuple = ()
    if limit is not None:
        query += "\n    LIMIT %s"
        params = (limit,)
    rows = await _execute_read(query, params or None)
    return [_row_to_movie(row) for row in rows]


async def update_qdrant_ids(mapping: dict[str, str]) -> None:
    """
    Record each movie's vector index point ID.

    Args:
        mapping: movie_id -> qdrant point ID.
    """
    if not mapping:
        return
    movie_ids = _to_db_ids(list(mapping))
    point_ids = [mapping[str(mid)] for mid in movie_ids]
    query = """
        UPDATE public.movies AS m
        SET qdrant_id = u.qdrant_id
        FROM unnest(%s::bigint[], %s::text[]) AS u(movie_id, qdrant_id)
        WHERE m.movie_id = u.movie_id
    """
    await _execute_write(query, (movie_ids, point_ids))


async def clear_qdrant_ids() -> None:
    """Forget every recorded point ID, e.g. before the movie collection is rebuilt."""
    await _execute_write("UPDATE public.movies SET qdrant_id = NULL WHERE qdrant_id IS NOT NULL")


# ===============================
#       FAVORITES METHODS
# ===============================

async def fetch_favorites() -> list[FavoriteRecord]:
    rows = await _execute_read(
        "SELECT movie_id, added_at FROM public.favorites ORDER BY added_at DESC"
    )
    return [FavoriteRecord(movie_id=str(movie_id), added_at=added_at) for movie_id, added_at in rows]


async def fetch_favorite_movies(limit: int = 100) -> list[dict]:
    """Movie records for the favorites list, newest first, capped at `limit`."""
    query = f"""{_MOVIE_SELECT}
    JOIN public.favorites f ON f.movie_id = m.movie_id
    ORDER BY f.added_at DESC
    LIMIT %s"""
    rows = await _execute_read(query, (limit,))
    return [_row_to_movie(row) for row in rows]


async def insert_favorite(movie_id: str) -> FavoriteRecord:
    """
    Add a movie to favorites. Adding an existing favorite is a no-op.

    Raises:
        NotFoundError: If the movie does not exist.
    """
    db_id = _to_db_id(movie_id)
    if await fetch_movie(movie_id) is None:
        raise NotFoundError(f"Movie {movie_id} not found")
    row = await _execute_write(
        """
        INSERT INTO public.favorites (movie_id)
        VALUES (%s)
        ON CONFLICT (movie_id) DO UPDATE SET movie_id = EXCLUDED.movie_id
        RETURNING movie_id, added_at
        """,
        (db_id,),
        fetch_one=True,
    )
    return FavoriteRecord(movie_id=str(row[0]), added_at=row[1])


async def delete_favorite(movie_id: str) -> bool:
    """Remove a favorite. Returns False when the movie was not a favorite."""
    row = await _execute_write(
        "DELETE FROM public.favorites WHERE movie_id = %s RETURNING movie_id",
        (_to_db_id(movie_id),),
        fetch_one=True,
    )
    return row is not None


# ===============================
#     METADATA STORE ADAPTER
# ===============================

@asynccontextmanager
async def _store_errors(operation: str):
    """Surface driver and pool failures as RemoteServiceError."""
    try:
        yield
    except (psycopg.Error, PoolTimeout, OSError) as e:
        logger.error("Postgres %s failed: %s", operation, e)
        raise RemoteServiceError(
            "Metadata store request failed",
            operation=operation,
            collection="movies",
            details=str(e),
        ) from e


class PostgresMetadataStore:
    """MetadataStore backed by the module-level pool."""

    def __init__(self, favorites_limit: int = 100):
        self.favorites_limit = favorites_limit

    async def find_by_ids(self, movie_ids: Sequence[str]) -> list[dict]:
        async with _store_errors("find_by_ids"):
            return await fetch_movies_by_ids(movie_ids)

    async def find_by_id(self, movie_id: str) -> Optional[dict]:
        async with _store_errors("find_by_id"):
            try:
                return await fetch_movie(movie_id)
            except InvalidInputError:
                return None

    async def find_favorites(self) -> list[FavoriteRecord]:
        async with _store_errors("find_favorites"):
            return await fetch_favorites()

    async def find_favorite_movies(self) -> list[dict]:
        async with _store_errors("find_favorite_movies"):
            return await fetch_favorite_movies(self.favorites_limit)

    async def add_favorite(self, movie_id: str) -> FavoriteRecord:
        async with _store_errors("add_favorite"):
            return await insert_favorite(movie_id)

    async def remove_favorite(self, movie_id: str) -> bool:
        async with _store_errors("remove_favorite"):
            return await delete_favorite(movie_id)

    async def list_movies(self, limit: int | None = None) -> list[dict]:
        async with _store_errors("list_movies"):
            return await fetch_all_movies(limit)

    async def set_qdrant_ids(self, mapping: dict[str, str]) -> None:
        async with _store_errors("set_qdrant_ids"):
            await update_qdrant_ids(mapping)

    async def clear_qdrant_ids(self) -> None:
        async with _store_errors("clear_qdrant_ids"):
            await clear_qdrant_ids()
