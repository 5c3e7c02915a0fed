"""Unit tests for db.postgres methods."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from psycopg_pool import PoolTimeout

from db import postgres
from implementation.classes.errors import InvalidInputError, NotFoundError, RemoteServiceError
from implementation.classes.schemas import FavoriteRecord

ADDED_AT = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _movie_row(movie_id: int, title: str = "Alien", qdrant_id: str | None = "pid") -> tuple:
    return (
        movie_id, title, None, "In space.", ["Horror", "Sci-Fi"], "1979-05-25",
        "/p.jpg", "/b.jpg", 8.1, 9000, 55.0, qdrant_id,
    )


def _mock_pool_connection(
    mocker,
    *,
    fetchall_result=None,
    fetchone_result=None,
):
    """Mock pool.connection() -> conn.cursor() async context managers and return mocks."""
    cursor = AsyncMock()
    cursor.fetchall.return_value = fetchall_result
    cursor.fetchone.return_value = fetchone_result

    cursor_cm = MagicMock()
    cursor_cm.__aenter__ = AsyncMock(return_value=cursor)
    cursor_cm.__aexit__ = AsyncMock(return_value=None)

    connection = MagicMock()
    connection.commit = AsyncMock()
    connection.execute = AsyncMock()
    connection.cursor.return_value = cursor_cm

    connection_cm = MagicMock()
    connection_cm.__aenter__ = AsyncMock(return_value=connection)
    connection_cm.__aexit__ = AsyncMock(return_value=None)
    mocker.patch.object(postgres.pool, "connection", return_value=connection_cm)

    return connection, cursor


# ===============================
#        BASE HELPERS
# ===============================

def test_build_conninfo_uses_environment_variables(mocker) -> None:
    """_build_conninfo should format host/db/user/password from environment variables."""
    env_values = {
        "POSTGRES_HOST": "localhost",
        "POSTGRES_DB": "movies",
        "POSTGRES_USER": "tester",
        "POSTGRES_PASSWORD": "secret",
    }
    mocker.patch("db.postgres.os.getenv", side_effect=lambda key: env_values.get(key))
    assert postgres._build_conninfo() == "host=localhost dbname=movies user=tester password=secret"


@pytest.mark.asyncio
async def test_execute_read_fetches_all_rows(mocker) -> None:
    _, cursor = _mock_pool_connection(mocker, fetchall_result=[(1,), (2,)])
    result = await postgres._execute_read("SELECT 1", (123,))
    cursor.execute.assert_awaited_once_with("SELECT 1", (123,))
    assert result == [(1,), (2,)]


@pytest.mark.asyncio
async def test_execute_write_with_fetch_one_commits_and_returns_row(mocker) -> None:
    connection, cursor = _mock_pool_connection(mocker, fetchone_result=(99,))
    result = await postgres._execute_write("DELETE ... RETURNING movie_id", (1,), fetch_one=True)
    cursor.fetchone.assert_awaited_once()
    connection.commit.assert_awaited_once()
    assert result == (99,)


@pytest.mark.asyncio
async def test_check_postgres_returns_ok_on_success(mocker) -> None:
    connection, _ = _mock_pool_connection(mocker)
    assert await postgres.check_postgres() == "ok"
    connection.execute.assert_awaited_once_with("SELECT 1")


@pytest.mark.asyncio
async def test_check_postgres_returns_error_string_on_failure(mocker) -> None:
    connection_cm = AsyncMock()
    connection_cm.__aenter__.side_effect = RuntimeError("db unavailable")
    mocker.patch.object(postgres.pool, "connection", return_value=connection_cm)
    assert await postgres.check_postgres() == "db unavailable"


@pytest.mark.asyncio
async def test_ensure_schema_creates_tables(mocker) -> None:
    connection, _ = _mock_pool_connection(mocker)
    await postgres.ensure_schema()
    sql = connection.execute.await_args.args[0]
    assert "public.movies" in sql and "public.favorites" in sql
    connection.commit.assert_awaited_once()


# ===============================
#          ID HANDLING
# ===============================

def test_to_db_id_rejects_non_numeric() -> None:
    assert postgres._to_db_id(" 42 ") == 42
    with pytest.raises(InvalidInputError):
        postgres._to_db_id("abc")


def test_to_db_ids_skips_non_numeric() -> None:
    assert postgres._to_db_ids(["1", "x", "3"]) == [1, 3]


def test_row_to_movie_renders_string_id() -> None:
    movie = postgres._row_to_movie(_movie_row(7))
    assert movie["id"] == "7"
    assert movie["title"] == "Alien"
    assert movie["genres"] == ["Horror", "Sci-Fi"]
    assert movie["qdrant_id"] == "pid"


# ===============================
#            MOVIES
# ===============================

@pytest.mark.asyncio
async def test_fetch_movies_by_ids_is_one_query(mocker) -> None:
    read = mocker.patch(
        "db.postgres._execute_read",
        new=AsyncMock(return_value=[_movie_row(2), _movie_row(1)]),
    )
    movies = await postgres.fetch_movies_by_ids(["1", "2", "bogus"])
    read.assert_awaited_once()
    query, params = read.await_args.args
    assert "ANY(%s::bigint[])" in query
    assert params == ([1, 2],)
    assert [m["id"] for m in movies] == ["2", "1"]


@pytest.mark.asyncio
async def test_fetch_movies_by_ids_empty_short_circuits(mocker) -> None:
    read = mocker.patch("db.postgres._execute_read", new=AsyncMock())
    assert await postgres.fetch_movies_by_ids(["x"]) == []
    read.assert_not_awaited()


@pytest.mark.asyncio
async def test_fetch_movie_missing_returns_none(mocker) -> None:
    mocker.patch("db.postgres._execute_read_one", new=AsyncMock(return_value=None))
    assert await postgres.fetch_movie("5") is None


@pytest.mark.asyncio
async def test_fetch_all_movies_with_limit(mocker) -> None:
    read = mocker.patch("db.postgres._execute_read", new=AsyncMock(return_value=[_movie_row(1)]))
    await postgres.fetch_all_movies(limit=10)
    query, params = read.await_args.args
    assert query.rstrip().endswith("LIMIT %s")
    assert params == (10,)


@pytest.mark.asyncio
async def test_update_qdrant_ids_uses_unnest(mocker) -> None:
    write = mocker.patch("db.postgres._execute_write", new=AsyncMock())
    await postgres.update_qdrant_ids({"1": "p1", "2": "p2"})
    query, params = write.await_args.args
    assert "unnest" in query
    assert params == ([1, 2], ["p1", "p2"])


@pytest.mark.asyncio
async def test_update_qdrant_ids_empty_is_no_op(mocker) -> None:
    write = mocker.patch("db.postgres._execute_write", new=AsyncMock())
    await postgres.update_qdrant_ids({})
    write.assert_not_awaited()


# ===============================
#           FAVORITES
# ===============================

@pytest.mark.asyncio
async def test_fetch_favorites_returns_records(mocker) -> None:
    mocker.patch("db.postgres._execute_read", new=AsyncMock(return_value=[(5, ADDED_AT)]))
    assert await postgres.fetch_favorites() == [FavoriteRecord(movie_id="5", added_at=ADDED_AT)]


@pytest.mark.asyncio
async def test_fetch_favorite_movies_passes_limit(mocker) -> None:
    read = mocker.patch("db.postgres._execute_read", new=AsyncMock(return_value=[_movie_row(3)]))
    movies = await postgres.fetch_favorite_movies(limit=25)
    assert "JOIN public.favorites" in read.await_args.args[0]
    assert read.await_args.args[1] == (25,)
    assert movies[0]["id"] == "3"


@pytest.mark.asyncio
async def test_insert_favorite_unknown_movie_raises_not_found(mocker) -> None:
    mocker.patch("db.postgres.fetch_movie", new=AsyncMock(return_value=None))
    write = mocker.patch("db.postgres._execute_write", new=AsyncMock())
    with pytest.raises(NotFoundError):
        await postgres.insert_favorite("404")
    write.assert_not_awaited()


@pytest.mark.asyncio
async def test_insert_favorite_is_idempotent_upsert(mocker) -> None:
    mocker.patch("db.postgres.fetch_movie", new=AsyncMock(return_value={"id": "5"}))
    write = mocker.patch("db.postgres._execute_write", new=AsyncMock(return_value=(5, ADDED_AT)))
    record = await postgres.insert_favorite("5")
    assert "ON CONFLICT (movie_id)" in write.await_args.args[0]
    assert write.await_args.kwargs["fetch_one"] is True
    assert record == FavoriteRecord(movie_id="5", added_at=ADDED_AT)


@pytest.mark.asyncio
async def test_delete_favorite_reports_whether_removed(mocker) -> None:
    mocker.patch("db.postgres._execute_write", new=AsyncMock(side_effect=[(5,), None]))
    assert await postgres.delete_favorite("5") is True
    assert await postgres.delete_favorite("5") is False


# ===============================
#     METADATA STORE ADAPTER
# ===============================

@pytest.mark.asyncio
async def test_store_find_by_id_invalid_id_is_none(mocker) -> None:
    read_one = mocker.patch("db.postgres._execute_read_one", new=AsyncMock())
    assert await postgres.PostgresMetadataStore().find_by_id("tt-123") is None
    read_one.assert_not_awaited()


@pytest.mark.asyncio
async def test_store_find_favorite_movies_uses_configured_limit(mocker) -> None:
    fetch = mocker.patch("db.postgres.fetch_favorite_movies", new=AsyncMock(return_value=[]))
    await postgres.PostgresMetadataStore(favorites_limit=7).find_favorite_movies()
    fetch.assert_awaited_once_with(7)


@pytest.mark.asyncio
async def test_store_delegates_writes(mocker) -> None:
    insert = mocker.patch("db.postgres.insert_favorite", new=AsyncMock())
    delete = mocker.patch("db.postgres.delete_favorite", new=AsyncMock(return_value=True))
    update = mocker.patch("db.postgres.update_qdrant_ids", new=AsyncMock())
    store = postgres.PostgresMetadataStore()

    await store.add_favorite("1")
    assert await store.remove_favorite("1") is True
    await store.set_qdrant_ids({"1": "p1"})

    insert.assert_awaited_once_with("1")
    delete.assert_awaited_once_with("1")
    update.assert_awaited_once_with({"1": "p1"})


@pytest.mark.asyncio
async def test_store_wraps_connection_failures(mocker) -> None:
    mocker.patch(
        "db.postgres.fetch_favorite_movies",
        new=AsyncMock(side_effect=OSError("connection refused")),
    )
    with pytest.raises(RemoteServiceError) as exc_info:
        await postgres.PostgresMetadataStore().find_favorite_movies()
    assert exc_info.value.operation == "find_favorite_movies"
    assert exc_info.value.collection == "movies"
    assert exc_info.value.details == "connection refused"


@pytest.mark.asyncio
async def test_store_wraps_pool_timeout(mocker) -> None:
    mocker.patch(
        "db.postgres.fetch_movies_by_ids",
        new=AsyncMock(side_effect=PoolTimeout("couldn't get a connection after 5.00 sec")),
    )
    with pytest.raises(RemoteServiceError):
        await postgres.PostgresMetadataStore().find_by_ids(["1"])


@pytest.mark.asyncio
async def test_clear_qdrant_ids_nulls_every_movie(mocker) -> None:
    _, cursor = _mock_pool_connection(mocker)
    await postgres.clear_qdrant_ids()
    query = cursor.execute.await_args.args[0]
    assert "SET qdrant_id = NULL" in query
