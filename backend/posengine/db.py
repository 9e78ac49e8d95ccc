from contextlib import contextmanager
from typing import Optional

from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings

_pool: Optional[ConnectionPool] = None


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        _pool = ConnectionPool(
            conninfo=settings.db_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            kwargs={"row_factory": dict_row},
            open=True,
        )
    return _pool


@contextmanager
def get_conn():
    # `with get_conn() as conn:` commits on success, rolls back on exception
    # and returns the connection to the pool.
    with _get_pool().connection() as conn:
        with conn:
            yield conn


def set_company_context(conn, company_id: str):
    with conn.cursor() as cur:
        # `SET ... = %s` is not valid with the extended query protocol; set_config() takes parameters.
        cur.execute(
            "SELECT set_config('app.current_company_id', %s::text, true)",
            (company_id,),
        )
