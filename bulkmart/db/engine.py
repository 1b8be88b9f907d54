# bulkmart/db/engine.py
# 统一引擎工厂：PG 下注入 application_name；SQLite 下改为显式 BEGIN IMMEDIATE
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

__all__ = ["create_async_engine_safe"]


def _connect_args_for(url_str: str) -> dict[str, Any]:
    """
    返回后端专属 connect_args：
    - PostgreSQL(psycopg): application_name
    - SQLite: check_same_thread + busy timeout
    """
    u = make_url(url_str)
    backend = u.get_backend_name()

    if backend.startswith("postgresql"):
        return {"application_name": "bulkmart"}

    if backend.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}

    return {}


def _install_sqlite_tx_hooks(engine: AsyncEngine) -> None:
    """
    pysqlite 默认的隐式事务会让 SAVEPOINT 行为错乱：
    关掉驱动自己的 BEGIN，由我们在 begin 事件里显式发 BEGIN IMMEDIATE。
    IMMEDIATE 让写事务串行排队（busy timeout 内等待），而不是升级锁时互相死锁。
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_async_engine_safe(url_str: str, *, echo: bool = False, **extra: Any) -> AsyncEngine:
    """Async 引擎（'postgresql+psycopg' 或 'sqlite+aiosqlite'）。"""
    connect_args: dict[str, Any] = _connect_args_for(url_str)
    u = make_url(url_str)
    backend = u.get_backend_name()

    kwargs: dict[str, Any] = {"echo": echo}
    if backend.startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    if connect_args:
        kwargs["connect_args"] = connect_args
    kwargs.update(extra)

    engine = create_async_engine(url_str, **kwargs)
    if backend.startswith("sqlite"):
        _install_sqlite_tx_hooks(engine)
    return engine
