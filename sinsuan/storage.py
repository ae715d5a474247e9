from contextlib import contextmanager

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.schema import CreateIndex, CreateTable

from sinsuan.models import CombinedVisitCount, IpLocation, VisitRecord, tenant_record_table, visit_record_table
from sinsuan.naming import RECORD_TABLE, legacy_names_for_table, resolve_name

LOCATION_FIELDS = ("nation", "province", "city", "district", "lat", "lon")


class StorageError(RuntimeError):
    pass


class ProvisioningError(StorageError):
    pass


class RecordingError(StorageError):
    pass


class QueryError(StorageError):
    pass


class VisitStore:
    """Owns the connection pool shared by every request.

    Work borrows one connection through ``lend()``; the connection goes back
    to the pool when the block exits, whether or not it raised. ``drain()``
    closes the pool on shutdown.
    """

    def __init__(self, engine: sa.Engine):
        self.engine = engine
        self._drained = False

    @contextmanager
    def lend(self):
        if self._drained:
            raise StorageError("Connection pool has been drained.")
        with self.engine.connect() as conn:
            yield conn

    def drain(self) -> None:
        self._drained = True
        self.engine.dispose()


def _quote(conn, name: str) -> str:
    return conn.dialect.identifier_preparer.quote(name)


def _column_names(conn, table_name: str) -> set[str]:
    return {column["name"] for column in sa.inspect(conn).get_columns(table_name)}


def _create_location_table(conn) -> None:
    table = IpLocation.__table__
    conn.execute(CreateTable(table, if_not_exists=True))
    for index in table.indexes:
        conn.execute(CreateIndex(index, if_not_exists=True))


def _upgrade(conn, table_name: str) -> bool:
    if "ip" in _column_names(conn, table_name):
        return False

    view_name, trigger_name = legacy_names_for_table(table_name)
    operations = Operations(MigrationContext.configure(conn))
    try:
        operations.add_column(table_name, sa.Column("ip", sa.Text(), nullable=False, server_default=""))
    except OperationalError:
        # A concurrent request may have added the column after our inspection.
        conn.rollback()
        if "ip" not in _column_names(conn, table_name):
            raise

    conn.execute(sa.text(f"DROP TRIGGER IF EXISTS {_quote(conn, trigger_name)}"))
    if view_name in sa.inspect(conn).get_view_names():
        conn.execute(sa.text(f"DROP VIEW IF EXISTS {_quote(conn, view_name)}"))
    else:
        conn.execute(sa.text(f"DROP TABLE IF EXISTS {_quote(conn, view_name)}"))

    _create_location_table(conn)
    conn.commit()
    return True


def ensure_ready(conn, domain: str) -> None:
    table_name = resolve_name(RECORD_TABLE, domain)
    try:
        if not sa.inspect(conn).has_table(table_name):
            conn.execute(CreateTable(visit_record_table(table_name), if_not_exists=True))
            conn.commit()
            return
        _upgrade(conn, table_name)
    except SQLAlchemyError as exc:
        conn.rollback()
        raise ProvisioningError(f"Could not provision storage for {domain!r}: {exc}") from exc


def upgrade_table(conn, table_name: str) -> bool:
    try:
        return _upgrade(conn, table_name)
    except SQLAlchemyError as exc:
        conn.rollback()
        raise ProvisioningError(f"Could not upgrade {table_name}: {exc}") from exc


def list_tenant_tables(conn) -> list[str]:
    prefix = f"{RECORD_TABLE}_"
    return sorted(name for name in sa.inspect(conn).get_table_names() if name.startswith(prefix))


def ensure_location_table(conn) -> None:
    try:
        _create_location_table(conn)
        conn.commit()
    except SQLAlchemyError as exc:
        conn.rollback()
        raise ProvisioningError(f"Could not create {IpLocation.__tablename__}: {exc}") from exc


def record_visit(conn, domain: str, visit: VisitRecord) -> None:
    table = tenant_record_table(domain)
    try:
        conn.execute(
            table.insert().values(
                path=visit.path,
                user_id=visit.user_id,
                ip=visit.ip or "",
                # Migrated tables keep their original timestamp column, which has no default.
                timestamp=sa.func.current_timestamp(),
            )
        )
        conn.commit()
    except SQLAlchemyError as exc:
        conn.rollback()
        raise RecordingError(f"Could not record visit for {domain!r}: {exc}") from exc


def query_count(conn, domain: str, path: str) -> CombinedVisitCount:
    table = tenant_record_table(domain)
    on_path = table.c.path == path
    stmt = sa.select(
        sa.func.count().label("site_pv"),
        sa.func.count(sa.distinct(table.c.user_id)).label("site_uv"),
        sa.func.count(sa.case((on_path, 1))).label("pv"),
        sa.func.count(sa.distinct(sa.case((on_path, table.c.user_id)))).label("uv"),
    ).select_from(table)

    try:
        row = conn.execute(stmt).one()
    except SQLAlchemyError as exc:
        conn.rollback()
        raise QueryError(f"Could not count visits for {domain!r}: {exc}") from exc

    return CombinedVisitCount(pv=row.pv, uv=row.uv, site_pv=row.site_pv, site_uv=row.site_uv)


def find_location(conn, ip: str) -> dict | None:
    table = IpLocation.__table__
    try:
        row = conn.execute(sa.select(table).where(table.c.ip == ip)).mappings().first()
    except SQLAlchemyError as exc:
        conn.rollback()
        raise StorageError(f"Could not read location for {ip}: {exc}") from exc
    return dict(row) if row is not None else None


def save_location(conn, ip: str, location: dict) -> bool:
    table = IpLocation.__table__
    values = {field: location.get(field) for field in LOCATION_FIELDS}
    try:
        conn.execute(table.insert().values(ip=ip, **values))
        conn.commit()
    except IntegrityError:
        # Another request cached this ip first; entries are write-once.
        conn.rollback()
        return False
    except SQLAlchemyError as exc:
        conn.rollback()
        raise StorageError(f"Could not cache location for {ip}: {exc}") from exc
    return True
