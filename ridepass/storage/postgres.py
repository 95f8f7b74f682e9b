from __future__ import annotations

from contextlib import contextmanager
from importlib import resources
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from ridepass.logging import get_logger
from ridepass.storage.errors import ConstraintViolation, StoreUnavailable
from ridepass.storage.models import (
    Identity,
    IdentityStatus,
    Role,
    VerificationKind,
    VerificationRecord,
    utcnow,
)

_REQUIRED_TABLES = (
    "identities",
    "verification_records",
    "rider_profiles",
    "driver_profiles",
    "staff_profiles",
)

_IDENTITY_COLUMNS = (
    "id, canonical_identifier, email, password_hash, role, status, token_version, "
    "first_name, last_name, last_login_at, created_at, updated_at"
)


def _identity_from_row(row: Dict[str, Any]) -> Identity:
    return Identity(
        id=str(row["id"]),
        canonical_identifier=row["canonical_identifier"],
        password_hash=row["password_hash"],
        role=Role(row["role"]),
        status=IdentityStatus(row["status"]),
        token_version=int(row.get("token_version") or 1),
        email=row.get("email"),
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        last_login_at=row.get("last_login_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at"),
    )


def load_schema_sql() -> str:
    return resources.files("ridepass.storage").joinpath("schema.sql").read_text()


class PostgresTransaction:
    """Unit of work bound to a single connection inside ``conn.transaction()``.

    Every statement runs in the caller's transaction; commit and rollback are
    owned by :meth:`PostgresStore.transaction`.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        cur = self.conn.execute(sql, params)
        if cur.description is None:
            return []
        return list(cur.fetchall())

    def get_identity(
        self, identity_id: str, *, for_update: bool = False
    ) -> Optional[Identity]:
        lock = " FOR UPDATE" if for_update else ""
        row = self.conn.execute(
            f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE id = %s{lock}",
            (identity_id,),
        ).fetchone()
        return _identity_from_row(row) if row else None

    def get_identity_by_identifier(
        self, canonical_identifier: str, *, for_update: bool = False
    ) -> Optional[Identity]:
        lock = " FOR UPDATE" if for_update else ""
        row = self.conn.execute(
            f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE canonical_identifier = %s{lock}",
            (canonical_identifier,),
        ).fetchone()
        return _identity_from_row(row) if row else None

    def get_identity_by_email(
        self, email: str, *, for_update: bool = False
    ) -> Optional[Identity]:
        lock = " FOR UPDATE" if for_update else ""
        row = self.conn.execute(
            f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE lower(email) = lower(%s){lock}",
            (email,),
        ).fetchone()
        return _identity_from_row(row) if row else None

    def insert_identity(self, identity: Identity) -> Identity:
        try:
            self.conn.execute(
                """
                INSERT INTO identities (
                    id, canonical_identifier, email, password_hash, role, status,
                    token_version, first_name, last_name, created_at
                )
                VALUES (%s, %s, %s, %s, %s::identity_role, %s::identity_status, %s, %s, %s, %s)
                """,
                (
                    identity.id,
                    identity.canonical_identifier,
                    identity.email,
                    identity.password_hash,
                    identity.role.value,
                    identity.status.value,
                    identity.token_version,
                    identity.first_name,
                    identity.last_name,
                    identity.created_at,
                ),
            )
        except errors.UniqueViolation as exc:
            if exc.diag.constraint_name == "identities_email_key":
                raise ConstraintViolation(
                    "email already registered", {"field": "email"}
                ) from exc
            raise ConstraintViolation(
                "identifier already registered", {"field": "canonical_identifier"}
            ) from exc
        return identity

    def insert_profile(self, identity: Identity) -> None:
        # Table name comes from the closed Role enum, never from input
        table = identity.role.profile_table
        try:
            self.conn.execute(
                f"INSERT INTO {table} (identity_id, first_name, last_name) VALUES (%s, %s, %s)",
                (identity.id, identity.first_name, identity.last_name),
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("profile already exists", {"table": table}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("profile owner missing", {"table": table}) from exc

    def set_status(self, identity_id: str, status: IdentityStatus) -> None:
        self.conn.execute(
            "UPDATE identities SET status = %s::identity_status, updated_at = now() WHERE id = %s",
            (IdentityStatus(status).value, identity_id),
        )

    def touch_last_login(self, identity_id: str) -> None:
        self.conn.execute(
            "UPDATE identities SET last_login_at = now() WHERE id = %s", (identity_id,)
        )

    def update_password(self, identity_id: str, password_hash: str) -> None:
        self.conn.execute(
            "UPDATE identities SET password_hash = %s, updated_at = now() WHERE id = %s",
            (password_hash, identity_id),
        )

    def bump_token_version(self, identity_id: str) -> int:
        row = self.conn.execute(
            """
            UPDATE identities SET token_version = token_version + 1, updated_at = now()
            WHERE id = %s
            RETURNING token_version
            """,
            (identity_id,),
        ).fetchone()
        return int(row["token_version"]) if row else 0

    def record_verification(self, record: VerificationRecord) -> VerificationRecord:
        self.conn.execute(
            "DELETE FROM verification_records WHERE identity_id = %s AND kind = %s::verification_kind AND NOT verified",
            (record.identity_id, record.kind.value),
        )
        try:
            self.conn.execute(
                """
                INSERT INTO verification_records (id, identity_id, kind, code_hash, expires_at, created_at)
                VALUES (%s, %s, %s::verification_kind, %s, %s, %s)
                """,
                (
                    record.id,
                    record.identity_id,
                    record.kind.value,
                    record.code_hash,
                    record.expires_at,
                    record.created_at,
                ),
            )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "verification owner missing", {"identity_id": record.identity_id}
            ) from exc
        return record

    def mark_verification_verified(
        self, identity_id: str, kind: VerificationKind
    ) -> int:
        cur = self.conn.execute(
            """
            UPDATE verification_records SET verified = TRUE, verified_at = now()
            WHERE identity_id = %s AND kind = %s::verification_kind AND NOT verified
            """,
            (identity_id, VerificationKind(kind).value),
        )
        return cur.rowcount or 0


class PostgresStore:
    """Durable identity store backed by a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 10.0,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/bootstrap_admin.py --apply-schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def apply_schema(self) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(load_schema_sql())
        self.logger.info("schema_applied")

    @contextmanager
    def transaction(self) -> Iterator[PostgresTransaction]:
        """Scoped unit of work.

        Commits when the block exits normally; on any exception the
        transaction is rolled back and the exception re-raised as-is.
        Connectivity failures are re-raised as StoreUnavailable. The
        connection always returns to the pool.
        """
        try:
            with self._connect() as conn, conn.transaction():
                yield PostgresTransaction(conn)
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("durable store unavailable") from exc

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.transaction() as tx:
            return tx.query(sql, params)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self.transaction() as tx:
            return tx.get_identity(identity_id)

    def get_identity_by_identifier(
        self, canonical_identifier: str
    ) -> Optional[Identity]:
        with self.transaction() as tx:
            return tx.get_identity_by_identifier(canonical_identifier)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self.transaction() as tx:
            return tx.get_identity_by_email(email)

    def record_verification(self, record: VerificationRecord) -> VerificationRecord:
        with self.transaction() as tx:
            return tx.record_verification(record)

    def ping(self) -> bool:
        self.query("SELECT 1 AS ok")
        return True

    def close(self) -> None:
        self.pool.close()
