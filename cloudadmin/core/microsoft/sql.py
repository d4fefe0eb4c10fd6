"""Azure SQL contained users for Entra identities.

Connects with an Entra access token passed through the ODBC driver's
``SQL_COPT_SS_ACCESS_TOKEN`` attribute, so no SQL login is needed.
"""
from __future__ import annotations
import logging
import struct
from contextlib import contextmanager
from typing import Callable, Iterable, List, Optional, Tuple, Type

from .exceptions import SqlError

SQL_SCOPE = "https://database.windows.net/.default"
SQL_COPT_SS_ACCESS_TOKEN = 1256
ODBC_DRIVER = "ODBC Driver 18 for SQL Server"

logger = logging.getLogger(__name__)


def quote_identifier(name: str) -> str:
    """Bracket-quote a SQL Server identifier."""
    if not name:
        raise ValueError("Identifier must not be empty")
    return "[" + name.replace("]", "]]") + "]"


def pack_access_token(token: str) -> bytes:
    """Encode a token the way the ODBC driver expects (UTF-16-LE with length prefix)."""
    token_bytes = token.encode("utf-16-le")
    return struct.pack(f"<I{len(token_bytes)}s", len(token_bytes), token_bytes)


def connection_string(server: str, database: str, driver: str = ODBC_DRIVER) -> str:
    if "." not in server:
        server = f"{server}.database.windows.net"
    return (
        f"Driver={{{driver}}};Server=tcp:{server},1433;Database={database};"
        "Encrypt=yes;TrustServerCertificate=no;Connection Timeout=30"
    )


class SqlUserService:
    """Provision database users mapped to Entra users, groups or service principals."""

    def __init__(
        self,
        server: str,
        database: str,
        credential,
        connect: Optional[Callable[..., object]] = None,
        driver_error: Optional[Type[Exception]] = None,
    ):
        """Initialize SQL user service.

        Args:
            server: Logical server name or FQDN
            database: Database name
            credential: Object exposing ``get_token(scope)``
            connect: ``pyodbc.connect`` compatible callable
            driver_error: Base exception class raised by ``connect``'s driver
        """
        self.server = server
        self.database = database
        self.credential = credential
        self._connect = connect
        self._driver_error = driver_error

    def _driver(self) -> Tuple[Callable[..., object], Tuple[Type[Exception], ...]]:
        if self._connect is None:
            import pyodbc

            self._connect = pyodbc.connect
            self._driver_error = pyodbc.Error
        return self._connect, (self._driver_error,) if self._driver_error else ()

    @contextmanager
    def _session(self):
        """Yield a cursor; commit on success, always close, map driver errors to SqlError."""
        connect, driver_errors = self._driver()
        token = self.credential.get_token(SQL_SCOPE)
        conn = None
        try:
            conn = connect(
                connection_string(self.server, self.database),
                attrs_before={SQL_COPT_SS_ACCESS_TOKEN: pack_access_token(token)},
            )
            yield conn.cursor()
            conn.commit()
        except driver_errors as e:
            raise SqlError(self.server, self.database, str(e)) from e
        finally:
            if conn is not None:
                conn.close()

    def ensure_external_user(self, name: str, roles: Iterable[str] = ()) -> List[str]:
        """Create ``name`` FROM EXTERNAL PROVIDER if missing and add it to database roles.

        Returns:
            Statements executed (empty when nothing changed)

        Raises:
            SqlError: If the database driver reports an error
        """
        user = quote_identifier(name)
        executed: List[str] = []
        with self._session() as cursor:
            cursor.execute("SELECT principal_id FROM sys.database_principals WHERE name = ?", name)
            if cursor.fetchone() is None:
                statement = f"CREATE USER {user} FROM EXTERNAL PROVIDER"
                cursor.execute(statement)
                executed.append(statement)
                logger.info("[sql] User %s created in %s", name, self.database)
            else:
                logger.info("[sql] User %s already exists in %s", name, self.database)

            for role in roles:
                cursor.execute(
                    "SELECT 1 FROM sys.database_role_members m "
                    "JOIN sys.database_principals r ON m.role_principal_id = r.principal_id "
                    "JOIN sys.database_principals u ON m.member_principal_id = u.principal_id "
                    "WHERE r.name = ? AND u.name = ?",
                    role,
                    name,
                )
                if cursor.fetchone() is not None:
                    continue
                statement = f"ALTER ROLE {quote_identifier(role)} ADD MEMBER {user}"
                cursor.execute(statement)
                executed.append(statement)
                logger.info("[sql] Added %s to role %s", name, role)
        return executed

    def drop_user(self, name: str) -> bool:
        """Drop a database user. Returns False if it did not exist."""
        with self._session() as cursor:
            cursor.execute("SELECT principal_id FROM sys.database_principals WHERE name = ?", name)
            if cursor.fetchone() is None:
                return False
            cursor.execute(f"DROP USER {quote_identifier(name)}")
        logger.info("[sql] User %s dropped from %s", name, self.database)
        return True
