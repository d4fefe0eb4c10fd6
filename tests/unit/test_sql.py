"""Tests for Azure SQL user provisioning."""
import struct
from unittest.mock import MagicMock

import pytest

from cloudadmin.core.microsoft import SqlError, SqlUserService, StaticTokenCredential
from cloudadmin.core.microsoft.sql import (
    SQL_COPT_SS_ACCESS_TOKEN,
    connection_string,
    pack_access_token,
    quote_identifier,
)


class FakeCursor:
    """Answers principal lookups from a fixed set of existing users and memberships."""

    def __init__(self, users=(), memberships=()):
        self.users = set(users)
        self.memberships = set(memberships)
        self.executed = []
        self._row = None

    def execute(self, sql, *params):
        self.executed.append((sql, params))
        if sql.startswith("SELECT principal_id"):
            self._row = (1,) if params[0] in self.users else None
        elif sql.startswith("SELECT 1"):
            self._row = (1,) if (params[0], params[1]) in self.memberships else None
        else:
            self._row = None

    def fetchone(self):
        return self._row


@pytest.fixture
def fake_db():
    cursor = FakeCursor()
    conn = MagicMock()
    conn.cursor.return_value = cursor
    connect = MagicMock(return_value=conn)
    return connect, conn, cursor


def test_quote_identifier():
    assert quote_identifier("app-sp") == "[app-sp]"
    assert quote_identifier("we]ird") == "[we]]ird]"
    with pytest.raises(ValueError):
        quote_identifier("")


def test_pack_access_token():
    packed = pack_access_token("ab")
    assert struct.unpack("<I", packed[:4])[0] == 4
    assert packed[4:] == "ab".encode("utf-16-le")


def test_connection_string_expands_short_server_name():
    conn_str = connection_string("sql-prod", "appdb")
    assert "Server=tcp:sql-prod.database.windows.net,1433" in conn_str
    assert "Database=appdb" in conn_str
    assert "Encrypt=yes" in conn_str


def test_creates_user_and_roles(fake_db):
    connect, conn, cursor = fake_db
    service = SqlUserService("sql-prod", "appdb", StaticTokenCredential("tok"), connect=connect)

    statements = service.ensure_external_user("ci-deployer", ["db_datareader", "db_datawriter"])

    assert statements == [
        "CREATE USER [ci-deployer] FROM EXTERNAL PROVIDER",
        "ALTER ROLE [db_datareader] ADD MEMBER [ci-deployer]",
        "ALTER ROLE [db_datawriter] ADD MEMBER [ci-deployer]",
    ]
    conn.commit.assert_called_once()
    conn.close.assert_called_once()
    _, kwargs = connect.call_args
    assert kwargs["attrs_before"] == {SQL_COPT_SS_ACCESS_TOKEN: pack_access_token("tok")}


def test_existing_user_and_membership_is_noop(fake_db):
    connect, conn, cursor = fake_db
    cursor.users.add("ci-deployer")
    cursor.memberships.add(("db_datareader", "ci-deployer"))
    service = SqlUserService("sql-prod", "appdb", StaticTokenCredential("tok"), connect=connect)

    assert service.ensure_external_user("ci-deployer", ["db_datareader"]) == []


def test_connection_closed_on_error(fake_db):
    connect, conn, cursor = fake_db
    cursor.execute = MagicMock(side_effect=RuntimeError("login failed"))
    service = SqlUserService("sql-prod", "appdb", StaticTokenCredential("tok"), connect=connect)

    with pytest.raises(RuntimeError):
        service.ensure_external_user("ci-deployer")
    conn.close.assert_called_once()
    conn.commit.assert_not_called()


def test_drop_user(fake_db):
    connect, conn, cursor = fake_db
    cursor.users.add("old-app")
    service = SqlUserService("sql-prod", "appdb", StaticTokenCredential("tok"), connect=connect)

    assert service.drop_user("old-app") is True
    assert cursor.executed[-1][0] == "DROP USER [old-app]"
    assert service.drop_user("never-there") is False


class DriverError(Exception):
    pass


def test_driver_error_becomes_sql_error(fake_db):
    connect, conn, cursor = fake_db
    cursor.execute = MagicMock(side_effect=DriverError("Login failed for user '<token-identified principal>'"))
    service = SqlUserService("sql-prod", "appdb", StaticTokenCredential("tok"), connect=connect, driver_error=DriverError)

    with pytest.raises(SqlError) as excinfo:
        service.ensure_external_user("ci-deployer", ["db_datareader"])

    assert "sql-prod/appdb" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, DriverError)
    conn.close.assert_called_once()
    conn.commit.assert_not_called()


def test_connect_failure_becomes_sql_error():
    connect = MagicMock(side_effect=DriverError("Data source name not found"))
    service = SqlUserService("sql-prod", "appdb", StaticTokenCredential("tok"), connect=connect, driver_error=DriverError)

    with pytest.raises(SqlError, match="Data source name not found"):
        service.drop_user("old-app")
