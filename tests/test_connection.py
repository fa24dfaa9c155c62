"""Tests for ODBC connection string construction."""

import pytest

pytest.importorskip("pyodbc")

from sqlmonitor.core.config import DatabaseSettings
from sqlmonitor.core.exceptions import AuthenticationError
from sqlmonitor.database.connection import DatabaseConnection

DRIVER = "ODBC Driver 18 for SQL Server"


def test_sql_authentication_string():
    settings = DatabaseSettings(server="sql01", username="monitor", password="p;w}d")
    conn_str = DatabaseConnection(settings, "SalesDb").build_connection_string(DRIVER)

    parts = conn_str.split(";")
    assert parts[0] == "DRIVER={ODBC Driver 18 for SQL Server}"
    assert "SERVER=sql01,1433" in parts
    assert "DATABASE=SalesDb" in parts
    assert "UID=monitor" in parts
    assert "PWD={p;w}}d}" in conn_str
    assert "Encrypt=yes" in parts
    assert "TrustServerCertificate=yes" in parts


def test_trusted_connection_omits_credentials():
    settings = DatabaseSettings(server="sql01\\PROD", trusted_connection=True, encrypt=False,
                                trust_server_certificate=False)
    conn_str = DatabaseConnection(settings).build_connection_string(DRIVER)

    assert "SERVER=sql01\\PROD;" in conn_str
    assert "DATABASE=master" in conn_str
    assert "Trusted_Connection=yes" in conn_str
    assert "UID=" not in conn_str
    assert "Encrypt=no" in conn_str
    assert "TrustServerCertificate" not in conn_str


def test_missing_username_is_rejected():
    settings = DatabaseSettings(server="sql01")
    with pytest.raises(AuthenticationError):
        DatabaseConnection(settings).build_connection_string(DRIVER)
