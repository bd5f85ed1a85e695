"""Azure SQL connectivity (AAD token auth) shared by the table registry and the record store."""

from __future__ import annotations

import re
import threading
import time

import pyodbc
from azure.identity import DefaultAzureCredential

from exporter.config import ExporterConfig
from exporter.exceptions import AuthenticationError, ConfigurationError

SQL_COPT_SS_ACCESS_TOKEN = 1256  # ODBC attribute for AAD access token
SQL_TOKEN_SCOPE = "https://database.windows.net/.default"
TOKEN_REFRESH_MARGIN_SECONDS = 300

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]{0,127}$")


class SqlAccessTokenProvider:
    """One credential per process; the token is reused until it is close to expiry."""

    def __init__(self):
        self._credential: DefaultAzureCredential | None = None
        self._token = None
        self._lock = threading.Lock()

    def token_bytes(self) -> bytes:
        """
        Returns the AAD access token bytes in the format required by ODBC:
        4-byte little-endian length prefix + UTF-16LE token bytes.
        """
        with self._lock:
            if self._token is None or self._token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS <= time.time():
                self._token = self._fetch_token()
            token = self._token.token
        token_bytes = token.encode("utf-16-le")
        return (len(token_bytes)).to_bytes(4, "little") + token_bytes

    def _fetch_token(self):
        try:
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            return self._credential.get_token(SQL_TOKEN_SCOPE)
        except Exception as e:
            raise AuthenticationError(
                "Failed to get Azure SQL access token. Ensure 'az login' is configured "
                "or service principal credentials are set.",
                details={"error": str(e)},
            ) from e


_token_provider = SqlAccessTokenProvider()


def _get_sql_access_token_bytes() -> bytes:
    return _token_provider.token_bytes()


def get_sql_connection(config: ExporterConfig) -> pyodbc.Connection:
    """DSN-less connection to Azure SQL using AAD token auth.

    The caller owns the connection and must close it; pyodbc's context
    manager only commits.
    """
    if not config.azure_sql_server or not config.azure_sql_database:
        raise ConfigurationError(
            "AZURE_SQL_SERVER and AZURE_SQL_DATABASE must be set",
            details={"server": config.azure_sql_server, "database": config.azure_sql_database},
        )

    conn_str = (
        "DRIVER={ODBC Driver 18 for SQL Server};"
        f"SERVER={config.azure_sql_server},1433;"
        f"DATABASE={config.azure_sql_database};"
        "Encrypt=yes;"
        "TrustServerCertificate=no;"
        "Connection Timeout=30;"
    )

    token_bytes = _get_sql_access_token_bytes()
    return pyodbc.connect(conn_str, attrs_before={SQL_COPT_SS_ACCESS_TOKEN: token_bytes})


def quote_identifier(name: str) -> str:
    """Bracket-quote a table or column name that can't be passed as a query parameter."""
    if not _IDENTIFIER.match(name):
        raise ConfigurationError(f"Invalid SQL identifier: {name!r}")
    return f"[{name}]"
