"""Table registry: the durable mapping from a table kind to its remote table ID.

Once a table kind has an entry, that table is authoritative for every later
run. Its columns are read back from the table service rather than compared
against the handler's declared columns.
"""

from __future__ import annotations

from contextlib import closing

import pyodbc

from exporter.azure_sql import get_sql_connection, quote_identifier
from exporter.config import ExporterConfig
from exporter.exceptions import RegistryError
from exporter.logging_utils import get_logger
from exporter.models import TableKey

logger = get_logger(__name__)


class SqlTableRegistry:
    """Registry backed by one Azure SQL table per registry table name.

    ``dbo.<prefix><registry_table>`` has the key column named by the table
    kind (for example ``schemaKey``) and a ``table_id`` column.
    """

    def __init__(self, config: ExporterConfig, prefix: str | None = None):
        self.config = config
        self.prefix = prefix if prefix is not None else config.registry_table_prefix

    def _table_name(self, key: TableKey) -> str:
        return f"dbo.{quote_identifier(self.prefix + key.registry_table)}"

    def lookup_table_id(self, key: TableKey) -> str | None:
        table = self._table_name(key)
        key_column = quote_identifier(key.key_name)
        try:
            with closing(get_sql_connection(self.config)) as cn:
                cur = cn.cursor()
                cur.execute(f"SELECT table_id FROM {table} WHERE {key_column} = ?", key.key_value)
                row = cur.fetchone()
        except pyodbc.Error as e:
            raise RegistryError(
                "Failed to read table registry",
                details={"table_key": str(key), "error": str(e)},
            ) from e
        return row[0] if row else None

    def register_table_id(self, key: TableKey, table_id: str) -> None:
        table = self._table_name(key)
        key_column = quote_identifier(key.key_name)
        try:
            with closing(get_sql_connection(self.config)) as cn:
                cur = cn.cursor()
                cur.execute(
                    f"""
                    MERGE {table} AS target
                    USING (SELECT ? AS key_value, ? AS table_id) AS source
                    ON target.{key_column} = source.key_value
                    WHEN MATCHED THEN
                      UPDATE SET table_id = source.table_id
                    WHEN NOT MATCHED THEN
                      INSERT ({key_column}, table_id) VALUES (source.key_value, source.table_id);
                    """,
                    key.key_value,
                    table_id,
                )
                cn.commit()
        except pyodbc.Error as e:
            raise RegistryError(
                "Failed to write table registry",
                details={"table_key": str(key), "table_id": table_id, "error": str(e)},
            ) from e
        logger.info("Registered remote table", extra={"table_key": str(key), "table_id": table_id})
