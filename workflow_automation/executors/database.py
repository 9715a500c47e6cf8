"""Database node: runs one parameterized statement through SQLAlchemy."""

from typing import Any, Dict

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, NoSuchModuleError
from sqlalchemy.pool import NullPool

from ..core.context import CancellationToken, ExecutionContext, to_json_compatible
from ..core.exceptions import NodeConfigurationError, NodeExecutionError
from ..models.configs import DatabaseConfig
from ..models.core import NodeType
from .base import NodeExecutor

# Backend names SQLAlchemy reports for each supported database type
BACKENDS = {
    "postgresql": {"postgresql"},
    "mssql": {"mssql"},
    "mysql": {"mysql", "mariadb"},
    "sqlite": {"sqlite"},
}


class DatabaseExecutor(NodeExecutor):
    """Opens one connection per node run and closes it afterwards.

    Statements that return rows produce ``{rowCount, rows}``; everything else
    produces ``{affectedRows, success}``. Stored procedures are called through
    the DBAPI ``callproc`` with the parameter values in definition order.
    """

    node_type = NodeType.DATABASE
    config_model = DatabaseConfig

    def execute(self, configuration: Dict[str, Any], context: ExecutionContext,
                cancellation: CancellationToken) -> Dict[str, Any]:
        config: DatabaseConfig = self.parse_config(configuration)
        self._check_backend(config)
        cancellation.raise_if_cancelled(context.execution_id)

        try:
            engine = create_engine(config.connection_string, poolclass=NullPool)
        except (ArgumentError, NoSuchModuleError, ImportError) as e:
            raise NodeConfigurationError(
                f"Cannot create database engine: {str(e)}",
                node_type=self.node_type.value,
            )

        try:
            if config.is_stored_procedure:
                result = self._call_procedure(engine, config)
            else:
                result = self._run_statement(engine, config)
        except Exception as e:
            # SQLAlchemy errors, and raw DBAPI errors from callproc
            raise NodeExecutionError(f"Database query failed: {str(e)}", node_type=self.node_type.value)
        finally:
            engine.dispose()

        return to_json_compatible(result)

    def _check_backend(self, config: DatabaseConfig) -> None:
        try:
            backend = make_url(config.connection_string).get_backend_name()
        except ArgumentError as e:
            raise NodeConfigurationError(
                f"Connection string is not a valid database URL: {str(e)}",
                node_type=self.node_type.value,
            )
        if backend not in BACKENDS[config.database_type]:
            raise NodeConfigurationError(
                f"Connection string targets '{backend}' but databaseType is '{config.database_type}'",
                node_type=self.node_type.value,
            )
        if config.is_stored_procedure and config.database_type == "sqlite":
            raise NodeConfigurationError(
                "SQLite does not support stored procedures",
                node_type=self.node_type.value,
            )

    def _run_statement(self, engine, config: DatabaseConfig) -> Dict[str, Any]:
        with engine.begin() as connection:
            result = connection.execute(text(config.query), config.parameters)
            if result.returns_rows:
                rows = [dict(row._mapping) for row in result]
                self.logger.debug(f"Query returned {len(rows)} rows")
                return {"rowCount": len(rows), "rows": rows}
            self.logger.debug(f"Statement affected {result.rowcount} rows")
            return {"affectedRows": result.rowcount, "success": True}

    def _call_procedure(self, engine, config: DatabaseConfig) -> Dict[str, Any]:
        connection = engine.raw_connection()
        try:
            cursor = connection.cursor()
            try:
                cursor.callproc(config.query, list(config.parameters.values()))
                if cursor.description:
                    columns = [column[0] for column in cursor.description]
                    rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
                    connection.commit()
                    return {"rowCount": len(rows), "rows": rows}
                affected = cursor.rowcount
                connection.commit()
                return {"affectedRows": affected, "success": True}
            finally:
                cursor.close()
        finally:
            connection.close()
