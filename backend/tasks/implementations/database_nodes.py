"""Database nodes: connect, query and disconnect.

Connections are SQLAlchemy async engines held in the execution context under
`db:<connectionKey>`, so the Executor disposes them if the workflow ends
without a dbDisconnect node.
"""

from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from core.exceptions import ExecutionError
from tasks.base_task import BaseNodeHandler
from workflow.context import DB_RESOURCE_PREFIX, ExecutionContext
from workflow.expressions import ExpressionEvaluator, to_number
from workflow.graph import Node

logger = structlog.get_logger(__name__)

DEFAULT_CONNECTION_KEY = "dbConnection"

# dbType -> async SQLAlchemy driver name
_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mssql": "mssql+aioodbc",
}


def build_database_url(config: Dict[str, Any]) -> str:
    """Build an async SQLAlchemy URL from dbConnect fields."""
    if config.get("connectionString"):
        return str(config["connectionString"])

    db_type = config.get("dbType")
    driver = _DRIVERS.get(db_type)
    if driver is None:
        raise ValueError(f"Unsupported database type: {db_type}")

    if db_type == "sqlite":
        file_path = config.get("filePath") or config.get("database") or ":memory:"
        return f"{driver}:///{file_path}"

    port = config.get("port")
    url = URL.create(
        driver,
        username=config.get("user"),
        password=config.get("password"),
        host=config.get("host") or config.get("server"),
        port=int(to_number(port)) if port not in (None, "") else None,
        database=config.get("database"),
    )
    return url.render_as_string(hide_password=False)


def _connection_key(node: Node, context: ExecutionContext) -> str:
    key = node.data.get("connectionKey") or DEFAULT_CONNECTION_KEY
    return str(ExpressionEvaluator.evaluate(key, context))


def get_engine(context: ExecutionContext, key: str) -> Optional[AsyncEngine]:
    return context.get_resource(f"{DB_RESOURCE_PREFIX}{key}")


class DbConnectHandler(BaseNodeHandler):
    """Open a database connection.

    Config:
        dbType: sqlite | postgres | mysql | mssql (required unless connectionString)
        connectionString: full SQLAlchemy URL (overrides the fields below)
        host / server, port, user, password, database, filePath
        configKey: data key holding a dict of the same fields (node fields win)
        connectionKey: name of the connection (default: dbConnection)
    """

    node_type = "dbConnect"
    display_name = "DB Connect"
    description = "Open a database connection"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        data = node.data
        if not data.get("dbType") and not data.get("connectionString"):
            raise ExecutionError("Database type is required for DB Connect node", node_id=node.id)

        fields = ("dbType", "connectionString", "host", "server", "port",
                  "user", "password", "database", "filePath")
        config: Dict[str, Any] = {}
        if data.get("configKey"):
            stored = context.get_data(data["configKey"])
            if isinstance(stored, dict):
                config.update(stored)
        config.update({k: data[k] for k in fields if data.get(k) not in (None, "")})
        config = ExpressionEvaluator.resolve_config(config, context)

        key = _connection_key(node, context)
        resource_key = f"{DB_RESOURCE_PREFIX}{key}"
        previous = context.release_resource(resource_key)
        if previous is not None:
            await previous.dispose()

        try:
            engine = create_async_engine(build_database_url(config))
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            raise ExecutionError(
                f"Failed to connect to database: {e}", node_id=node.id, cause=e
            ) from e

        context.set_resource(resource_key, engine)
        logger.info("Database connected", node_id=node.id, connection_key=key, db_type=config.get("dbType"))


class DbQueryHandler(BaseNodeHandler):
    """Run a SQL statement on an open connection.

    Config:
        query: SQL text (templates allowed) or queryKey naming a data entry
        params: bind parameters ({"id": 5} for ":id")
        connectionKey: connection to use (default: dbConnection)
        contextKey: where rows are stored (default: dbResult)

    Stored result: {"rows": [...], "rowCount": n}. Statements that return no
    rows store rowCount from the driver.
    """

    node_type = "dbQuery"
    display_name = "DB Query"
    description = "Run a SQL statement"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        data = node.data
        key = _connection_key(node, context)
        engine = get_engine(context, key)
        if engine is None:
            available = ", ".join(context.db_connections.keys()) or "none"
            raise ExecutionError(
                f"Database connection not found for key: {key}. Available keys: {available}",
                node_id=node.id,
            )

        query = data.get("query")
        if data.get("queryKey") and context.has_data(data["queryKey"]):
            query = context.get_data(data["queryKey"])
        if not query:
            raise ExecutionError(
                "Query is required. Provide either query or queryKey property", node_id=node.id
            )

        query = ExpressionEvaluator.evaluate(str(query), context)
        params = ExpressionEvaluator.resolve_config(data.get("params") or {}, context)
        context_key = data.get("contextKey") or "dbResult"

        try:
            async with engine.begin() as conn:
                result = await conn.execute(text(query), params)
                if result.returns_rows:
                    rows = [dict(row) for row in result.mappings().all()]
                    stored = {"rows": rows, "rowCount": len(rows)}
                else:
                    stored = {"rows": [], "rowCount": result.rowcount}
        except Exception as e:
            raise ExecutionError(f"Query failed: {e}", node_id=node.id, cause=e) from e

        context.set_data(context_key, stored)
        logger.debug("Query executed", node_id=node.id, row_count=stored["rowCount"])


class DbDisconnectHandler(BaseNodeHandler):
    """Close a database connection. Unknown keys are ignored."""

    node_type = "dbDisconnect"
    display_name = "DB Disconnect"
    description = "Close a database connection"

    async def execute(self, node: Node, context: ExecutionContext) -> None:
        key = _connection_key(node, context)
        engine = context.release_resource(f"{DB_RESOURCE_PREFIX}{key}")
        if engine is None:
            logger.debug("No database connection to close", node_id=node.id, connection_key=key)
            return
        await engine.dispose()
        logger.info("Database disconnected", node_id=node.id, connection_key=key)


DATABASE_NODE_TYPES = {
    "dbConnect": DbConnectHandler,
    "dbQuery": DbQueryHandler,
    "dbDisconnect": DbDisconnectHandler,
}
