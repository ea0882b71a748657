"""
=======================================================================
Data Definition Language (DDL) utilities for bulk operations.
=======================================================================

Provides the PostgreSQL DDL the bulk engine issues around its data
statements: identifier quoting, transient staging tables, truncation and
identity resets.

Functions:
    quote_identifier: Quote one identifier
    qualified_table_name: Quote a schema-qualified table name
    create_staging_table: CREATE TEMP TABLE shaped like a target column list
    drop_table: DROP TABLE statement
    truncate_table: TRUNCATE TABLE statement
    reset_identity_sql: Restart the sequence behind an identity/serial column

Example:
    >>> from sql.ddl import create_staging_table, drop_table
    >>>
    >>> sql = create_staging_table(
    ...     staging_table='_bulk_stage_products_1_1',
    ...     source_table='"public"."products"',
    ...     columns=['name', 'price']
    ... )
    >>> print(sql)
    CREATE TEMP TABLE "_bulk_stage_products_1_1" AS
    SELECT "name", "price" FROM "public"."products" WITH NO DATA;
"""

from typing import List, Optional


def quote_identifier(name: str) -> str:
    """Quote a PostgreSQL identifier, doubling embedded quotes.

    Example:
        >>> quote_identifier('order')
        '"order"'
    """
    return '"' + name.replace('"', '""') + '"'


def qualified_table_name(schema: Optional[str], table: str) -> str:
    """Quote a table name, schema-qualified when a schema is given.

    Example:
        >>> qualified_table_name('sales', 'orders')
        '"sales"."orders"'
    """
    if schema:
        return f"{quote_identifier(schema)}.{quote_identifier(table)}"
    return quote_identifier(table)


def column_list(columns: List[str], alias: Optional[str] = None) -> str:
    """Render a comma separated, quoted column list."""
    prefix = f"{alias}." if alias else ""
    return ", ".join(f"{prefix}{quote_identifier(col)}" for col in columns)


def create_staging_table(
    staging_table: str,
    source_table: str,
    columns: List[str],
    temporary: bool = True
) -> str:
    """Generate a CREATE TABLE ... AS ... WITH NO DATA for a staging table.

    Copies only the column names and types of ``columns`` from the target,
    with no constraints, defaults or identity, so the staging table accepts
    whatever the COPY stream carries.

    Args:
        staging_table: Unqualified staging table name
        source_table: Already quoted, qualified target table name
        columns: Column names to carry
        temporary: Create a session-local TEMP table

    Returns:
        SQL CREATE TABLE statement
    """
    kind = "CREATE TEMP TABLE" if temporary else "CREATE TABLE"
    return (
        f"{kind} {quote_identifier(staging_table)} AS\n"
        f"SELECT {column_list(columns)} FROM {source_table} WITH NO DATA;"
    )


def drop_table(
    table: str,
    schema: Optional[str] = None,
    if_exists: bool = True,
    cascade: bool = False
) -> str:
    """
    Generate DROP TABLE statement.

    Args:
        table: Table name
        schema: Optional schema name (temp tables have none)
        if_exists: Add IF EXISTS clause
        cascade: Add CASCADE option

    Returns:
        SQL DROP TABLE statement
    """
    sql = "DROP TABLE"

    if if_exists:
        sql += " IF EXISTS"

    sql += f" {qualified_table_name(schema, table)}"

    if cascade:
        sql += " CASCADE"

    return sql + ";"


def truncate_table(qualified_name: str, restart_identity: bool = True) -> str:
    """Generate TRUNCATE TABLE statement.

    Args:
        qualified_name: Quoted, qualified table name
        restart_identity: Reset sequences owned by the table's columns

    Returns:
        SQL TRUNCATE statement
    """
    sql = f"TRUNCATE TABLE {qualified_name}"
    if restart_identity:
        sql += " RESTART IDENTITY"
    return sql + ";"


def reset_identity_sql(schema: str, table: str, column: str) -> str:
    """Generate a statement restarting the sequence behind an identity column.

    Works for both ``GENERATED ... AS IDENTITY`` and ``serial`` columns.
    The next generated value becomes 1. Identifiers are passed as a
    regclass literal so they are quoted inside the string.

    Args:
        schema: Schema name
        table: Table name
        column: Identity column name

    Returns:
        SQL SELECT setval(...) statement
    """
    regclass = qualified_table_name(schema, table).replace("'", "''")
    col = column.replace("'", "''")
    return (
        f"SELECT setval(pg_get_serial_sequence('{regclass}', '{col}'), 1, false);"
    )
