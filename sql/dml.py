"""
===========================================
Data Manipulation Language (DML) templates.
===========================================

Operation templates the composer fills with translated fragments. Every
function takes SQL text that is already rendered (quoted table names,
translated predicates with placeholders) and returns a statement string.
No values are ever interpolated here.

Functions:
- delete_statement: DELETE ... WHERE <predicate>
- delete_by_key_statement: DELETE ... WHERE (<key>) IN (<query>)
- delete_all_statement: unbounded DELETE used by truncate-with-foreign-keys
- update_statement: UPDATE ... SET <assignments> WHERE <predicate>
- update_by_key_statement: UPDATE ... SET ... WHERE (<key>) IN (<query>)
- insert_select_statement: INSERT INTO ... (<cols>) <query>
- update_from_statement: UPDATE ... SET ... FROM (<query>) AS s WHERE <join>
- merge_staging_statement: INSERT INTO target SELECT FROM staging
- copy_from_stdin_statement: COPY ... FROM STDIN for the staging load

Usage:
    from sql.dml import delete_statement

    sql = delete_statement('"public"."products"', '"is_active" = :w_p0')
"""

from typing import List, Optional

from .ddl import column_list, quote_identifier


def delete_statement(qualified_name: str, predicate_sql: str) -> str:
    """Generate DELETE FROM <table> WHERE <predicate>."""
    return f"DELETE FROM {qualified_name}\nWHERE {predicate_sql}"


def delete_by_key_statement(
    qualified_name: str,
    key_columns: List[str],
    query_sql: str
) -> str:
    """Generate a DELETE restricted to the keys a query returns."""
    return (
        f"DELETE FROM {qualified_name}\n"
        f"WHERE ({column_list(key_columns)}) IN (\n{query_sql}\n)"
    )


def delete_all_statement(qualified_name: str) -> str:
    """Generate an unbounded DELETE (only issued by truncate-with-foreign-keys)."""
    return f"DELETE FROM {qualified_name}"


def update_statement(
    qualified_name: str,
    assignments_sql: str,
    predicate_sql: str
) -> str:
    """Generate UPDATE <table> SET <assignments> WHERE <predicate>."""
    return f"UPDATE {qualified_name}\nSET {assignments_sql}\nWHERE {predicate_sql}"


def update_by_key_statement(
    qualified_name: str,
    assignments_sql: str,
    key_columns: List[str],
    query_sql: str
) -> str:
    """Generate an UPDATE restricted to the keys a query returns."""
    return (
        f"UPDATE {qualified_name}\n"
        f"SET {assignments_sql}\n"
        f"WHERE ({column_list(key_columns)}) IN (\n{query_sql}\n)"
    )


def insert_select_statement(
    qualified_name: str,
    columns: List[str],
    query_sql: str
) -> str:
    """Generate INSERT INTO <table> (<cols>) <select>."""
    return f"INSERT INTO {qualified_name} ({column_list(columns)})\n{query_sql}"


def update_from_statement(
    qualified_name: str,
    target_alias: str,
    columns: List[str],
    source_alias: str,
    query_sql: str,
    join_sql: str
) -> str:
    """Generate UPDATE <table> AS t SET c = s.c FROM (<query>) AS s WHERE <join>.

    The SET list may not qualify target columns with the alias in
    PostgreSQL, only the source side is qualified.
    """
    assignments = ",\n    ".join(
        f"{quote_identifier(col)} = {source_alias}.{quote_identifier(col)}" for col in columns
    )
    return (
        f"UPDATE {qualified_name} AS {target_alias}\n"
        f"SET {assignments}\n"
        f"FROM (\n{query_sql}\n) AS {source_alias}\n"
        f"WHERE {join_sql}"
    )


def merge_staging_statement(
    qualified_name: str,
    staging_table: str,
    columns: List[str]
) -> str:
    """Generate INSERT INTO target (<cols>) SELECT <cols> FROM staging."""
    cols = column_list(columns)
    return (
        f"INSERT INTO {qualified_name} ({cols})\n"
        f"SELECT {cols} FROM {quote_identifier(staging_table)}"
    )


def copy_from_stdin_statement(
    staging_table: str,
    columns: List[str],
    null_string: str = '\\N',
    force_null: Optional[List[str]] = None
) -> str:
    """
    Generate COPY ... FROM STDIN for loading a CSV stream into a staging table.

    Args:
        staging_table: Unqualified staging table name
        columns: Column order of the stream
        null_string: Marker representing NULL
        force_null: Columns whose quoted null marker still means NULL

    Returns:
        SQL COPY statement
    """
    null_literal = null_string.replace("'", "''")
    options = ["FORMAT csv", f"NULL '{null_literal}'"]
    if force_null:
        options.append(f"FORCE_NULL ({column_list(force_null)})")

    return (
        f"COPY {quote_identifier(staging_table)} ({column_list(columns)}) "
        f"FROM STDIN WITH ({', '.join(options)})"
    )
