"""
=============================================
SQL construction package for bulk operations.
=============================================

This package turns typed expressions and queries into parameterized
PostgreSQL statements. Nothing in it touches a connection.

The package follows a clear organization:
    - ddl.py: Identifier quoting, staging tables, TRUNCATE, identity reset
    - dml.py: DELETE / UPDATE / INSERT ... SELECT / COPY templates
    - fragments.py: ParameterizedSqlFragment and placeholder namespacing
    - expressions.py: Expression tree nodes and entity/wrapper proxies
    - translator.py: Expression tree -> SQL fragment translation
    - query_builder.py: Typed Query, render_query and catalog queries
    - composer.py: BulkStatementComposer (one plan -> statements)

Architecture:
    - ddl.py and dml.py are pure string builders with no internal imports
    - translator.py, query_builder.py and composer.py depend on
      models.mappings and are imported from their modules directly
    - Values never appear in SQL text; they travel as typed bind parameters

Example:
    >>> from sql.composer import BulkStatementComposer
    >>> from sql.query_builder import Query
    >>>
    >>> composer = BulkStatementComposer(cache)
    >>> composed = composer.delete(Product, query=Query(Product).where(lambda p: p.price < 1))
    >>> print(composed.primary.text)
"""

__version__ = "0.1.0"
__all__ = [
    # DDL functions
    'quote_identifier', 'qualified_table_name', 'column_list',
    'create_staging_table', 'drop_table', 'truncate_table', 'reset_identity_sql',
    # DML functions
    'delete_statement', 'delete_by_key_statement', 'delete_all_statement',
    'update_statement', 'update_by_key_statement', 'insert_select_statement',
    'update_from_statement', 'merge_staging_statement', 'copy_from_stdin_statement',
    # Fragments
    'ParameterizedSqlFragment', 'SqlParameter', 'combine', 'literal_sql',
]

from .ddl import (
    column_list,
    create_staging_table,
    drop_table,
    qualified_table_name,
    quote_identifier,
    reset_identity_sql,
    truncate_table,
)
from .dml import (
    copy_from_stdin_statement,
    delete_all_statement,
    delete_by_key_statement,
    delete_statement,
    insert_select_statement,
    merge_staging_statement,
    update_by_key_statement,
    update_from_statement,
    update_statement,
)
from .fragments import ParameterizedSqlFragment, SqlParameter, combine, literal_sql
