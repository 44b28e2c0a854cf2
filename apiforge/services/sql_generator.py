"""
DDL Generator
Renders re-runnable PostgreSQL scripts for a SchemaGraph inside a
tenant x API namespace: tables, updated_at triggers, deferred foreign
keys and one illustrative row per table
"""
from typing import Dict, List, Optional
import re

from apiforge.core.config import settings
from apiforge.core.naming import safe_identifier, shorten_identifier
from apiforge.core.query import quote_ident
from apiforge.schemas.schema_models import ColumnSpec, RelationshipSpec, SchemaGraph, TableSpec
from apiforge.services.schema_normalizer import assign_physical_names


EXTENSIONS_SQL = (
    'CREATE EXTENSION IF NOT EXISTS "uuid-ossp";\n'
    'CREATE EXTENSION IF NOT EXISTS "pgcrypto";'
)

NUMERIC_TYPES = ("integer", "bigint", "smallint", "numeric", "decimal", "real", "double precision", "serial", "bigserial")


def sql_literal(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def column_definition(column: ColumnSpec) -> str:
    parts = [quote_ident(column.name), column.type]
    for atom in column.constraints:
        lowered = atom.lower()
        if lowered == "primary key":
            parts.append("PRIMARY KEY")
        elif lowered == "unique":
            parts.append("UNIQUE")
        elif lowered == "not null":
            parts.append("NOT NULL")
        elif lowered.startswith("default "):
            parts.append("DEFAULT " + atom[len("default "):])
    return " ".join(parts)


def trigger_names(physical: str) -> Dict[str, str]:
    base = safe_identifier(physical)
    return {
        "function": shorten_identifier(f"update_{base}_updated_at"),
        "trigger": shorten_identifier(f"trg_{base}_updated_at"),
    }


def foreign_key_name(source_physical: str, column: str, target_physical: str) -> str:
    return shorten_identifier(safe_identifier(f"fk_{source_physical}_{column}_{target_physical}".lower()))


def index_name(physical: str, name: str) -> str:
    return shorten_identifier(safe_identifier(f"{physical}_{name}".lower()))


def emit_updated_at_trigger(physical: str) -> str:
    names = trigger_names(physical)
    table = quote_ident(physical)
    function = quote_ident(names["function"])
    trigger = quote_ident(names["trigger"])
    return (
        f"CREATE OR REPLACE FUNCTION {function}()\n"
        f"RETURNS TRIGGER AS $$\n"
        f"BEGIN\n"
        f"  NEW.updated_at = now();\n"
        f"  RETURN NEW;\n"
        f"END;\n"
        f"$$ LANGUAGE plpgsql;\n"
        f"DROP TRIGGER IF EXISTS {trigger} ON {table};\n"
        f"CREATE TRIGGER {trigger} BEFORE UPDATE ON {table}\n"
        f"FOR EACH ROW EXECUTE FUNCTION {function}();"
    )


def emit_table(table: TableSpec, physical: str) -> str:
    """DROP + CREATE for one table, plus its trigger and index hints"""
    quoted = quote_ident(physical)
    columns = ",\n".join(f"  {column_definition(c)}" for c in table.columns)
    statements = [
        f"DROP TABLE IF EXISTS {quoted} CASCADE;",
        f"CREATE TABLE {quoted} (\n{columns}\n);",
    ]
    if table.column("updated_at") is not None:
        statements.append(emit_updated_at_trigger(physical))
    for index in table.indexes:
        cols = ", ".join(quote_ident(c) for c in index.columns if table.column(c) is not None)
        if not cols:
            continue
        unique = "UNIQUE " if index.unique else ""
        statements.append(
            f"CREATE {unique}INDEX IF NOT EXISTS {quote_ident(index_name(physical, index.name))} ON {quoted} ({cols});"
        )
    return "\n".join(statements)


def emit_foreign_key(
    table: TableSpec,
    rel: RelationshipSpec,
    names: Dict[str, str],
) -> Optional[str]:
    """Guarded DO block: add the FK column if missing, then the constraint if missing"""
    source = names.get(table.original_name)
    target = names.get(rel.target_table)
    if not source or not target or not rel.source_column:
        return None

    column = table.column(rel.source_column)
    column_type = column.type if column is not None else "uuid"
    target_column = rel.target_column or "id"
    constraint = foreign_key_name(source, rel.source_column, target)

    return (
        f"DO $$\n"
        f"BEGIN\n"
        f"  IF EXISTS (SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = {sql_literal(source)})\n"
        f"     AND EXISTS (SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = {sql_literal(target)}) THEN\n"
        f"    IF NOT EXISTS (SELECT 1 FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = {sql_literal(source)} AND column_name = {sql_literal(rel.source_column)}) THEN\n"
        f"      ALTER TABLE {quote_ident(source)} ADD COLUMN {quote_ident(rel.source_column)} {column_type};\n"
        f"    END IF;\n"
        f"    IF NOT EXISTS (SELECT 1 FROM information_schema.table_constraints WHERE table_schema = current_schema() AND table_name = {sql_literal(source)} AND constraint_name = {sql_literal(constraint)}) THEN\n"
        f"      ALTER TABLE {quote_ident(source)} ADD CONSTRAINT {quote_ident(constraint)}\n"
        f"        FOREIGN KEY ({quote_ident(rel.source_column)}) REFERENCES {quote_ident(target)} ({quote_ident(target_column)}) ON DELETE CASCADE;\n"
        f"    END IF;\n"
        f"  END IF;\n"
        f"END $$;"
    )


def sample_value(
    table: TableSpec,
    column: ColumnSpec,
    tenant_id: str,
    names: Dict[str, str],
    tenant_column: str,
) -> str:
    """Type-driven illustrative value for one column"""
    col_type = column.type.lower()

    if column.name == tenant_column:
        return sql_literal(tenant_id)

    if column.name.endswith("_id"):
        rel = next((r for r in table.relationships if r.source_column == column.name), None)
        target = names.get(rel.target_table) if rel else None
        if target:
            target_column = quote_ident(rel.target_column or "id")
            return f"(SELECT {target_column} FROM {quote_ident(target)} LIMIT 1)"

    if col_type.endswith("[]"):
        return "'{}'"
    if col_type == "uuid":
        return "uuid_generate_v4()"
    if col_type.startswith(("varchar", "char", "text")):
        text = f"Sample {column.name} for {table.original_name}"
        length = re.match(r"^(?:varchar|char)\((\d+)\)$", col_type)
        if length:
            text = text[:int(length.group(1))]
        return sql_literal(text)
    if col_type.startswith(NUMERIC_TYPES):
        return "1"
    if col_type == "boolean":
        return "true"
    if col_type in ("json", "jsonb"):
        return "'{}'"
    if col_type.startswith(("timestamp", "date", "time")):
        return "now()"
    if col_type == "interval":
        return "'1 day'"
    return sql_literal(f"Sample {column.name}")


def emit_sample_data(
    table: TableSpec,
    physical: str,
    tenant_id: str,
    names: Dict[str, str],
    tenant_column: Optional[str] = None,
) -> str:
    """One guarded INSERT; a failing sample row only raises a NOTICE"""
    tenant_column = tenant_column or settings.TENANT_COLUMN
    columns = [c for c in table.columns if not c.type.lower().startswith(("serial", "bigserial"))]
    col_list = ", ".join(quote_ident(c.name) for c in columns)
    values = ", ".join(sample_value(table, c, tenant_id, names, tenant_column) for c in columns)
    return (
        f"DO $$\n"
        f"BEGIN\n"
        f"  INSERT INTO {quote_ident(physical)} ({col_list})\n"
        f"  VALUES ({values});\n"
        f"EXCEPTION WHEN OTHERS THEN\n"
        f"  RAISE NOTICE 'Sample data skipped for %: %', {sql_literal(physical)}, SQLERRM;\n"
        f"END $$;"
    )


def emit_minimal_table(table: TableSpec, physical: str, tenant_column: Optional[str] = None) -> str:
    """Bare CREATE TABLE IF NOT EXISTS: id, timestamps, tenant column and plain typed columns"""
    tenant_column = tenant_column or settings.TENANT_COLUMN
    definitions = ['"id" uuid PRIMARY KEY DEFAULT uuid_generate_v4()']
    for column in table.columns:
        if column.name == "id":
            continue
        if column.name in ("created_at", "updated_at"):
            definitions.append(f"{quote_ident(column.name)} timestamp with time zone DEFAULT now()")
        elif column.name == tenant_column:
            definitions.append(f"{quote_ident(column.name)} {column.type} NOT NULL")
        else:
            definitions.append(f"{quote_ident(column.name)} {column.type}")
    body = ",\n".join(f"  {d}" for d in definitions)
    return f"CREATE TABLE IF NOT EXISTS {quote_ident(physical)} (\n{body}\n);"


def physical_names(graph: SchemaGraph) -> Dict[str, str]:
    return {t.original_name: t.prefixed_name for t in graph.tables if t.prefixed_name}


def emit(
    graph: SchemaGraph,
    tenant_id: str,
    api_identifier: str,
    include_relationships: bool = True,
    include_sample_data: bool = True,
) -> str:
    """
    Full DDL script for a graph

    Sections, in order: extensions, tables (drop, create, trigger, indexes),
    foreign keys, sample rows. The output contains no timestamps, so it is a
    pure function of its arguments.
    """
    named = assign_physical_names(graph, tenant_id, api_identifier)
    names = physical_names(named)

    sections: List[str] = [
        f"-- Schema for tenant {tenant_id}, API {api_identifier}",
        EXTENSIONS_SQL,
    ]
    for table in named.tables:
        sections.append(emit_table(table, names[table.original_name]))

    if include_relationships:
        for table in named.tables:
            for rel in table.relationships:
                block = emit_foreign_key(table, rel, names)
                if block:
                    sections.append(block)

    if include_sample_data:
        for table in named.tables:
            sections.append(emit_sample_data(table, names[table.original_name], tenant_id, names))

    return "\n\n".join(sections) + "\n"


def emit_structure(graph: SchemaGraph, tenant_id: str, api_identifier: str) -> str:
    """Tables only: the script without relationships or sample rows"""
    return emit(graph, tenant_id, api_identifier, include_relationships=False, include_sample_data=False)
