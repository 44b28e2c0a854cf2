"""
Schema Normalizer
Cleans analyzer output into a relationally consistent SchemaGraph:
constraint atoms, canonical types, FK placement, polymorphic children
and the columns every generated table must carry
"""
from typing import List, Optional, Tuple
from loguru import logger
import re

from apiforge.core.config import settings
from apiforge.core.exceptions import ValidationError
from apiforge.core.naming import (
    PG_IDENTIFIER_LIMIT,
    prefixed_name,
    singularize,
    to_snake_case,
    validate_api_identifier,
    validate_tenant_id,
)
from apiforge.schemas.schema_models import (
    RELATIONSHIP_TYPES,
    ColumnSpec,
    IndexSpec,
    RelationshipSpec,
    SchemaGraph,
    TableSpec,
)


POLYMORPHIC_KEYWORDS = ("address", "location", "contact", "phone", "email")
CONTACT_KEYWORDS = ("contact", "phone", "email")

RELATIONSHIP_ALIASES = {
    "belongs_to": "many-to-one",
    "belongs-to": "many-to-one",
    "has_many": "one-to-many",
    "has-many": "one-to-many",
    "has_one": "one-to-one",
    "has-one": "one-to-one",
    "belongs_to_many": "many-to-many",
    "has_and_belongs_to_many": "many-to-many",
    "manytoone": "many-to-one",
    "onetomany": "one-to-many",
    "onetoone": "one-to-one",
    "manytomany": "many-to-many",
}

SERIAL_REFERENCE_TYPES = {"serial": "integer", "bigserial": "bigint", "smallserial": "smallint"}
TIMESTAMP_TYPE = "timestamp with time zone"

# Types that never take a length/precision argument
NO_ARGUMENT_TYPES = {
    "integer", "bigint", "smallint", "text", "uuid", "boolean", "date",
    "serial", "bigserial", "smallserial", "json", "jsonb", "real",
    "double precision", "money", "inet", "bytea",
}

TYPE_ALIASES = {
    "varchar": "varchar(255)",
    "character varying": "varchar(255)",
    "string": "varchar(255)",
    "str": "varchar(255)",
    "char": "char(1)",
    "int": "integer",
    "int4": "integer",
    "int2": "smallint",
    "int8": "bigint",
    "long": "bigint",
    "number": "numeric",
    "bool": "boolean",
    "datetime": "timestamp",
    "timestamp without time zone": "timestamp",
    "timestamptz": TIMESTAMP_TYPE,
    "float": "double precision",
    "float8": "double precision",
    "double": "double precision",
    "float4": "real",
    "decimal": "decimal",
    "object": "jsonb",
    "array": "jsonb",
}

KNOWN_TYPE = re.compile(
    r"^(uuid|text|integer|bigint|smallint|serial|bigserial|smallserial|boolean|date|time|"
    r"timestamp|timestamp with time zone|time with time zone|interval|json|jsonb|real|"
    r"double precision|money|inet|bytea|numeric|decimal|"
    r"varchar\(\d+\)|char\(\d+\)|numeric\(\d+(,\s*\d+)?\)|decimal\(\d+(,\s*\d+)?\)|"
    r"timestamp\(\d\)|timestamp\(\d\) with time zone)(\[\])?$"
)

ATOM_PATTERN = re.compile(
    r"""
      (?P<pk>primary\s+key)
    | (?P<nn>not\s+null)
    | (?P<ref>references\s+"?(?P<ref_table>[\w.]+)"?\s*(?:\(\s*"?(?P<ref_col>\w+)"?\s*\))?)
    | (?P<fk>foreign\s+key(?:\s*\(\s*"?\w+"?\s*\))?)
    | (?P<on>on\s+(?:delete|update)\s+(?:set\s+null|set\s+default|no\s+action|cascade|restrict))
    | (?P<default>default\s+(?P<expr>.+?)(?=\s+(?:not\s+null|null|unique|primary\s+key|references|on\s+delete|on\s+update|check)\b|\s*$))
    | (?P<unique>\bunique\b)
    | (?P<check>check\s*\(.*\))
    """,
    re.IGNORECASE | re.VERBOSE,
)

ATOM_ORDER = {"primary key": 0, "unique": 1, "not null": 2}


def canonical_type(raw: str) -> str:
    """Map loose AI type names onto PostgreSQL type strings"""
    text = re.sub(r"\s+", " ", str(raw or "").strip().lower())
    if not text:
        return "text"

    array = text.endswith("[]")
    if array:
        text = text[:-2].strip()

    text = re.sub(r"\s*\(\s*", "(", text)
    text = re.sub(r"\s*\)", ")", text)
    text = re.sub(r"\s*,\s*", ",", text)

    match = re.match(r"^character varying(\(\d+\))$", text)
    if match:
        text = f"varchar{match.group(1)}"

    base = re.sub(r"\(.*\)$", "", text).strip()
    if "(" in text and (base in NO_ARGUMENT_TYPES or TYPE_ALIASES.get(base) in NO_ARGUMENT_TYPES):
        text = base

    text = TYPE_ALIASES.get(text, text)

    if not KNOWN_TYPE.match(text):
        logger.warning(f"Unknown column type '{raw}', using text")
        text = "text"

    return f"{text}[]" if array else text


def parse_constraints(
    atoms: List[str],
) -> Tuple[List[str], List[Tuple[str, Optional[str]]]]:
    """
    Split raw constraint strings into clean atoms and FK targets

    Returns:
        (atoms, references) where references holds (target_table, target_column)
    """
    clean: List[str] = []
    references: List[Tuple[str, Optional[str]]] = []

    for raw in atoms:
        for match in ATOM_PATTERN.finditer(str(raw)):
            if match.group("pk"):
                atom = "primary key"
            elif match.group("nn"):
                atom = "not null"
            elif match.group("unique"):
                atom = "unique"
            elif match.group("default"):
                expr = match.group("expr").strip()
                expr = re.sub(r"^value\s+", "", expr, flags=re.IGNORECASE)
                atom = f"default {expr}"
            elif match.group("ref"):
                references.append((match.group("ref_table"), match.group("ref_col")))
                continue
            else:
                continue
            if atom not in clean:
                clean.append(atom)

    clean.sort(key=lambda a: ATOM_ORDER.get(a, 3))
    return clean, references


def _relationship_type(raw: Optional[str]) -> str:
    if not raw:
        return "many-to-one"
    text = str(raw).strip().lower()
    text = RELATIONSHIP_ALIASES.get(text, text)
    text = re.sub(r"[\s_]+", "-", text)
    text = RELATIONSHIP_ALIASES.get(text, text)
    return text if text in RELATIONSHIP_TYPES else "many-to-one"


class SchemaNormalizer:
    """
    Idempotent normalization of a SchemaGraph

    normalize(normalize(g)) == normalize(g); the input graph is never mutated.
    """

    def __init__(self, tenant_column: Optional[str] = None):
        self.tenant_column = tenant_column or settings.TENANT_COLUMN

    def normalize(self, graph: SchemaGraph) -> SchemaGraph:
        g = graph.copy_deep()

        self._normalize_names(g)
        for table in g.tables:
            self._clean_columns(table)
        self._place_relationships(g)
        for table in g.tables:
            self._enrich_polymorphic(table)
            self._inject_required_columns(table)
        self._complete_relationships(g)
        for table in g.tables:
            self._inject_dangling_fk_columns(g, table)

        return g

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def _normalize_names(self, g: SchemaGraph) -> None:
        seen = set()
        tables = []
        for table in g.tables:
            name = to_snake_case(table.original_name)
            if not name:
                logger.warning(f"Dropping table with unusable name '{table.original_name}'")
                continue
            if name in seen:
                logger.warning(f"Dropping duplicate table '{name}'")
                continue
            seen.add(name)
            table.original_name = name
            tables.append(table)
        g.tables = tables

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    def _clean_columns(self, table: TableSpec) -> None:
        seen = set()
        columns = []
        for column in table.columns:
            name = to_snake_case(column.name)
            if not name or name in seen:
                continue
            seen.add(name)
            column.name = name
            column.type = canonical_type(column.type)

            atoms, references = parse_constraints(column.constraints)
            column.constraints = atoms
            for target_table, target_column in references:
                table.relationships.append(RelationshipSpec(
                    type="many-to-one",
                    source_column=name,
                    target_table=target_table,
                    target_column=target_column or "id",
                ))
            columns.append(column)
        table.columns = columns

        for index in table.indexes:
            index.columns = [to_snake_case(c) for c in index.columns]

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def _resolve_target(self, g: SchemaGraph, target: str) -> Optional[str]:
        """Find the originalName a relationship target refers to"""
        raw = str(target or "").split(".")[-1]
        name = to_snake_case(raw)
        names = g.names()
        if name in names:
            return name
        # prefixed form <tenant>_<ident>_<original>
        for candidate in sorted(names, key=len, reverse=True):
            if name.endswith(f"_{candidate}"):
                return candidate
        for candidate in names:
            if singularize(candidate) == name or singularize(name) == singularize(candidate):
                return candidate
        return None

    def _place_relationships(self, g: SchemaGraph) -> None:
        """Move every FK onto its 'many' side and expand many-to-many into junctions"""
        pending: List[Tuple[TableSpec, RelationshipSpec]] = []
        for table in g.tables:
            for rel in table.relationships:
                pending.append((table, rel))
            table.relationships = []

        many_to_many: List[Tuple[str, str]] = []

        for table, rel in pending:
            target = self._resolve_target(g, rel.target_table)
            if target is None:
                logger.warning(
                    f"Dropping relationship {table.original_name} -> {rel.target_table}: unknown table"
                )
                continue
            if to_snake_case(str(rel.target_table).split(".")[-1]) != target:
                rel.original_target_table = rel.original_target_table or rel.target_table
            rel.target_table = target
            rel.type = _relationship_type(rel.type)
            if rel.source_column:
                rel.source_column = to_snake_case(rel.source_column)
            if rel.target_column:
                rel.target_column = to_snake_case(rel.target_column)

            if rel.type == "many-to-many":
                many_to_many.append((table.original_name, target))
                continue

            if rel.type == "one-to-many":
                self._attach_to_child(g, parent=table, child_name=target, fk_column=rel.target_column)
                continue

            if rel.source_column == "id" and rel.target_column and rel.target_column != "id":
                # the FK actually lives on the target table
                self._attach_to_child(
                    g, parent=table, child_name=target, fk_column=rel.target_column, rel_type=rel.type
                )
                continue

            self._add_relationship(table, rel)

        for left, right in many_to_many:
            self._ensure_junction(g, left, right)

    def _attach_to_child(
        self,
        g: SchemaGraph,
        parent: TableSpec,
        child_name: str,
        fk_column: Optional[str],
        rel_type: str = "many-to-one",
    ) -> None:
        child = g.table(child_name)
        if child is None:
            return
        source = fk_column if fk_column and fk_column != "id" else None
        if child is parent and source is None:
            source = "parent_id"
        self._add_relationship(child, RelationshipSpec(
            type=rel_type,
            source_column=source,
            target_table=parent.original_name,
            target_column="id",
        ))

    def _add_relationship(self, table: TableSpec, rel: RelationshipSpec) -> None:
        for existing in table.relationships:
            if existing.target_table != rel.target_table:
                continue
            if existing.source_column == rel.source_column or rel.source_column is None:
                return
            if existing.source_column is None:
                existing.source_column = rel.source_column
                return
        table.relationships.append(rel)

    def _ensure_junction(self, g: SchemaGraph, left: str, right: str) -> None:
        for name in (f"{left}_{right}", f"{right}_{left}"):
            if g.table(name) is not None:
                return
        for table in g.tables:
            targets = {r.target_table for r in table.relationships}
            if {left, right} <= targets and table.original_name not in (left, right):
                return

        left_col = f"{singularize(left)}_id"
        right_col = f"{singularize(right)}_id"
        if left_col == right_col:
            right_col = f"related_{right_col}"

        logger.info(f"Adding junction table {left}_{right} for many-to-many relationship")
        g.tables.append(TableSpec(
            original_name=f"{left}_{right}",
            columns=[
                ColumnSpec(name=left_col, type=_reference_type(g, left, "id"), constraints=["not null"]),
                ColumnSpec(name=right_col, type=_reference_type(g, right, "id"), constraints=["not null"]),
            ],
            relationships=[
                RelationshipSpec(type="many-to-one", source_column=left_col, target_table=left, target_column="id"),
                RelationshipSpec(type="many-to-one", source_column=right_col, target_table=right, target_column="id"),
            ],
        ))

    def _complete_relationships(self, g: SchemaGraph) -> None:
        for table in g.tables:
            for rel in table.relationships:
                rel.type = rel.type or "many-to-one"
                rel.target_column = rel.target_column or "id"
                if not rel.source_column:
                    singular = f"{singularize(rel.target_table)}_id"
                    if table.column(singular) is not None:
                        rel.source_column = singular
                    else:
                        rel.source_column = f"{rel.target_table}_id"

            unique = []
            keys = set()
            for rel in table.relationships:
                key = (rel.source_column, rel.target_table, rel.target_column)
                if key in keys:
                    continue
                keys.add(key)
                unique.append(rel)
            table.relationships = unique

    # ------------------------------------------------------------------
    # Polymorphic children
    # ------------------------------------------------------------------

    def _enrich_polymorphic(self, table: TableSpec) -> None:
        name = table.original_name
        if not any(keyword in name for keyword in POLYMORPHIC_KEYWORDS):
            return

        has_reference = any(
            "_id" in col.name and col.name != self.tenant_column
            for col in table.columns
        ) or bool(table.relationships)
        if has_reference:
            return

        logger.info(f"Adding polymorphic entity reference to {name}")
        table.columns.append(ColumnSpec(
            name="entity_type",
            type="varchar(50)",
            constraints=["not null"],
            description="Type of the owning entity (e.g. customer, supplier)",
        ))
        table.columns.append(ColumnSpec(
            name="entity_id",
            type="uuid",
            constraints=["not null"],
            description=f"ID of the entity this {singularize(name)} belongs to",
        ))

        if any(keyword in name for keyword in CONTACT_KEYWORDS):
            if table.column("contact_type") is None and table.column("type") is None:
                table.columns.append(ColumnSpec(
                    name="contact_type",
                    type="varchar(50)",
                    constraints=["not null"],
                    description="Kind of contact (e.g. email, phone)",
                ))

        index_name = f"idx_{name}_entity"
        if not any(index.name == index_name for index in table.indexes):
            table.indexes.append(IndexSpec(name=index_name, columns=["entity_type", "entity_id"]))

    # ------------------------------------------------------------------
    # Required columns
    # ------------------------------------------------------------------

    def _inject_required_columns(self, table: TableSpec) -> None:
        id_column = table.column("id")
        if id_column is None:
            id_column = ColumnSpec(
                name="id",
                type="uuid",
                constraints=["primary key", "default uuid_generate_v4()"],
            )
            table.columns.insert(0, id_column)
        else:
            if not id_column.is_primary_key:
                id_column.constraints.insert(0, "primary key")
            if id_column.type == "uuid" and not id_column.has("default"):
                id_column.constraints.append("default uuid_generate_v4()")
            id_column.constraints = [a for a in id_column.constraints if a != "not null"]

        for column in table.columns:
            if column is not id_column and column.is_primary_key:
                logger.warning(f"Removing extra primary key on {table.original_name}.{column.name}")
                column.constraints = [a for a in column.constraints if a != "primary key"]
                if "unique" not in column.constraints:
                    column.constraints.insert(0, "unique")

        for name in ("created_at", "updated_at"):
            column = table.column(name)
            if column is None:
                table.columns.append(ColumnSpec(
                    name=name, type=TIMESTAMP_TYPE, constraints=["default now()"]
                ))
                continue
            if not column.type.startswith("timestamp"):
                column.type = TIMESTAMP_TYPE
            if not column.has("default"):
                column.constraints.append("default now()")

        tenant = table.column(self.tenant_column)
        if tenant is None:
            table.columns.append(ColumnSpec(
                name=self.tenant_column, type="varchar(255)", constraints=["not null"]
            ))
        elif "not null" not in tenant.constraints:
            tenant.constraints.append("not null")
            tenant.constraints.sort(key=lambda a: ATOM_ORDER.get(a, 3))

    def _inject_dangling_fk_columns(self, g: SchemaGraph, table: TableSpec) -> None:
        for rel in table.relationships:
            if table.column(rel.source_column) is not None:
                continue
            col_type = _reference_type(g, rel.target_table, rel.target_column)
            logger.info(f"Injecting FK column {table.original_name}.{rel.source_column}")
            table.columns.append(ColumnSpec(
                name=rel.source_column, type=col_type, constraints=["not null"]
            ))


def _reference_type(g: SchemaGraph, target_table: str, target_column: str) -> str:
    """Column type an FK needs to match target_table.target_column"""
    target = g.table(target_table)
    target_col = target.column(target_column) if target else None
    if target_col is None:
        return "uuid"
    return SERIAL_REFERENCE_TYPES.get(target_col.type, target_col.type)


def assign_physical_names(graph: SchemaGraph, tenant_id: str, api_identifier: str) -> SchemaGraph:
    """Return a copy whose prefixedName values are derived from tenant + identifier"""
    validate_tenant_id(tenant_id)
    validate_api_identifier(api_identifier)

    g = graph.copy_deep()
    for table in g.tables:
        physical = prefixed_name(tenant_id, api_identifier, table.original_name)
        if len(physical.encode("utf-8")) > PG_IDENTIFIER_LIMIT:
            raise ValidationError(
                f"Table name '{physical}' exceeds {PG_IDENTIFIER_LIMIT} characters; "
                f"use a shorter tenant id or table name",
                {"table": table.original_name},
            )
        table.prefixed_name = physical
    return g
