"""
Prompt Schema Analyzer
Turns a plain-language description into a normalized SchemaGraph.
AI output is treated as untrusted text: this is the only place where
it is parsed, repaired and converted into schema models.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from loguru import logger
import json
import re

from pydantic import ValidationError as ModelValidationError

from apiforge.core.exceptions import UnparseableResponse
from apiforge.core.metrics import usage_tracker
from apiforge.schemas.schema_models import ColumnSpec, SchemaGraph, TableSpec
from apiforge.services.schema_modifier import SchemaModifier
from apiforge.services.schema_normalizer import SchemaNormalizer


SYSTEM_PROMPT = """You are a PostgreSQL database architect. Design a relational schema for the
application the user describes and answer with JSON only, no prose and no markdown.

The JSON must have exactly this shape:
{
  "tables": [
    {
      "name": "table_name",
      "columns": [
        {"name": "column_name", "type": "postgres_type", "constraints": ["constraint", "..."]}
      ],
      "relationships": [
        {"type": "many-to-one", "sourceColumn": "column_on_this_table", "targetTable": "other_table", "targetColumn": "id"}
      ]
    }
  ]
}

Rules:
1. Table and column names are lowercase snake_case; table names are plural.
2. Allowed types: uuid, varchar(n), text, integer, bigint, numeric(p,s), boolean, date,
   timestamp, timestamp with time zone, jsonb.
3. Allowed constraints are plain strings: "primary key", "unique", "not null", "default <expression>".
   Never put "references", "foreign key" or "on delete" inside constraints; describe every
   foreign key in "relationships" instead.
4. Every table has "id" (uuid, primary key, default uuid_generate_v4()), "created_at" and
   "updated_at" (timestamp with time zone, default now()).
5. Relationship types are one-to-one, one-to-many, many-to-one or many-to-many. Put the
   foreign key column on the "many" side and declare the relationship on that table.
6. Entities that can have several addresses, contacts or similar details get a separate
   child table instead of repeated columns."""

MODIFICATION_INSTRUCTIONS = """Return the COMPLETE updated schema in the same JSON shape.
Tables that the modification does not touch must be returned exactly as they are.
Keep existing table and column names unless the request explicitly renames them."""

MULTI_INSTANCE_NOTE = """

Note: when an entity can have multiple addresses, contacts or similar details, model them
as separate child tables that reference their parent, never as repeated columns."""

POLYMORPHIC_NOTE = """
If the same child table (for example addresses or contacts) belongs to several different
parent types, use a polymorphic association with "entity_type" varchar(50) and
"entity_id" uuid columns instead of one foreign key per parent."""

STOPWORDS = {
    "a", "an", "the", "and", "or", "with", "for", "of", "to", "in", "on", "by", "from",
    "that", "which", "who", "whom", "has", "have", "having", "each", "every", "many",
    "multiple", "some", "several", "create", "build", "make", "generate", "design", "api",
    "apis", "app", "application", "system", "simple", "basic", "database", "table",
    "tables", "schema", "want", "need", "needs", "manage", "management", "should", "can",
    "could", "would", "their", "they", "them", "this", "these", "those", "be", "is", "are",
    "was", "my", "our", "your", "its", "including", "include", "includes", "like", "etc",
    "store", "stores", "track", "tracks", "tracking", "belonging", "belongs", "add", "new",
    "also", "all", "any", "where", "what", "when", "want", "please", "using", "use",
    "platform", "service", "website", "site", "data", "info", "information",
}

MAX_FALLBACK_TABLES = 3


@dataclass
class AnalysisResult:
    graph: SchemaGraph
    used_fallback: bool = False


# ----------------------------------------------------------------------
# Prompt construction
# ----------------------------------------------------------------------

def enrich_prompt(prompt: str) -> str:
    """Append modeling notes when the prompt mentions multi-instance concepts"""
    lowered = prompt.lower()
    enriched = prompt
    if any(word in lowered for word in ("address", "contact", "multiple")):
        enriched += MULTI_INSTANCE_NOTE
        if "address" in lowered or "contact" in lowered:
            enriched += POLYMORPHIC_NOTE
    return enriched


def describe_graph(graph: SchemaGraph) -> str:
    """Human-readable rendering of an existing graph for the modification prompt"""
    lines = ["EXISTING SCHEMA:"]
    for table in graph.tables:
        columns = ", ".join(
            f"{c.name} ({c.type}{', ' + ', '.join(c.constraints) if c.constraints else ''})"
            for c in table.columns
        )
        lines.append(f'- Table "{table.original_name}" with columns: {columns}')
        if table.relationships:
            rels = "; ".join(
                f"{r.type or 'many-to-one'} {r.source_column or '?'} -> {r.target_table}.{r.target_column or 'id'}"
                for r in table.relationships
            )
            lines.append(f"  Relationships: {rels}")
    return "\n".join(lines)


def build_modification_prompt(prompt: str, graph: SchemaGraph) -> str:
    snapshot = [
        t.model_dump(by_alias=True, exclude_none=True, exclude={"prefixed_name"})
        for t in graph.tables
    ]
    return (
        f"{describe_graph(graph)}\n\n"
        f"EXISTING SCHEMA JSON:\n{json.dumps({'tables': snapshot}, indent=2)}\n\n"
        f"MODIFICATION REQUEST: {enrich_prompt(prompt)}\n\n"
        f"{MODIFICATION_INSTRUCTIONS}"
    )


# ----------------------------------------------------------------------
# JSON repair
# ----------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    cleaned = re.sub(r"```(?:json|JSON)?\s*", "", text or "")
    return cleaned.replace("```", "").strip()


def repair_default_value(text: str) -> str:
    """"default value": "now()" -> "default now()" """
    return re.sub(r'"default[ _]value"\s*:\s*"([^"]*)"', r'"default \1"', text, flags=re.IGNORECASE)


def _object_to_atom(match: "re.Match[str]") -> str:
    pairs = re.findall(r'"([^"]+)"\s*:\s*("(?:[^"\\]|\\.)*"|true|false|null|-?\d+(?:\.\d+)?)', match.group(0))
    parts = []
    for key, value in pairs:
        if value.startswith('"'):
            value = value[1:-1]
        if value in ("false", "null"):
            continue
        label = key.replace("_", " ")
        if key in ("type", "constraint", "name", "value"):
            parts.append(value)
        elif value == "true":
            parts.append(label)
        else:
            parts.append(f"{label} {value}")
    return json.dumps(" ".join(parts))


def repair_constraint_objects(text: str) -> str:
    """Turn object literals nested in "constraints" arrays into strings"""
    def fix_array(match: "re.Match[str]") -> str:
        body = re.sub(r"\{[^{}\[\]]*\}", _object_to_atom, match.group(2))
        return match.group(1) + body + "]"

    return re.sub(r'("constraints"\s*:\s*\[)([^\[\]]*)\]', fix_array, text)


def repair_missing_commas(text: str) -> str:
    """Insert commas between adjacent values that lost their separator"""
    text = re.sub(r'(?<=[^\\:\[,{\s]")(\s+)(?=")', r",\1", text)
    text = re.sub(r"}(\s*){", r"},\1{", text)
    text = re.sub(r"](\s*)\[", r"],\1[", text)
    text = re.sub(r'(?<=[}\]])(\s*\n\s*)(?=")', r",\1", text)
    text = re.sub(r'(?<=\d|e|l)(\s*\n\s*)(?=")', r",\1", text)
    return text


def extract_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced {...} region, ignoring braces inside strings"""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def _try_load(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def parse_ai_json(raw: str) -> Dict[str, Any]:
    """
    Parse AI output into a dict, applying repairs in a fixed order

    Raises:
        UnparseableResponse: when every repair step failed
    """
    text = strip_code_fences(raw)
    data = _try_load(text)
    repairs: List[str] = []

    if data is None:
        for name, repair in (
            ("default_value", repair_default_value),
            ("constraint_objects", repair_constraint_objects),
            ("missing_commas", repair_missing_commas),
        ):
            text = repair(text)
            repairs.append(name)
            data = _try_load(text)
            if data is not None:
                break

    if data is None:
        repairs.append("balanced_object")
        region = extract_balanced_object(text) or extract_balanced_object(strip_code_fences(raw))
        data = _try_load(region) if region else None

    if data is None:
        raise UnparseableResponse("AI response could not be parsed as JSON", raw=raw)

    if repairs:
        usage_tracker.log_repair()
        logger.warning(f"AI JSON needed repairs: {', '.join(repairs)}")

    if isinstance(data, list):
        data = {"tables": data}
    if not isinstance(data, dict):
        raise UnparseableResponse("AI response is not a JSON object", raw=raw)
    return data


def graph_from_ai_json(data: Dict[str, Any], raw: str = "") -> SchemaGraph:
    tables = data.get("tables")
    if tables is None and isinstance(data.get("schema"), dict):
        tables = data["schema"].get("tables")
    if not isinstance(tables, list):
        raise UnparseableResponse("AI response has no tables array", raw=raw)

    usable = [
        t for t in tables
        if isinstance(t, dict) and (t.get("name") or t.get("originalName") or t.get("original_name"))
    ]
    try:
        graph = SchemaGraph(tables=usable)
    except ModelValidationError as e:
        raise UnparseableResponse(f"AI response does not match the schema shape: {e.error_count()} errors", raw=raw) from e

    if not graph.tables:
        raise UnparseableResponse("AI response contains no usable tables", raw=raw)
    return graph


# ----------------------------------------------------------------------
# Fallback
# ----------------------------------------------------------------------

def fallback_graph(prompt: str) -> SchemaGraph:
    """Up to three generic tables named after the prompt's noun-like tokens"""
    names: List[str] = []
    for token in re.findall(r"[a-zA-Z]+", prompt.lower()):
        if len(token) < 3 or token in STOPWORDS or token in names:
            continue
        names.append(token)
        if len(names) == MAX_FALLBACK_TABLES:
            break
    if not names:
        names = ["items"]

    return SchemaGraph(tables=[
        TableSpec(
            original_name=name,
            columns=[
                ColumnSpec(name="id", type="uuid", constraints=["primary key", "default uuid_generate_v4()"]),
                ColumnSpec(name="name", type="varchar(255)", constraints=["not null"]),
                ColumnSpec(name="description", type="text"),
            ],
        )
        for name in names
    ])


class SchemaAnalyzer:
    """
    Prompt -> SchemaGraph using the AI provider

    The provider is any object with an async complete(system_prompt, user_prompt).
    """

    def __init__(self, llm, normalizer: Optional[SchemaNormalizer] = None):
        self.llm = llm
        self.normalizer = normalizer or SchemaNormalizer()
        self.modifier = SchemaModifier(self, self.normalizer)

    async def analyze(self, prompt: str) -> AnalysisResult:
        """
        Analyze a prompt into a normalized graph

        Provider timeouts and errors propagate; unparseable output degrades
        to the fallback graph.
        """
        logger.info(f"Analyzing prompt: {prompt[:100]}")
        raw = await self.llm.complete(SYSTEM_PROMPT, enrich_prompt(prompt))

        try:
            graph = graph_from_ai_json(parse_ai_json(raw), raw)
            used_fallback = False
        except UnparseableResponse as e:
            logger.warning(f"Using fallback schema: {e.message}")
            usage_tracker.log_fallback()
            graph = fallback_graph(prompt)
            used_fallback = True

        normalized = self.normalizer.normalize(graph)
        logger.info(f"Schema analyzed: {normalized.names()}")
        return AnalysisResult(graph=normalized, used_fallback=used_fallback)

    async def request_modification(self, prompt: str, existing: SchemaGraph) -> SchemaGraph:
        """Ask the provider for an edited graph; returns it un-normalized"""
        raw = await self.llm.complete(SYSTEM_PROMPT, build_modification_prompt(prompt, existing))
        try:
            return graph_from_ai_json(parse_ai_json(raw), raw)
        except UnparseableResponse as e:
            logger.warning(f"Schema modification unparseable: {e.message}")
            e.details["existingTables"] = existing.to_payload()
            raise

    async def analyze_modification(self, prompt: str, existing: SchemaGraph) -> SchemaGraph:
        return await self.modifier.modify(existing, prompt)
