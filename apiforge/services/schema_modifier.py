"""
Schema Modifier
Merges an AI-edited schema back into the graph it was derived from
"""
from typing import Dict, Optional, Tuple
from loguru import logger

from apiforge.core.naming import to_snake_case
from apiforge.schemas.schema_models import RelationshipSpec, SchemaGraph, TableSpec


def _repair_relationships(edited: TableSpec, original: TableSpec) -> None:
    """Fill fields the AI dropped from the original relationship with the same target and type"""
    by_key: Dict[Tuple[str, Optional[str]], RelationshipSpec] = {}
    by_target: Dict[str, RelationshipSpec] = {}
    for rel in original.relationships:
        target = to_snake_case(rel.target_table)
        by_key.setdefault((target, rel.type), rel)
        by_target.setdefault(target, rel)

    for rel in edited.relationships:
        if rel.source_column and rel.target_column and rel.type:
            continue
        target = to_snake_case(rel.target_table)
        source = by_key.get((target, rel.type)) if rel.type else by_target.get(target)
        if source is None:
            continue
        rel.type = rel.type or source.type
        rel.source_column = rel.source_column or source.source_column
        rel.target_column = rel.target_column or source.target_column
        rel.original_target_table = rel.original_target_table or source.original_target_table


def merge_graphs(original: SchemaGraph, edited: SchemaGraph) -> SchemaGraph:
    """
    Merge an edited graph into the original

    - tables in the edit supersede originals with the same originalName
    - tables absent from the edit are kept unchanged
    - kept and superseded tables carry forward the original prefixedName
    - incomplete relationships are repaired from the original counterpart
    New tables are appended after the originals, in the edit's order.
    """
    edited_by_name: Dict[str, TableSpec] = {}
    for table in edited.tables:
        edited_by_name.setdefault(to_snake_case(table.original_name), table)

    merged = []
    consumed = set()
    for table in original.tables:
        key = to_snake_case(table.original_name)
        replacement = edited_by_name.get(key)
        if replacement is None:
            merged.append(table.model_copy(deep=True))
            continue
        updated = replacement.model_copy(deep=True)
        updated.original_name = table.original_name
        updated.prefixed_name = table.prefixed_name
        _repair_relationships(updated, table)
        merged.append(updated)
        consumed.add(key)

    for key, table in edited_by_name.items():
        if key in consumed:
            continue
        merged.append(table.model_copy(deep=True))

    added = [t.original_name for t in merged[len(original.tables):]]
    logger.info(f"Merged schema modification: {len(consumed)} updated, {len(added)} added {added}")
    return SchemaGraph(tables=merged)


class SchemaModifier:
    """Runs the analyzer in modification mode and merges the result"""

    def __init__(self, analyzer, normalizer):
        self.analyzer = analyzer
        self.normalizer = normalizer

    async def modify(self, graph: SchemaGraph, prompt: str) -> SchemaGraph:
        edited = await self.analyzer.request_modification(prompt, graph)
        merged = merge_graphs(graph, edited)
        return self.normalizer.normalize(merged)
