"""
Pydantic models for the schema graph
Tables, columns and relationships as produced by the analyzer and
consumed by the DDL emitter, materializer and route factory
"""
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any, Union
import json


RELATIONSHIP_TYPES = ("one-to-one", "one-to-many", "many-to-one", "many-to-many")


def _atom_from_object(value: Dict[str, Any]) -> str:
    """Flatten constraint objects such as {"default": "now()"} into a single atom"""
    parts = []
    for key, item in value.items():
        label = str(key).replace("_", " ")
        if item is False:
            continue
        if key in ("type", "constraint", "name", "value"):
            parts.append(str(item))
        elif item is True or item is None or item == "":
            parts.append(label)
        else:
            parts.append(f"{label} {item}")
    return " ".join(parts)


class GraphModel(BaseModel):
    """Base model: camelCase on the wire, snake_case accepted on input"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ColumnSpec(GraphModel):
    name: str
    type: str = "text"
    constraints: List[str] = Field(default_factory=list)
    description: Optional[str] = None

    @field_validator("constraints", mode="before")
    @classmethod
    def coerce_constraints(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        if isinstance(value, dict):
            value = [value]
        atoms = []
        for item in value:
            if item is None:
                continue
            if isinstance(item, dict):
                atoms.append(_atom_from_object(item))
            else:
                atoms.append(str(item))
        return atoms

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            return "text"
        return str(value)

    def has(self, atom: str) -> bool:
        """Check whether a constraint atom (or an atom starting with it) is present"""
        atom = atom.lower()
        return any(c.lower() == atom or c.lower().startswith(atom + " ") for c in self.constraints)

    @property
    def is_primary_key(self) -> bool:
        return self.has("primary key")


class RelationshipSpec(GraphModel):
    type: Optional[str] = None
    source_column: Optional[str] = None
    target_table: str
    target_column: Optional[str] = None
    original_target_table: Optional[str] = None


class IndexSpec(GraphModel):
    name: str
    columns: List[str]
    unique: bool = False


class TableSpec(GraphModel):
    original_name: str = Field(
        validation_alias=AliasChoices("originalName", "original_name", "name"),
        serialization_alias="originalName",
    )
    prefixed_name: Optional[str] = None
    description: Optional[str] = None
    columns: List[ColumnSpec] = Field(default_factory=list)
    relationships: List[RelationshipSpec] = Field(default_factory=list)
    indexes: List[IndexSpec] = Field(default_factory=list)

    @field_validator("columns", "relationships", "indexes", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def name(self) -> str:
        return self.original_name

    def column(self, name: str) -> Optional[ColumnSpec]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]


class SchemaGraph(BaseModel):
    """Ordered sequence of tables; order drives creation and FK attachment order"""

    tables: List[TableSpec] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Union[str, List[Any], Dict[str, Any], "SchemaGraph", None]) -> "SchemaGraph":
        """Build a graph from a list of tables, a {"tables": [...]} object or JSON text"""
        if payload is None:
            return cls()
        if isinstance(payload, SchemaGraph):
            return payload.model_copy(deep=True)
        if isinstance(payload, str):
            payload = json.loads(payload)
        if isinstance(payload, dict):
            payload = payload.get("tables") or []
        return cls(tables=payload)

    def to_payload(self) -> List[Dict[str, Any]]:
        """Wire form: list of camelCase table objects"""
        return [t.model_dump(by_alias=True, exclude_none=True) for t in self.tables]

    def table(self, original_name: str) -> Optional[TableSpec]:
        for t in self.tables:
            if t.original_name == original_name:
                return t
        return None

    def names(self) -> List[str]:
        return [t.original_name for t in self.tables]

    def copy_deep(self) -> "SchemaGraph":
        return self.model_copy(deep=True)
