"""
Tenant-Isolated Materializer
Runs generated DDL through the SQL executor with three escalating
strategies and verifies every expected table afterwards
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from loguru import logger

from apiforge.core.config import settings
from apiforge.core.exceptions import DatabaseError, ExecutorUnavailable, MaterializationError
from apiforge.core.metrics import usage_tracker
from apiforge.core.query import quote_ident
from apiforge.schemas.schema_models import SchemaGraph
from apiforge.services.schema_normalizer import assign_physical_names
from apiforge.services.sql_generator import (
    EXTENSIONS_SQL,
    emit,
    emit_foreign_key,
    emit_minimal_table,
    emit_sample_data,
    emit_structure,
    foreign_key_name,
    physical_names,
    sql_literal,
)


STRATEGY_STANDARD = "standard"
STRATEGY_DECOUPLED = "decoupled"
STRATEGY_ATOMIC = "atomic"


@dataclass
class TableVerification:
    original_name: str
    expected: str
    actual: Optional[str] = None
    probe: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.actual is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.original_name,
            "expected": self.expected,
            "actual": self.actual,
            "probe": self.probe,
            "exists": self.exists,
        }


@dataclass
class MaterializationReport:
    strategy: str
    graph: SchemaGraph
    tables: List[TableVerification]
    foreign_keys_added: List[str] = field(default_factory=list)
    foreign_keys_failed: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    attempts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def existing_tables(self) -> List[str]:
        return [t.actual for t in self.tables if t.exists]

    @property
    def missing_tables(self) -> List[str]:
        return [t.expected for t in self.tables if not t.exists]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "tables": [t.to_dict() for t in self.tables],
            "foreignKeysAdded": self.foreign_keys_added,
            "foreignKeysFailed": self.foreign_keys_failed,
            "warnings": self.warnings,
        }


@dataclass
class StrategyOutcome:
    foreign_keys_added: List[str] = field(default_factory=list)
    foreign_keys_failed: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _rows(result: Any) -> List[Dict[str, Any]]:
    if isinstance(result, list):
        return [r for r in result if isinstance(r, dict)]
    if isinstance(result, dict) and isinstance(result.get("data"), list):
        return result["data"]
    return []


class Materializer:
    """
    Creates a graph's tables inside the <tenant>_<apiIdentifier>_ namespace

    The executor is any object exposing async execute_sql(sql) and
    has_sql_executor(); DatabasePool in production.
    """

    def __init__(self, db, tenant_column: Optional[str] = None):
        self.db = db
        self.tenant_column = tenant_column or settings.TENANT_COLUMN
        self._executor_verified = False

    async def ensure_executor(self) -> None:
        """Probe for the SQL executor once; never installs it"""
        if self._executor_verified:
            return
        if not await self.db.has_sql_executor():
            logger.error("SQL executor function is missing; materialization is unavailable")
            raise ExecutorUnavailable(self.db.executor_remediation())
        self._executor_verified = True

    async def materialize(self, graph: SchemaGraph, tenant_id: str, api_identifier: str) -> MaterializationReport:
        """
        Create and verify every table of the graph

        Returns:
            Report of the winning strategy with per-table verification

        Raises:
            ExecutorUnavailable: SQL executor missing
            MaterializationError: all strategies left tables missing
        """
        await self.ensure_executor()
        named = assign_physical_names(graph, tenant_id, api_identifier)
        attempts: List[Dict[str, Any]] = []
        verification: List[TableVerification] = []

        strategies = (
            (STRATEGY_STANDARD, self._run_standard),
            (STRATEGY_DECOUPLED, self._run_decoupled),
            (STRATEGY_ATOMIC, self._run_atomic),
        )

        for name, runner in strategies:
            logger.info(f"Materializing {len(named.tables)} tables for {tenant_id}/{api_identifier} using {name} strategy")
            outcome = StrategyOutcome()
            error: Optional[str] = None
            try:
                outcome = await runner(named, tenant_id, api_identifier)
            except DatabaseError as e:
                error = e.message
                logger.warning(f"{name} strategy failed: {e.message}")

            verification = await self.verify(named)
            missing = [v.expected for v in verification if not v.exists]
            attempts.append({"strategy": name, "error": error, "missing": missing})

            if not missing:
                usage_tracker.log_strategy(name)
                resolved = named.copy_deep()
                for table, check in zip(resolved.tables, verification):
                    if check.actual != check.expected:
                        logger.warning(f"Table {check.expected} found as {check.actual}; using actual name")
                    table.prefixed_name = check.actual
                logger.info(f"Materialization succeeded with {name} strategy")
                return MaterializationReport(
                    strategy=name,
                    graph=resolved,
                    tables=verification,
                    foreign_keys_added=outcome.foreign_keys_added,
                    foreign_keys_failed=outcome.foreign_keys_failed,
                    warnings=outcome.warnings,
                    attempts=attempts,
                )

            logger.warning(f"{name} strategy left tables missing: {missing}")

        missing = [v.expected for v in verification if not v.exists]
        raise MaterializationError(missing, attempts)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _foreign_keys(self, graph: SchemaGraph) -> List[Tuple[str, str]]:
        """(constraint name, DO block) for every relationship"""
        names = physical_names(graph)
        blocks = []
        for table in graph.tables:
            for rel in table.relationships:
                block = emit_foreign_key(table, rel, names)
                if block:
                    constraint = foreign_key_name(names[table.original_name], rel.source_column, names[rel.target_table])
                    blocks.append((constraint, block))
        return blocks

    async def _run_standard(self, graph: SchemaGraph, tenant_id: str, api_identifier: str) -> StrategyOutcome:
        """Whole script as one unit"""
        await self.db.execute_sql(emit(graph, tenant_id, api_identifier))
        return StrategyOutcome(foreign_keys_added=[name for name, _ in self._foreign_keys(graph)])

    async def _run_decoupled(self, graph: SchemaGraph, tenant_id: str, api_identifier: str) -> StrategyOutcome:
        """Tables first, then each FK and sample row on its own"""
        await self.db.execute_sql(emit_structure(graph, tenant_id, api_identifier))
        outcome = StrategyOutcome()

        for constraint, block in self._foreign_keys(graph):
            try:
                await self.db.execute_sql(block)
                outcome.foreign_keys_added.append(constraint)
            except DatabaseError as e:
                logger.warning(f"Foreign key {constraint} failed: {e.message}")
                outcome.foreign_keys_failed.append({"constraint": constraint, "error": e.message})
                outcome.warnings.append(f"Foreign key {constraint} could not be added")

        await self._insert_samples(graph, tenant_id, outcome)
        return outcome

    async def _run_atomic(self, graph: SchemaGraph, tenant_id: str, api_identifier: str) -> StrategyOutcome:
        """Minimal CREATE TABLE per table; relationships are skipped"""
        outcome = StrategyOutcome()
        try:
            await self.db.execute_sql(EXTENSIONS_SQL)
        except DatabaseError as e:
            outcome.warnings.append(f"Extensions could not be enabled: {e.message}")

        for table in graph.tables:
            try:
                await self.db.execute_sql(emit_minimal_table(table, table.prefixed_name, self.tenant_column))
            except DatabaseError as e:
                logger.error(f"Minimal create of {table.prefixed_name} failed: {e.message}")
                outcome.warnings.append(f"Table {table.prefixed_name} could not be created: {e.message}")

        if any(t.relationships for t in graph.tables):
            outcome.warnings.append("Relationships were skipped; tables were created without foreign keys")
        return outcome

    async def _insert_samples(self, graph: SchemaGraph, tenant_id: str, outcome: StrategyOutcome) -> None:
        names = physical_names(graph)
        for table in graph.tables:
            try:
                await self.db.execute_sql(
                    emit_sample_data(table, names[table.original_name], tenant_id, names, self.tenant_column)
                )
            except DatabaseError as e:
                logger.warning(f"Sample data for {table.prefixed_name} skipped: {e.message}")
                outcome.warnings.append(f"Sample data for {table.prefixed_name} skipped")

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, graph: SchemaGraph) -> List[TableVerification]:
        results = []
        for table in graph.tables:
            results.append(await self.verify_table(table.original_name, table.prefixed_name))
        return results

    async def verify_table(self, original_name: str, expected: str) -> TableVerification:
        """Head select, then case-insensitive catalog lookup, then fuzzy ILIKE"""
        check = TableVerification(original_name=original_name, expected=expected)

        try:
            await self.db.execute_sql(f"SELECT 1 FROM {quote_ident(expected)} LIMIT 1")
            check.actual, check.probe = expected, "select"
            return check
        except DatabaseError:
            pass

        try:
            rows = _rows(await self.db.execute_sql(
                "SELECT table_name FROM information_schema.tables "
                f"WHERE table_schema = current_schema() AND lower(table_name) = lower({sql_literal(expected)})"
            ))
            if rows:
                check.actual, check.probe = rows[0]["table_name"], "information_schema"
                return check
        except DatabaseError as e:
            logger.debug(f"Catalog probe for {expected} failed: {e.message}")

        try:
            rows = _rows(await self.db.execute_sql(
                "SELECT table_name FROM information_schema.tables "
                f"WHERE table_schema = current_schema() AND table_name ILIKE {sql_literal('%' + original_name + '%')}"
            ))
            prefix = expected[: len(expected) - len(original_name)].lower()
            for row in rows:
                name = str(row.get("table_name", ""))
                if name.lower().startswith(prefix) and name.lower().endswith(original_name.lower()):
                    check.actual, check.probe = name, "ilike"
                    return check
        except DatabaseError as e:
            logger.debug(f"Fuzzy probe for {expected} failed: {e.message}")

        return check
