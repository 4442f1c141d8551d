"""
Metadata store collaborators.

The engine only depends on the `MetadataStore` and `RelationshipService`
protocols. `InMemoryMetadataStore` serves a frozen snapshot of business
metadata, loaded from dicts or a JSON file, and implements both.

Snapshot format:
    {
        "tables": [{"id", "schema", "name", "business_purpose", "description",
                    "domains", "keywords", "importance", "governance",
                    "columns": [{"name", "data_type", "business_meaning", "is_key",
                                 "importance", "usage_frequency", "related_terms"}]}],
        "glossary": [{"term", "definition", "domain", "mapped_tables", "synonyms"}],
        "rules": [{"id", "table_id", "rule_type", "description", "priority"}],
        "relationships": [{"from_table", "from_column", "to_table", "to_column"}]
    }
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from shared.models import (
    BusinessRule,
    ColumnInfo,
    GlossaryTerm,
    TableInfo,
    TableRelationship,
)

from .scoring import normalize_token, tokenize

logger = logging.getLogger(__name__)


class MetadataStore(Protocol):
    """Lookup of business metadata. Implementations may be remote and slow."""

    async def list_tables(self) -> Tuple[TableInfo, ...]: ...

    async def find_tables_by_domain(self, domain_keys: Sequence[str]) -> Tuple[TableInfo, ...]: ...

    async def find_tables_by_keyword(self, terms: Sequence[str]) -> Tuple[TableInfo, ...]: ...

    async def find_glossary_terms(self, terms: Sequence[str]) -> Tuple[GlossaryTerm, ...]: ...

    async def get_columns(self, table_ids: Sequence[str]) -> Dict[str, Tuple[ColumnInfo, ...]]: ...

    async def get_business_rules(self, table_ids: Sequence[str]) -> Tuple[BusinessRule, ...]: ...


class RelationshipService(Protocol):
    """Foreign-key or inferred joins for a set of tables."""

    async def find_relationships(self, table_ids: Sequence[str]) -> Tuple[TableRelationship, ...]: ...


def table_terms(table: TableInfo) -> frozenset:
    """Searchable tokens of a table: name, keywords and purpose."""
    return tokenize(" ".join([table.table_name, " ".join(table.keywords), table.business_purpose]))


class InMemoryMetadataStore:
    """
    Frozen in-memory metadata snapshot.

    Usage:
        store = InMemoryMetadataStore.from_json("metadata.json")
        tables = await store.find_tables_by_domain(["banking"])
    """

    def __init__(
        self,
        tables: Iterable[TableInfo] = (),
        columns: Optional[Mapping[str, Sequence[ColumnInfo]]] = None,
        glossary: Iterable[GlossaryTerm] = (),
        rules: Iterable[BusinessRule] = (),
        relationships: Iterable[TableRelationship] = (),
        infer_joins: bool = True,
    ):
        self._tables: Tuple[TableInfo, ...] = tuple(sorted(tables, key=lambda t: t.id))
        self._by_id: Dict[str, TableInfo] = {t.id: t for t in self._tables}
        self._columns: Dict[str, Tuple[ColumnInfo, ...]] = {
            table_id: tuple(cols) for table_id, cols in (columns or {}).items()
        }
        self._glossary: Tuple[GlossaryTerm, ...] = tuple(glossary)
        self._rules: Tuple[BusinessRule, ...] = tuple(rules)
        self._relationships: Tuple[TableRelationship, ...] = tuple(relationships)
        self.infer_joins = infer_joins

    @classmethod
    def from_dict(cls, data: Mapping) -> "InMemoryMetadataStore":
        """Build a store from a snapshot dict."""
        tables: List[TableInfo] = []
        columns: Dict[str, List[ColumnInfo]] = {}

        for raw in data.get("tables", []):
            table_id = raw["id"]
            tables.append(
                TableInfo(
                    id=table_id,
                    schema_name=raw.get("schema", "dbo"),
                    table_name=raw.get("name", table_id),
                    business_purpose=raw.get("business_purpose", ""),
                    description=raw.get("description", ""),
                    domains=tuple(d.lower() for d in raw.get("domains", [])),
                    keywords=tuple(raw.get("keywords", [])),
                    importance=float(raw.get("importance", 0.5)),
                    governance=dict(raw.get("governance", {})),
                )
            )
            columns[table_id] = [
                ColumnInfo(
                    table_id=table_id,
                    name=col["name"],
                    data_type=col.get("data_type", "varchar"),
                    business_meaning=col.get("business_meaning", ""),
                    is_key=bool(col.get("is_key", False)),
                    importance=float(col.get("importance", 0.5)),
                    usage_frequency=float(col.get("usage_frequency", 0.0)),
                    related_terms=tuple(col.get("related_terms", [])),
                )
                for col in raw.get("columns", [])
            ]

        glossary = [
            GlossaryTerm(
                term=g["term"],
                definition=g.get("definition", ""),
                domain=g["domain"].lower() if g.get("domain") else None,
                mapped_tables=tuple(g.get("mapped_tables", [])),
                synonyms=tuple(g.get("synonyms", [])),
            )
            for g in data.get("glossary", [])
        ]
        rules = [
            BusinessRule(
                id=r["id"],
                table_id=r.get("table_id"),
                rule_type=r.get("rule_type", "business"),
                description=r["description"],
                priority=int(r.get("priority", 2)),
            )
            for r in data.get("rules", [])
        ]
        relationships = [
            TableRelationship(
                from_table=r["from_table"],
                from_column=r["from_column"],
                to_table=r["to_table"],
                to_column=r["to_column"],
                kind="foreign_key",
                confidence=float(r.get("confidence", 1.0)),
            )
            for r in data.get("relationships", [])
        ]

        logger.info(f"Loaded metadata snapshot: {len(tables)} tables, {len(glossary)} glossary terms")
        return cls(tables, columns, glossary, rules, relationships)

    @classmethod
    def from_json(cls, path) -> "InMemoryMetadataStore":
        """Build a store from a JSON snapshot file."""
        with open(Path(path), encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    # --- MetadataStore -----------------------------------------------------

    async def list_tables(self) -> Tuple[TableInfo, ...]:
        return self._tables

    async def find_tables_by_domain(self, domain_keys: Sequence[str]) -> Tuple[TableInfo, ...]:
        keys = {k.lower() for k in domain_keys}
        return tuple(t for t in self._tables if keys.intersection(t.domains))

    async def find_tables_by_keyword(self, terms: Sequence[str]) -> Tuple[TableInfo, ...]:
        wanted = set()
        for term in terms:
            wanted.update(tokenize(term))
        if not wanted:
            return ()
        return tuple(t for t in self._tables if wanted & table_terms(t))

    async def find_glossary_terms(self, terms: Sequence[str]) -> Tuple[GlossaryTerm, ...]:
        wanted = set()
        for term in terms:
            wanted.update(tokenize(term))
        if not wanted:
            return ()
        matches = []
        for entry in self._glossary:
            names = tokenize(" ".join((entry.term,) + entry.synonyms))
            if wanted & names:
                matches.append(entry)
        return tuple(matches)

    async def get_columns(self, table_ids: Sequence[str]) -> Dict[str, Tuple[ColumnInfo, ...]]:
        return {table_id: self._columns.get(table_id, ()) for table_id in table_ids}

    async def get_business_rules(self, table_ids: Sequence[str]) -> Tuple[BusinessRule, ...]:
        ids = set(table_ids)
        return tuple(r for r in self._rules if r.table_id is None or r.table_id in ids)

    # --- RelationshipService -----------------------------------------------

    async def find_relationships(self, table_ids: Sequence[str]) -> Tuple[TableRelationship, ...]:
        ids = set(table_ids)
        found = [r for r in self._relationships if r.from_table in ids and r.to_table in ids]
        if self.infer_joins:
            declared = {(r.from_table, r.from_column) for r in found}
            found.extend(r for r in self._infer_joins(ids) if (r.from_table, r.from_column) not in declared)
        return tuple(sorted(found, key=lambda r: (r.from_table, r.from_column, r.to_table)))

    def _infer_joins(self, ids) -> List[TableRelationship]:
        """Infer joins from `<entity>_id` columns naming another selected table."""
        by_entity: Dict[str, str] = {}
        for table_id in ids:
            table = self._by_id.get(table_id)
            if table:
                by_entity[normalize_token(table.table_name.lower())] = table_id

        inferred = []
        for table_id in sorted(ids):
            table = self._by_id.get(table_id)
            if table is None:
                continue
            own_entity = normalize_token(table.table_name.lower())
            for col in self._columns.get(table_id, ()):
                name = col.name.lower()
                if not name.endswith("_id"):
                    continue
                entity = normalize_token(name[:-3])
                target = by_entity.get(entity)
                if target is None or entity == own_entity:
                    continue
                target_cols = {c.name.lower(): c.name for c in self._columns.get(target, ())}
                to_column = target_cols.get(name) or target_cols.get("id") or col.name
                inferred.append(
                    TableRelationship(
                        from_table=table_id,
                        from_column=col.name,
                        to_table=target,
                        to_column=to_column,
                        kind="inferred",
                        confidence=0.7,
                    )
                )
        return inferred
