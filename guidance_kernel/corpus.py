"""Reference corpus - static, read-only grounding rows.

The corpus supplies:
- Reference rows keyed by canonical error subtype
- A subtype alias map (raw error labels -> canonical labels)
- An alignment table flagging subtypes verified for auto-escalation
- Concept nodes used as concept candidates in grounding bundles
- Three-level hint text per subtype

INVARIANTS:
1. Loaded once, never mutated at runtime
2. Anchor selection is a pure function of (subtype, seed)
3. The hash used for selection is stable across processes and platforms
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)


DEFAULT_SUBTYPE_FALLBACK = "incomplete query"
SYNTHETIC_FALLBACK_ROW_ID = "sql-engage:fallback-synthetic"

SUBTYPE_ALIASES: dict[str, str] = {
    "unknown column": "undefined column",
    "no such column": "undefined column",
    "column not found": "undefined column",
    "unknown table": "undefined table",
    "no such table": "undefined table",
    "table not found": "undefined table",
    "unknown function": "undefined function",
    "no such function": "undefined function",
    "function not found": "undefined function",
    "ambiguous column": "ambiguous reference",
    "ambiguous table": "ambiguous reference",
    "ambiguous identifier": "ambiguous reference",
}

# (rung 1, rung 2, rung 3) hint text per canonical subtype
SUBTYPE_LADDER_GUIDANCE: dict[str, tuple[str, str, str]] = {
    "incomplete query": (
        "Start by completing the missing part of your SQL statement.",
        "Check whether each clause is present and complete before running again.",
        "Build the query incrementally: SELECT -> FROM -> WHERE/JOIN/GROUP BY, validating each step.",
    ),
    "undefined table": (
        "The table reference is likely incorrect.",
        "Verify the exact table name from the schema and use that spelling.",
        "Match every table in your query to a real schema table, then retry.",
    ),
    "undefined column": (
        "One or more column names do not match the schema.",
        "Compare your selected/filtered columns against the exact column names in the table.",
        "Rewrite the query with only verified column names, then add extra fields one at a time.",
    ),
    "undefined function": (
        "A function in the query is not recognized.",
        "Replace unsupported function names with functions available in this SQL dialect.",
        "Confirm function signatures and test the function on a small query first.",
    ),
    "ambiguous reference": (
        "A column reference is ambiguous across multiple tables.",
        "Prefix overlapping columns with table names or aliases.",
        "Use explicit aliases throughout SELECT, WHERE, GROUP BY, and ORDER BY.",
    ),
    "wrong positioning": (
        "A clause appears in the wrong order.",
        "Reorder clauses to standard SQL order.",
        "Use a fixed skeleton (SELECT -> FROM -> JOIN -> WHERE -> GROUP BY -> HAVING -> ORDER BY).",
    ),
    "aggregation misuse": (
        "Your aggregate function or grouping logic needs adjustment.",
        "Check that all non-aggregated columns in SELECT appear in GROUP BY.",
        "Apply aggregates only to values you want to summarize, and group by all other selected columns.",
    ),
    "data type mismatch": (
        "A value does not match the expected data type for this operation.",
        "Compare the column type with the value you are providing.",
        "Convert values to the correct type before comparison or insertion.",
    ),
    "incorrect distinct usage": (
        "DISTINCT may be unnecessary or incorrectly applied.",
        "Check if the columns are already unique or if duplicate removal is actually needed.",
        "Remove redundant DISTINCT and rely on unique keys or GROUP BY when appropriate.",
    ),
    "incorrect group by usage": (
        "The GROUP BY clause is missing or contains incorrect columns.",
        "Ensure every non-aggregated column in SELECT is included in GROUP BY.",
        "Refactor the query to group by the exact set of non-aggregated columns.",
    ),
    "incorrect having clause": (
        "HAVING is being used incorrectly or filters are in the wrong place.",
        "Use HAVING only for conditions on aggregate results; move row filters to WHERE.",
        "Validate that aggregate conditions reference grouped data correctly.",
    ),
    "incorrect join usage": (
        "The JOIN condition or type is incorrect.",
        "Verify the join keys exist in both tables and the join type matches your intent.",
        "Specify explicit ON conditions and prefer explicit JOIN syntax over comma joins.",
    ),
    "incorrect order by usage": (
        "ORDER BY columns or direction are incorrect.",
        "Check that the sorting columns exist in the result set and ASC/DESC is intended.",
        "Limit sorting to necessary columns and ensure the order aligns with the requirement.",
    ),
    "incorrect select usage": (
        "The SELECT clause is missing required columns or includes invalid ones.",
        "List only columns needed and ensure they exist in the source tables.",
        "Build the column list incrementally, validating each against the schema.",
    ),
    "incorrect wildcard usage": (
        "Wildcards (*) are used incorrectly or too broadly.",
        "Replace * with explicit column names for clarity and performance.",
        "Select only the columns your application actually needs.",
    ),
    "inefficient query": (
        "The query can be rewritten for better performance.",
        "Look for unnecessary subqueries, redundant joins, or missing indexes.",
        "Simplify the query structure and ensure filters are applied as early as possible.",
    ),
    "missing commas": (
        "A comma is missing between columns or table references.",
        "Review the SELECT or FROM list and insert commas between items.",
        "Format lists with one item per line to make missing commas obvious.",
    ),
    "missing quotes": (
        "String literals are missing required quotes.",
        "Wrap text values in single quotes and escape embedded quotes properly.",
        "Consistently quote all string literals and verify special characters are escaped.",
    ),
    "missing semicolons": (
        "A statement terminator may be missing.",
        "End each SQL statement with a semicolon for clarity.",
        "Use semicolons consistently, especially in multi-statement batches.",
    ),
    "misspelling": (
        "A keyword or identifier appears to be misspelled.",
        "Compare the spelling against the schema and SQL keywords.",
        "Use consistent naming conventions and verify against the database catalog.",
    ),
    "non-standard operators": (
        "An operator is not recognized or is non-standard.",
        "Replace with standard SQL operators (e.g., = instead of ==).",
        "Verify operator syntax in the target SQL dialect documentation.",
    ),
    "operator misuse": (
        "An operator is being used incorrectly for this context.",
        "Check that the operator fits the data types and logic of the comparison.",
        "Review operator precedence and use parentheses to clarify intent.",
    ),
    "unmatched brackets": (
        "Opening and closing brackets or parentheses do not match.",
        "Count brackets to locate the mismatch and ensure proper nesting.",
        "Balance every opening bracket with a corresponding closing bracket.",
    ),
}

_EXPLICIT_SUBTYPE_CONCEPTS: dict[str, tuple[str, ...]] = {
    "aggregation misuse": ("aggregation",),
    "ambiguous reference": ("joins",),
    "data type mismatch": ("where-clause",),
    "incomplete query": ("select-basic",),
    "incorrect distinct usage": ("select-basic",),
    "incorrect group by usage": ("aggregation",),
    "incorrect having clause": ("aggregation",),
    "incorrect join usage": ("joins",),
    "incorrect order by usage": ("order-by",),
    "incorrect select usage": ("select-basic",),
    "incorrect wildcard usage": ("select-basic",),
    "inefficient query": ("select-basic",),
    "missing commas": ("select-basic",),
    "missing quotes": ("select-basic",),
    "missing semicolons": ("select-basic",),
    "misspelling": ("where-clause",),
    "non-standard operators": ("where-clause",),
    "operator misuse": ("where-clause",),
    "undefined column": ("select-basic",),
    "undefined function": ("aggregation",),
    "undefined table": ("joins",),
    "unmatched brackets": ("where-clause",),
    "wrong positioning": ("order-by",),
}

_CONCEPT_INFERENCE_RULES: list[tuple[str, re.Pattern[str]]] = [
    ("subqueries", re.compile(r"\bsubquery\b|\bnested query\b|\bexists\s*\(|\bin\s*\(\s*select\b|\(\s*select\b", re.I)),
    ("joins", re.compile(r"\bjoin\b|\bjoined\b|\bforeign key\b|\bambiguous\b|\btable alias\b", re.I)),
    ("aggregation", re.compile(r"\bgroup by\b|\bhaving\b|\baggregate\b|\bcount\s*\(|\bsum\s*\(|\bavg\s*\(|\bmax\s*\(|\bmin\s*\(", re.I)),
    ("order-by", re.compile(r"\border by\b|\bsort\b|\bascending\b|\bdescending\b", re.I)),
    ("where-clause", re.compile(r"\bwhere\b|\bfilter\b|\bcondition\b|\boperator\b|\bpredicate\b|\bcomparison\b", re.I)),
]

_QUOTED_IDENTIFIER_RE = re.compile(r"'[\w\s._]+'|\"[\w\s._]+\"")


def stable_hash(text: str) -> int:
    """32-bit polynomial string hash (h = h * 31 + c mod 2**32).

    Used instead of hash() so selections replay identically across runs.
    """
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


def _normalize_spacing(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _scrub_identifiers(text: str) -> str:
    return _normalize_spacing(_QUOTED_IDENTIFIER_RE.sub("the referenced item", text))


def _append_sentence(base: str, addon: str) -> str:
    cleaned = _normalize_spacing(addon)
    if not cleaned:
        return base
    if not cleaned.endswith((".", "!", "?")):
        cleaned += "."
    return f"{base} {cleaned}"


@dataclass(frozen=True)
class ReferenceRow:
    """One row of the reference corpus."""

    row_id: str
    error_subtype: str
    feedback_target: str
    intended_learning_outcome: str
    query: str = ""
    error_type: str = ""
    emotion: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_id": self.row_id,
            "error_subtype": self.error_subtype,
            "feedback_target": self.feedback_target,
            "intended_learning_outcome": self.intended_learning_outcome,
        }


@dataclass(frozen=True)
class AlignmentEntry:
    """Alignment of an error subtype with textbook concepts."""

    subtype: str
    status: str
    excluded_from_auto_escalation: bool = False
    textbook_concept_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def verified(self) -> bool:
        return self.status == "verified"


@dataclass(frozen=True)
class ConceptNode:
    """A concept that grounding can point the learner to."""

    concept_id: str
    name: str
    description: str
    prerequisites: tuple[str, ...] = field(default_factory=tuple)
    difficulty: str = "beginner"
    examples: tuple[str, ...] = field(default_factory=tuple)


class ReferenceCorpus:
    """Read-only reference corpus.

    Usage:
        corpus = load_default_corpus()
        row = corpus.get_deterministic_anchor("no such column", "learner-1|p1")
    """

    def __init__(
        self,
        rows: Iterable[ReferenceRow],
        *,
        aliases: dict[str, str] | None = None,
        alignment: Iterable[AlignmentEntry] = (),
        concepts: Iterable[ConceptNode] = (),
        fallback_subtype: str = DEFAULT_SUBTYPE_FALLBACK,
    ):
        self._rows: tuple[ReferenceRow, ...] = tuple(rows)
        self._aliases = dict(SUBTYPE_ALIASES if aliases is None else aliases)
        self._alignment = {entry.subtype: entry for entry in alignment}
        self._concepts = {concept.concept_id: concept for concept in concepts}

        index: dict[str, list[ReferenceRow]] = {}
        for row in self._rows:
            key = row.error_subtype.strip().lower()
            if key:
                index.setdefault(key, []).append(row)
        self._subtype_index = {k: tuple(v) for k, v in index.items()}

        if fallback_subtype in self._subtype_index or not self._subtype_index:
            self._fallback_subtype = fallback_subtype
        else:
            self._fallback_subtype = sorted(self._subtype_index)[0]

        self._subtype_concepts = self._build_subtype_concept_map()

    @classmethod
    def from_files(
        cls,
        rows_csv: Path | str,
        alignment_json: Path | str | None = None,
        concepts_json: Path | str | None = None,
    ) -> ReferenceCorpus:
        """Load a corpus from a rows CSV and optional alignment/concept JSON."""
        rows = parse_rows_csv(Path(rows_csv).read_text(encoding="utf-8"))
        alignment = (
            parse_alignment(json.loads(Path(alignment_json).read_text(encoding="utf-8")))
            if alignment_json
            else []
        )
        concepts = (
            parse_concepts(json.loads(Path(concepts_json).read_text(encoding="utf-8")))
            if concepts_json
            else []
        )
        return cls(rows, alignment=alignment, concepts=concepts)

    @property
    def rows(self) -> tuple[ReferenceRow, ...]:
        return self._rows

    @property
    def fallback_subtype(self) -> str:
        return self._fallback_subtype

    def canonical_subtypes(self) -> list[str]:
        return sorted(self._subtype_index)

    def canonicalize_subtype(self, subtype: str | None) -> str:
        """Resolve a raw subtype label to a canonical one.

        Unknown labels collapse to the fallback subtype so that logs and
        replays only ever contain canonical labels.
        """
        raw = (subtype or "").strip().lower()
        if not raw:
            return self._fallback_subtype
        aliased = self._aliases.get(raw, raw)
        if aliased in self._subtype_index:
            return aliased
        return self._fallback_subtype

    def resolve_subtype(self, subtype: str | None) -> str:
        """Lowercase a raw label and map known aliases, without any fallback."""
        raw = (subtype or "").strip().lower()
        return self._aliases.get(raw, raw)

    def rows_for_subtype(self, subtype: str | None) -> tuple[ReferenceRow, ...]:
        return self._subtype_index.get(self.canonicalize_subtype(subtype), ())

    def fallback_row(self) -> ReferenceRow:
        rows = self._subtype_index.get(self._fallback_subtype)
        if rows:
            return rows[0]
        if self._rows:
            return self._rows[0]
        return ReferenceRow(
            row_id=SYNTHETIC_FALLBACK_ROW_ID,
            error_subtype=self._fallback_subtype,
            feedback_target="Complete the query structure before execution.",
            intended_learning_outcome="Build valid SQL statements incrementally.",
            error_type="construction",
            emotion="neutral",
        )

    def get_deterministic_anchor(self, subtype: str | None, seed: str) -> ReferenceRow:
        """Pick the canonical reference row for (subtype, seed).

        Pure: the same subtype and seed always select the same row.
        """
        canonical = self.canonicalize_subtype(subtype)
        rows = self._subtype_index.get(canonical) or (self.fallback_row(),)
        index = stable_hash(f"{canonical}|{seed}") % len(rows)
        return rows[index]

    def get_deterministic_hint(self, subtype: str | None, hint_level: int, seed: str) -> ReferenceRow:
        """Like get_deterministic_anchor, but varies with the hint level."""
        canonical = self.canonicalize_subtype(subtype)
        rows = self._subtype_index.get(canonical) or (self.fallback_row(),)
        index = stable_hash(f"{canonical}|{hint_level}|{seed}") % len(rows)
        return rows[index]

    def progressive_hint_text(
        self,
        subtype: str | None,
        hint_level: int,
        row: ReferenceRow | None = None,
    ) -> str:
        """Template hint text for a subtype at hint level 1-3."""
        canonical = self.canonicalize_subtype(subtype)
        level = max(1, min(3, hint_level))
        ladder = SUBTYPE_LADDER_GUIDANCE.get(canonical) or SUBTYPE_LADDER_GUIDANCE[DEFAULT_SUBTYPE_FALLBACK]

        if level == 1:
            return ladder[0]
        if level == 2:
            outcome = _scrub_identifiers(row.intended_learning_outcome if row else "")
            return _append_sentence(ladder[1], outcome)
        feedback = _scrub_identifiers(row.feedback_target if row else "")
        return _append_sentence(ladder[2], feedback)

    def get_alignment(self, subtype: str | None) -> AlignmentEntry | None:
        """Alignment entry for the label itself; unmapped labels have none."""
        return self._alignment.get(self.resolve_subtype(subtype))

    def is_subtype_verified(self, subtype: str | None) -> bool:
        entry = self.get_alignment(subtype)
        return entry is not None and entry.verified

    def can_auto_escalate(self, subtype: str | None) -> bool:
        """True when the subtype is verified and not excluded from auto-escalation."""
        entry = self.get_alignment(subtype)
        if entry is None:
            return False
        return entry.verified and not entry.excluded_from_auto_escalation

    def textbook_concept_ids(self, subtype: str | None) -> list[str]:
        entry = self.get_alignment(subtype)
        return list(entry.textbook_concept_ids) if entry else []

    def get_concept(self, concept_id: str) -> ConceptNode | None:
        return self._concepts.get(concept_id)

    def concept_ids_for_subtype(self, subtype: str | None) -> list[str]:
        if not subtype:
            return []
        return list(self._subtype_concepts.get(self.canonicalize_subtype(subtype), ()))

    def _build_subtype_concept_map(self) -> dict[str, tuple[str, ...]]:
        known = set(self._concepts)
        mapping: dict[str, tuple[str, ...]] = {}
        for subtype, rows in self._subtype_index.items():
            corpus_text = " ".join(
                [subtype] + [f"{r.query} {r.feedback_target} {r.intended_learning_outcome}" for r in rows]
            )
            inferred = [cid for cid, pattern in _CONCEPT_INFERENCE_RULES if pattern.search(corpus_text)]
            merged: list[str] = []
            for cid in list(_EXPLICIT_SUBTYPE_CONCEPTS.get(subtype, ())) + inferred:
                if cid in known and cid not in merged:
                    merged.append(cid)
            if not merged and "select-basic" in known:
                merged = ["select-basic"]
            mapping[subtype] = tuple(merged)
        return mapping


def parse_rows_csv(text: str) -> list[ReferenceRow]:
    """Parse the reference rows CSV. Rows without a row_id are skipped."""
    rows = []
    for record in csv.DictReader(io.StringIO(text)):
        row_id = (record.get("row_id") or "").strip()
        if not row_id:
            logger.debug("Skipping corpus row without row_id: %s", record)
            continue
        rows.append(
            ReferenceRow(
                row_id=row_id,
                error_subtype=(record.get("error_subtype") or "").strip().lower(),
                feedback_target=(record.get("feedback_target") or "").strip(),
                intended_learning_outcome=(record.get("intended_learning_outcome") or "").strip(),
                query=(record.get("query") or "").strip(),
                error_type=(record.get("error_type") or "").strip(),
                emotion=(record.get("emotion") or "").strip(),
            )
        )
    return rows


def parse_alignment(data: dict[str, Any]) -> list[AlignmentEntry]:
    return [
        AlignmentEntry(
            subtype=m["subtype"].strip().lower(),
            status=m.get("status", "pending"),
            excluded_from_auto_escalation=bool(m.get("excluded_from_auto_escalation", False)),
            textbook_concept_ids=tuple(m.get("textbook_concept_ids", [])),
        )
        for m in data.get("mappings", [])
    ]


def parse_concepts(data: dict[str, Any]) -> list[ConceptNode]:
    return [
        ConceptNode(
            concept_id=c["id"],
            name=c.get("name", c["id"]),
            description=c.get("description", ""),
            prerequisites=tuple(c.get("prerequisites", [])),
            difficulty=c.get("difficulty", "beginner"),
            examples=tuple(c.get("examples", [])),
        )
        for c in data.get("concepts", [])
    ]


@lru_cache(maxsize=1)
def load_default_corpus() -> ReferenceCorpus:
    """Load the corpus bundled with the package (cached, loaded once)."""
    data_dir = resources.files("guidance_kernel") / "data"
    rows = parse_rows_csv((data_dir / "reference_rows.csv").read_text(encoding="utf-8"))
    alignment = parse_alignment(json.loads((data_dir / "alignment_map.json").read_text(encoding="utf-8")))
    concepts = parse_concepts(json.loads((data_dir / "concepts.json").read_text(encoding="utf-8")))
    logger.debug("Loaded reference corpus: %d rows, %d alignments", len(rows), len(alignment))
    return ReferenceCorpus(rows, alignment=alignment, concepts=concepts)
