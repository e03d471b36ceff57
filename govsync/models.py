"""
Record types shared by the parser, the graph store and the sync pipeline.

The vocabularies here mirror the CHECK constraints in
schemas/governance_schema.sql; the storage boundary enforces them too.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

DOCUMENT_TYPES = ("agreement", "policy", "proposal", "other")
DOCUMENT_STATUSES = ("draft", "active", "superseded", "retired")
RELATIONSHIP_TYPES = (
    "authorized_by",  # policy derives authority from agreement
    "implements",  # gives effect to a principle or charter
    "supersedes",  # newer document replaces older one
    "references",  # general citation
    "evaluates",  # evaluation assesses an outcome
    "fulfills",  # output satisfies a commitment
)
DOMAIN_TYPES = ("entity", "trust_zone", "governance_function")
SCOPE_ENTITY_TYPES = ("hat", "address", "group")
GROUP_STATUSES = ("active", "inactive", "archived")


@dataclass(frozen=True)
class RelationshipRef:
    """A typed edge declared in frontmatter, pointing at a target slug."""

    type: str
    target_slug: str


@dataclass(frozen=True)
class ScopeEntry:
    """A link from a document to an externally governed entity."""

    entity_type: str  # hat | address | group
    entity_id: str


@dataclass
class ParsedDocument:
    """Structured record extracted from one governance document."""

    id: str
    slug: str
    type: str
    title: str
    status: str
    effective_from: str | None = None
    effective_to: str | None = None
    enacted_by: str | None = None
    domains: list[str] = field(default_factory=list)
    relationships: list[RelationshipRef] = field(default_factory=list)
    scope: list[ScopeEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GroupRecord:
    """A working group / cell from the knowledge-base groups corpus."""

    id: str
    name: str
    status: str = "inactive"
    description: str | None = None
    mandate: str | None = None
    linked_hats: list[str] = field(default_factory=list)
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BaselineDomain:
    id: str
    slug: str
    name: str
    domain_type: str
    description: str | None = None
    parent_id: str | None = None
    hat_id: str | None = None


BASELINE_DOMAINS = (
    BaselineDomain("dom-metagov", "metagovernance", "Metagovernance", "governance_function",
                   "DAO-level governance rules and amendment processes"),
    BaselineDomain("dom-operations", "operations", "Operations", "governance_function",
                   "Day-to-day contributor and operational policies"),
    BaselineDomain("dom-platforms", "platforms", "Platform Administration", "governance_function",
                   "Digital infrastructure and platform management"),
    BaselineDomain("dom-dao-core", "dao-core", "DAO Core", "entity",
                   "Top-level DAO entity and agreements"),
    BaselineDomain("dom-treasury", "treasury", "Treasury", "governance_function",
                   "Financial management and resource allocation"),
)
