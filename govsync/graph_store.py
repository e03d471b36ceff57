"""
Relational graph store for governance documents.

Owns the documents, domains, document_domains, document_relationships and
document_scope tables (schemas/governance_schema.sql). The sync pipeline is
the only writer of document rows; operators seed domains.

Write operations are idempotent on stable keys:
  documents               slug
  document_domains        (document_id, domain_id)
  document_relationships  "{from_id}:{type}:{to_id}"
  document_scope          "{document_id}:{entity_type}:{entity_id}"

Edges whose endpoints are not in the store are dropped, not queued. A
document that references a not-yet-synced target gains the edge only when
it is synced again after the target exists.

Read functions return plain dicts; consumers (API, MCP, CLI) handle
formatting and not-found responses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from .clock import Clock, to_iso, utcnow
from .db_utils import Database
from .models import (
    BASELINE_DOMAINS,
    DOMAIN_TYPES,
    RELATIONSHIP_TYPES,
    SCOPE_ENTITY_TYPES,
    BaselineDomain,
    ParsedDocument,
    ScopeEntry,
)

logger = logging.getLogger(__name__)

SCOPE_RELATIONS = ("governs", "governed_by", "party", "signatory")

DOCUMENT_COLUMNS = (
    "id, slug, type, title, status, effective_from, effective_to, "
    "enacted_by, content_hash, content_key, created_at, updated_at"
)


@dataclass
class DocumentSyncResult:
    """Outcome of writing one parsed document and its outgoing edges."""

    document_id: str
    slug: str
    domains_linked: int = 0
    relationships_linked: int = 0
    scope_entries: int = 0
    dropped_domains: int = 0
    dropped_relationships: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "slug": self.slug,
            "domains_linked": self.domains_linked,
            "relationships_linked": self.relationships_linked,
            "scope_entries": self.scope_entries,
            "dropped_domains": self.dropped_domains,
            "dropped_relationships": self.dropped_relationships,
        }


def relationship_id(from_id: str, relationship_type: str, to_id: str) -> str:
    return f"{from_id}:{relationship_type}:{to_id}"


def scope_id(document_id: str, entity_type: str, entity_id: str) -> str:
    return f"{document_id}:{entity_type}:{entity_id}"


class GraphStore:
    """Query and upsert operations over the governance document graph."""

    def __init__(self, db: Database, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def _now(self) -> str:
        return to_iso(self.clock())

    # -----------------------------------------------------------------------
    # Domains
    # -----------------------------------------------------------------------

    def upsert_domain(self, domain: BaselineDomain) -> None:
        """Create or update a domain, keyed by slug."""
        if domain.domain_type not in DOMAIN_TYPES:
            raise ValueError(f"Unknown domain type: {domain.domain_type}")
        self.db.execute(
            """
            INSERT INTO domains (id, slug, name, domain_type, parent_id, hat_id, description, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (slug) DO UPDATE SET
                name = excluded.name,
                domain_type = excluded.domain_type,
                parent_id = excluded.parent_id,
                hat_id = excluded.hat_id,
                description = excluded.description
            """,
            (
                domain.id,
                domain.slug,
                domain.name,
                domain.domain_type,
                domain.parent_id,
                domain.hat_id,
                domain.description,
                self._now(),
            ),
        )

    def seed_domains(self, domains: Iterable[BaselineDomain] = BASELINE_DOMAINS) -> int:
        """Insert or refresh the baseline domain set. Returns the number written."""
        count = 0
        with self.db.transaction():
            for domain in domains:
                self.upsert_domain(domain)
                count += 1
        return count

    # -----------------------------------------------------------------------
    # Document writes
    # -----------------------------------------------------------------------

    def upsert_document(self, record: ParsedDocument, content_key: str, content_hash: str | None = None) -> str:
        """
        Insert or update a document row keyed by slug.

        An existing row keeps its id and created_at; every other column is
        replaced with the record's values.

        Returns:
            The stored document id.
        """
        now = self._now()
        self.db.execute(
            """
            INSERT INTO documents (
                id, slug, type, title, status, effective_from, effective_to,
                enacted_by, content_hash, content_key, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (slug) DO UPDATE SET
                type = excluded.type,
                title = excluded.title,
                status = excluded.status,
                effective_from = excluded.effective_from,
                effective_to = excluded.effective_to,
                enacted_by = excluded.enacted_by,
                content_hash = excluded.content_hash,
                content_key = excluded.content_key,
                updated_at = excluded.updated_at
            """,
            (
                record.id,
                record.slug,
                record.type,
                record.title,
                record.status,
                record.effective_from,
                record.effective_to,
                record.enacted_by,
                content_hash,
                content_key,
                now,
                now,
            ),
        )
        row = self.db.fetch_one("SELECT id FROM documents WHERE slug = %s", (record.slug,))
        return row["id"]

    def upsert_domain_link(self, document_id: str, domain_slug: str) -> bool:
        """Link a document to an existing domain. Unknown domains are skipped."""
        domain = self.db.fetch_one("SELECT id FROM domains WHERE slug = %s", (domain_slug,))
        if domain is None:
            logger.debug("Skipping unknown domain %r for %s", domain_slug, document_id)
            return False
        self.db.execute(
            """
            INSERT INTO document_domains (document_id, domain_id)
            VALUES (%s, %s)
            ON CONFLICT (document_id, domain_id) DO NOTHING
            """,
            (document_id, domain["id"]),
        )
        return True

    def upsert_relationship(self, from_id: str, relationship_type: str, to_id: str) -> bool:
        """
        Record a typed edge between two stored documents.

        Returns False (and writes nothing) when the type is outside the
        vocabulary or either endpoint is missing.
        """
        if relationship_type not in RELATIONSHIP_TYPES:
            logger.debug("Dropping edge with unknown type %r from %s", relationship_type, from_id)
            return False
        found = self.db.fetch_all(
            "SELECT id FROM documents WHERE id IN (%s, %s)",
            (from_id, to_id),
        )
        if len({row["id"] for row in found}) < len({from_id, to_id}):
            logger.debug("Dropping dangling edge %s -[%s]-> %s", from_id, relationship_type, to_id)
            return False
        self.db.execute(
            """
            INSERT INTO document_relationships (id, from_id, to_id, relationship_type, created_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            """,
            (relationship_id(from_id, relationship_type, to_id), from_id, to_id, relationship_type, self._now()),
        )
        return True

    def upsert_scope(self, document_id: str, entry: ScopeEntry, scope_relation: str = "governs") -> None:
        if entry.entity_type not in SCOPE_ENTITY_TYPES:
            raise ValueError(f"Unknown scope entity type: {entry.entity_type}")
        if scope_relation not in SCOPE_RELATIONS:
            raise ValueError(f"Unknown scope relation: {scope_relation}")
        self.db.execute(
            """
            INSERT INTO document_scope (id, document_id, entity_type, entity_id, scope_relation, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET scope_relation = excluded.scope_relation
            """,
            (
                scope_id(document_id, entry.entity_type, entry.entity_id),
                document_id,
                entry.entity_type,
                entry.entity_id,
                scope_relation,
                self._now(),
            ),
        )

    def resolve_document_id(self, ref: str) -> str | None:
        """Map a slug (preferred) or id to a stored document id."""
        row = self.db.fetch_one("SELECT id FROM documents WHERE slug = %s", (ref,))
        if row is None:
            row = self.db.fetch_one("SELECT id FROM documents WHERE id = %s", (ref,))
        return row["id"] if row else None

    def sync_document(
        self,
        record: ParsedDocument,
        content_key: str,
        content_hash: str | None = None,
    ) -> DocumentSyncResult:
        """
        Write a parsed document and reconcile its outgoing edges atomically.

        The document's existing domain links, outgoing relationships and scope
        entries are replaced by the ones the record declares, so edits that
        remove a reference take effect. Incoming edges are untouched.
        """
        with self.db.transaction():
            document_id = self.upsert_document(record, content_key, content_hash)
            result = DocumentSyncResult(document_id=document_id, slug=record.slug)

            self.db.execute("DELETE FROM document_domains WHERE document_id = %s", (document_id,))
            self.db.execute("DELETE FROM document_relationships WHERE from_id = %s", (document_id,))
            self.db.execute("DELETE FROM document_scope WHERE document_id = %s", (document_id,))

            for domain_slug in record.domains:
                if self.upsert_domain_link(document_id, domain_slug):
                    result.domains_linked += 1
                else:
                    result.dropped_domains += 1

            for ref in record.relationships:
                target_id = self.resolve_document_id(ref.target_slug)
                if target_id is None:
                    logger.debug("Target %r of %s not synced yet", ref.target_slug, record.slug)
                    result.dropped_relationships += 1
                elif self.upsert_relationship(document_id, ref.type, target_id):
                    result.relationships_linked += 1
                else:
                    result.dropped_relationships += 1

            for entry in record.scope:
                self.upsert_scope(document_id, entry)
                result.scope_entries += 1

        return result

    def retire_document(self, slug: str) -> bool:
        """
        Transition a document to 'retired'. The row and its edges are kept.

        Returns True if the status changed; retiring a retired or unknown
        document is a no-op.
        """
        cursor = self.db.execute(
            "UPDATE documents SET status = 'retired', updated_at = %s WHERE slug = %s AND status <> 'retired'",
            (self._now(), slug),
        )
        return cursor.rowcount == 1

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def count_documents(self) -> int:
        row = self.db.fetch_one("SELECT COUNT(*) AS n FROM documents")
        return row["n"] if row else 0

    def list_documents(
        self,
        *,
        type: str | None = None,
        status: str | None = None,
        domain: str | None = None,
    ) -> list[dict]:
        """List documents with optional type, status and domain-slug filters."""
        conditions = ["1 = 1"]
        params: list[Any] = []
        joins = ""

        if domain:
            joins = (
                " INNER JOIN document_domains dd ON dd.document_id = d.id"
                " INNER JOIN domains dom ON dom.id = dd.domain_id"
            )
            conditions.append("dom.slug = %s")
            params.append(domain)
        if type:
            conditions.append("d.type = %s")
            params.append(type)
        if status:
            conditions.append("d.status = %s")
            params.append(status)

        columns = ", ".join(f"d.{c.strip()}" for c in DOCUMENT_COLUMNS.split(","))
        sql = f"SELECT {columns} FROM documents d{joins} WHERE {' AND '.join(conditions)} ORDER BY d.slug"
        return self.db.fetch_all(sql, params)

    def query_agreements(self, *, domain: str | None = None) -> list[dict]:
        """Active agreements, newest effective date first."""
        rows = self.list_documents(type="agreement", status="active", domain=domain)
        return sorted(rows, key=lambda r: r["effective_from"] or "", reverse=True)

    def query_policies(self, *, domain: str | None = None, agreement_id: str | None = None) -> list[dict]:
        """
        Active policies ordered by title.

        agreement_id (id or slug) restricts the result to policies with an
        authorized_by edge to that agreement.
        """
        rows = self.list_documents(type="policy", status="active", domain=domain)
        if agreement_id:
            authorized = {
                row["from_id"]
                for row in self.db.fetch_all(
                    """
                    SELECT dr.from_id FROM document_relationships dr
                    INNER JOIN documents a ON a.id = dr.to_id
                    WHERE dr.relationship_type = 'authorized_by'
                      AND (a.id = %s OR a.slug = %s)
                    """,
                    (agreement_id, agreement_id),
                )
            }
            rows = [r for r in rows if r["id"] in authorized]
        return sorted(rows, key=lambda r: r["title"])

    def get_document(self, id_or_slug: str, *, type: str | None = None) -> dict | None:
        """
        Get one document (any status) with its domains, relationships and scope.

        Returns None if no document matches, or if it exists with another type.
        """
        row = self.db.fetch_one(
            f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE slug = %s",
            (id_or_slug,),
        ) or self.db.fetch_one(
            f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE id = %s",
            (id_or_slug,),
        )
        if row is None or (type and row["type"] != type):
            return None

        row["domains"] = self.db.fetch_all(
            """
            SELECT dom.id, dom.slug, dom.name, dom.domain_type, dom.parent_id, dom.hat_id
            FROM domains dom
            INNER JOIN document_domains dd ON dd.domain_id = dom.id
            WHERE dd.document_id = %s
            ORDER BY dom.slug
            """,
            (row["id"],),
        )
        row["relationships"] = self.list_relationships(document_id=row["id"])
        row["scope"] = self.get_scope(row["id"])
        return row

    def list_relationships(
        self,
        *,
        document_id: str | None = None,
        relationship_type: str | None = None,
    ) -> list[dict]:
        """Edges touching document_id (either direction), optionally of one type."""
        conditions = ["1 = 1"]
        params: list[Any] = []
        if document_id:
            conditions.append("(from_id = %s OR to_id = %s)")
            params.extend([document_id, document_id])
        if relationship_type:
            conditions.append("relationship_type = %s")
            params.append(relationship_type)
        return self.db.fetch_all(
            f"""
            SELECT id, from_id, to_id, relationship_type
            FROM document_relationships
            WHERE {' AND '.join(conditions)}
            ORDER BY id
            """,
            params,
        )

    def get_scope(self, document_id: str) -> list[dict]:
        return self.db.fetch_all(
            """
            SELECT entity_type, entity_id, scope_relation
            FROM document_scope
            WHERE document_id = %s
            ORDER BY entity_type, entity_id
            """,
            (document_id,),
        )

    def list_domains(self, *, axis: str | None = None) -> list[dict]:
        """List domains, optionally restricted to one domain_type."""
        if axis:
            return self.db.fetch_all(
                """
                SELECT id, slug, name, domain_type, parent_id, hat_id, description
                FROM domains WHERE domain_type = %s ORDER BY slug
                """,
                (axis,),
            )
        return self.db.fetch_all(
            "SELECT id, slug, name, domain_type, parent_id, hat_id, description FROM domains ORDER BY slug"
        )
