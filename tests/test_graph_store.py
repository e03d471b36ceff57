"""Tests for the governance graph store."""

from govsync.models import ParsedDocument, RelationshipRef, ScopeEntry


def _agreement(slug="operating-agreement", **overrides) -> ParsedDocument:
    fields = dict(
        id=slug,
        slug=slug,
        type="agreement",
        title="Operating Agreement",
        status="active",
        effective_from="2024-01-01",
        domains=["dao-core"],
        scope=[ScopeEntry("address", "0x1234abcd")],
    )
    fields.update(overrides)
    return ParsedDocument(**fields)


def _policy(slug="charter", **overrides) -> ParsedDocument:
    fields = dict(
        id=slug,
        slug=slug,
        type="policy",
        title="Charter",
        status="active",
        domains=["operations"],
        relationships=[RelationshipRef("authorized_by", "operating-agreement")],
    )
    fields.update(overrides)
    return ParsedDocument(**fields)


class TestDomains:
    def test_given_seeded_store_when_seeding_again_then_no_duplicates(self, graph) -> None:
        # When
        graph.seed_domains()

        # Then
        slugs = [d["slug"] for d in graph.list_domains()]
        assert slugs == ["dao-core", "metagovernance", "operations", "platforms", "treasury"]

    def test_given_axis_when_listing_then_only_that_type_is_returned(self, graph) -> None:
        entities = graph.list_domains(axis="entity")

        assert [d["slug"] for d in entities] == ["dao-core"]


class TestSyncDocument:
    def test_given_same_record_twice_when_synced_then_one_row_with_stable_id(self, graph, clock) -> None:
        # Given
        graph.sync_document(_agreement(), "governance/agreements/operating-agreement.md", "h1")
        first = graph.get_document("operating-agreement")
        clock.advance(60)

        # When
        graph.sync_document(_agreement(), "governance/agreements/operating-agreement.md", "h1")

        # Then
        second = graph.get_document("operating-agreement")
        assert graph.count_documents() == 1
        assert second["id"] == first["id"]
        assert second["created_at"] == first["created_at"]
        assert second["updated_at"] > first["updated_at"]
        assert len(second["domains"]) == 1
        assert len(second["scope"]) == 1

    def test_given_changed_frontmatter_id_when_resynced_then_stored_id_is_kept(self, graph) -> None:
        graph.sync_document(_agreement(), "k", "h1")

        result = graph.sync_document(_agreement(id="agr-renamed", title="Renamed"), "k", "h2")

        assert result.document_id == "operating-agreement"
        doc = graph.get_document("operating-agreement")
        assert doc["title"] == "Renamed"
        assert doc["content_hash"] == "h2"

    def test_given_unknown_domain_when_synced_then_link_is_dropped(self, graph) -> None:
        result = graph.sync_document(_agreement(domains=["dao-core", "no-such-domain"]), "k")

        assert result.domains_linked == 1
        assert result.dropped_domains == 1

    def test_given_missing_target_when_synced_then_edge_is_dropped(self, graph) -> None:
        # When
        result = graph.sync_document(_policy(), "k")

        # Then
        assert result.relationships_linked == 0
        assert result.dropped_relationships == 1
        assert graph.list_relationships() == []

    def test_given_target_synced_later_when_source_resynced_then_edge_closes(self, graph) -> None:
        # Given
        graph.sync_document(_policy(), "k1")
        graph.sync_document(_agreement(), "k2")

        # When
        result = graph.sync_document(_policy(), "k1")

        # Then
        assert result.relationships_linked == 1
        edges = graph.list_relationships(document_id="charter")
        assert [(e["from_id"], e["relationship_type"], e["to_id"]) for e in edges] == [
            ("charter", "authorized_by", "operating-agreement")
        ]

    def test_given_reference_removed_when_resynced_then_edge_is_removed(self, graph) -> None:
        graph.sync_document(_agreement(), "k2")
        graph.sync_document(_policy(), "k1")

        graph.sync_document(_policy(relationships=[]), "k1")

        assert graph.list_relationships() == []

    def test_given_resync_of_target_when_synced_then_incoming_edges_survive(self, graph) -> None:
        graph.sync_document(_agreement(), "k2")
        graph.sync_document(_policy(), "k1")

        graph.sync_document(_agreement(title="Operating Agreement v2"), "k2")

        assert len(graph.list_relationships(document_id="operating-agreement")) == 1

    def test_given_relationship_by_document_id_when_synced_then_target_resolves(self, graph) -> None:
        graph.sync_document(_agreement(slug="operating-agreement", id="agr-001"), "k2")

        result = graph.sync_document(
            _policy(relationships=[RelationshipRef("authorized_by", "agr-001")]), "k1"
        )

        assert result.relationships_linked == 1


class TestUpsertRelationship:
    def test_given_unknown_type_when_upserted_then_nothing_is_written(self, graph) -> None:
        graph.sync_document(_agreement(), "k2")
        graph.sync_document(_policy(relationships=[]), "k1")

        assert graph.upsert_relationship("charter", "contradicts", "operating-agreement") is False
        assert graph.list_relationships() == []

    def test_given_missing_endpoint_when_upserted_then_nothing_is_written(self, graph) -> None:
        graph.sync_document(_agreement(), "k2")

        assert graph.upsert_relationship("ghost", "references", "operating-agreement") is False

    def test_given_existing_edge_when_upserted_again_then_single_row(self, graph) -> None:
        graph.sync_document(_agreement(), "k2")
        graph.sync_document(_policy(relationships=[]), "k1")

        assert graph.upsert_relationship("charter", "references", "operating-agreement")
        assert graph.upsert_relationship("charter", "references", "operating-agreement")

        assert len(graph.list_relationships(relationship_type="references")) == 1


class TestRetireDocument:
    def test_given_active_document_when_retired_then_row_and_edges_remain(self, graph) -> None:
        # Given
        graph.sync_document(_agreement(), "k2")
        graph.sync_document(_policy(), "k1")

        # When
        changed = graph.retire_document("charter")

        # Then
        assert changed is True
        doc = graph.get_document("charter")
        assert doc["status"] == "retired"
        assert len(doc["relationships"]) == 1
        assert graph.query_policies() == []

    def test_given_retired_document_when_retired_again_then_noop(self, graph) -> None:
        graph.sync_document(_policy(relationships=[]), "k1")
        graph.retire_document("charter")

        assert graph.retire_document("charter") is False

    def test_given_unknown_slug_when_retired_then_noop(self, graph) -> None:
        assert graph.retire_document("never-synced") is False


class TestQueries:
    def test_given_agreements_when_queried_then_newest_effective_first(self, graph) -> None:
        graph.sync_document(_agreement("a-2023", effective_from="2023-06-01", title="Old"), "k1")
        graph.sync_document(_agreement("a-2024", effective_from="2024-06-01", title="New"), "k2")
        graph.sync_document(_agreement("a-draft", status="draft", title="Draft"), "k3")

        rows = graph.query_agreements()

        assert [r["slug"] for r in rows] == ["a-2024", "a-2023"]

    def test_given_domain_filter_when_queried_then_only_linked_documents(self, graph) -> None:
        graph.sync_document(_agreement(), "k1")
        graph.sync_document(_agreement("treasury-agreement", domains=["treasury"]), "k2")

        rows = graph.query_agreements(domain="treasury")

        assert [r["slug"] for r in rows] == ["treasury-agreement"]

    def test_given_policies_when_filtered_by_agreement_then_authorized_only(self, graph) -> None:
        # Given
        graph.sync_document(_agreement(), "k0")
        graph.sync_document(_policy("charter", title="Charter"), "k1")
        graph.sync_document(_policy("budget", title="Budget", relationships=[]), "k2")

        # When / Then
        assert [r["slug"] for r in graph.query_policies()] == ["budget", "charter"]
        assert [r["slug"] for r in graph.query_policies(agreement_id="operating-agreement")] == ["charter"]
        assert graph.query_policies(agreement_id="unknown") == []

    def test_given_wrong_type_when_getting_document_then_none(self, graph) -> None:
        graph.sync_document(_policy(relationships=[]), "k1")

        assert graph.get_document("charter", type="agreement") is None
        assert graph.get_document("charter", type="policy")["title"] == "Charter"
        assert graph.get_document("missing") is None

    def test_given_document_when_fetched_then_includes_scope_and_domains(self, graph) -> None:
        graph.sync_document(_agreement(), "k1")

        doc = graph.get_document("operating-agreement")

        assert doc["domains"][0]["slug"] == "dao-core"
        assert doc["scope"] == [
            {"entity_type": "address", "entity_id": "0x1234abcd", "scope_relation": "governs"}
        ]
        assert doc["content_key"] == "k1"
