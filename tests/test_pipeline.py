"""Tests for the durable sync pipeline."""

import pytest

from govsync.pipeline import FETCH_STEP, SyncRequest, delete_step_name, sync_step_name

from .conftest import CHARTER, OPERATING_AGREEMENT, FlakyMirror

AGREEMENT_PATH = "agreements/operating-agreement.md"
CHARTER_PATH = "policies/charter.md"


class TestSyncRequest:
    def test_given_duplicate_paths_when_built_then_deduplicated_in_order(self) -> None:
        request = SyncRequest(["b.md", "a.md", "b.md"], ["c.md", "c.md"], "abc")

        assert request.changed_paths == ["b.md", "a.md"]
        assert request.deleted_paths == ["c.md"]

    def test_given_same_triple_in_any_order_when_hashed_then_run_id_matches(self) -> None:
        first = SyncRequest(["a.md", "b.md"], [], "abc")
        second = SyncRequest(["b.md", "a.md"], [], "abc")
        other_commit = SyncRequest(["a.md", "b.md"], [], "def")

        assert first.run_id == second.run_id
        assert first.run_id != other_commit.run_id
        assert first.run_id.startswith("run-")

    def test_given_ref_when_fetching_then_ref_overrides_commit(self) -> None:
        assert SyncRequest([], [], "resync:main:1", ref="main").fetch_ref == "main"
        assert SyncRequest([], [], "abc").fetch_ref == "abc"


class TestPipelineRun:
    @pytest.mark.asyncio
    async def test_given_agreement_and_charter_when_synced_then_graph_and_mirror_agree(
        self, ctx, upstream
    ) -> None:
        """A push adding an agreement and a policy authorized by it."""
        # Given
        upstream.files[AGREEMENT_PATH] = OPERATING_AGREEMENT
        upstream.files[CHARTER_PATH] = CHARTER

        # When
        report = await ctx.pipeline.run(SyncRequest([AGREEMENT_PATH, CHARTER_PATH], [], "abc123"))

        # Then
        assert report.status == "completed"
        assert sorted(report.synced) == [AGREEMENT_PATH, CHARTER_PATH]
        assert report.metrics["documents_upserted"] == 2

        agreement = ctx.graph.get_document("operating-agreement", type="agreement")
        assert agreement["status"] == "active"
        assert agreement["content_key"] == "governance/agreements/operating-agreement.md"

        policies = ctx.graph.query_policies(agreement_id="operating-agreement")
        assert [p["slug"] for p in policies] == ["charter"]

        mirrored = ctx.mirror.get("governance/policies/charter.md")
        assert mirrored.text == CHARTER
        assert mirrored.metadata["commit_id"] == "abc123"
        assert mirrored.metadata["content_hash"] == stored_hash(ctx, "charter")

    @pytest.mark.asyncio
    async def test_given_unavailable_file_when_synced_then_siblings_still_sync(self, ctx, upstream) -> None:
        upstream.files[AGREEMENT_PATH] = OPERATING_AGREEMENT

        report = await ctx.pipeline.run(SyncRequest([AGREEMENT_PATH, "policies/missing.md"], [], "abc"))

        assert report.status == "completed"
        assert report.synced == [AGREEMENT_PATH]
        assert report.unavailable == ["policies/missing.md"]

    @pytest.mark.asyncio
    async def test_given_file_without_frontmatter_when_synced_then_mirrored_not_indexed(
        self, ctx, upstream
    ) -> None:
        upstream.files["policies/notes.md"] = "# Notes\n"

        report = await ctx.pipeline.run(SyncRequest(["policies/notes.md"], [], "abc"))

        assert report.not_indexable == ["policies/notes.md"]
        assert ctx.mirror.get("governance/policies/notes.md") is not None
        assert ctx.graph.count_documents() == 0

    @pytest.mark.asyncio
    async def test_given_deleted_path_when_synced_then_document_retired_and_mirror_cleared(
        self, ctx, upstream
    ) -> None:
        # Given
        upstream.files[CHARTER_PATH] = CHARTER
        await ctx.pipeline.run(SyncRequest([CHARTER_PATH], [], "c1"))

        # When
        report = await ctx.pipeline.run(SyncRequest([], [CHARTER_PATH], "c2"))

        # Then
        assert report.retired == [CHARTER_PATH]
        assert ctx.graph.get_document("charter")["status"] == "retired"
        assert ctx.mirror.get("governance/policies/charter.md") is None

    @pytest.mark.asyncio
    async def test_given_deleted_unknown_path_when_synced_then_run_completes(self, ctx) -> None:
        report = await ctx.pipeline.run(SyncRequest([], ["policies/ghost.md"], "c1"))

        assert report.status == "completed"
        assert report.retired == []

    @pytest.mark.asyncio
    async def test_given_github_down_when_synced_then_fetch_reports_all_unavailable(
        self, ctx, upstream
    ) -> None:
        upstream.files[CHARTER_PATH] = CHARTER
        upstream.down.add("github")

        report = await ctx.pipeline.run(SyncRequest([CHARTER_PATH], [], "c1"))

        assert report.unavailable == [CHARTER_PATH]
        assert ctx.graph.count_documents() == 0


class TestDanglingReferences:
    @pytest.mark.asyncio
    async def test_given_policy_synced_before_agreement_when_resynced_then_edge_exists(
        self, ctx, upstream
    ) -> None:
        # Given: the charter arrives first; its authorized_by target is missing.
        upstream.files[CHARTER_PATH] = CHARTER
        first = await ctx.pipeline.run(SyncRequest([CHARTER_PATH], [], "c1"))
        assert first.status == "completed"
        assert ctx.graph.list_relationships() == []

        upstream.files[AGREEMENT_PATH] = OPERATING_AGREEMENT
        await ctx.pipeline.run(SyncRequest([AGREEMENT_PATH], [], "c2"))
        assert ctx.graph.list_relationships() == []

        # When
        reports = await ctx.pipeline.resync(passes=1)

        # Then
        assert len(reports) == 1
        assert sorted(reports[0].synced) == [AGREEMENT_PATH, CHARTER_PATH]
        assert [e["relationship_type"] for e in ctx.graph.list_relationships()] == ["authorized_by"]

    @pytest.mark.asyncio
    async def test_given_two_passes_when_resyncing_then_each_pass_is_a_new_run(self, ctx, upstream) -> None:
        upstream.files[CHARTER_PATH] = CHARTER
        upstream.files[AGREEMENT_PATH] = OPERATING_AGREEMENT

        reports = await ctx.pipeline.resync(passes=2)

        assert len({r.run_id for r in reports}) == 2
        assert all(r.metrics["steps_reused"] == 0 for r in reports)
        assert len(ctx.graph.list_relationships()) == 1

    @pytest.mark.asyncio
    async def test_given_excluded_files_when_discovering_then_they_are_skipped(self, ctx, upstream) -> None:
        upstream.files["agreements/README.md"] = "# Readme"
        upstream.files[AGREEMENT_PATH] = OPERATING_AGREEMENT

        paths = await ctx.pipeline.discover_paths("main")

        assert paths == [AGREEMENT_PATH]


class TestStepLedger:
    @pytest.mark.asyncio
    async def test_given_one_failing_file_when_synced_then_run_is_partial_and_sibling_synced(
        self, make_context, upstream, sleeps
    ) -> None:
        # Given
        mirror = FlakyMirror()
        mirror.failures["governance/policies/charter.md"] = -1
        ctx = make_context(mirror=mirror)
        upstream.files[AGREEMENT_PATH] = OPERATING_AGREEMENT
        upstream.files[CHARTER_PATH] = CHARTER

        # When
        report = await ctx.pipeline.run(SyncRequest([AGREEMENT_PATH, CHARTER_PATH], [], "c1"))

        # Then
        assert report.status == "partial"
        assert report.synced == [AGREEMENT_PATH]
        assert report.failed == [sync_step_name(CHARTER_PATH)]

        step = ctx.tracker.get_step(report.run_id, sync_step_name(CHARTER_PATH))
        assert step.status.value == "failed"
        assert step.attempts == 3
        assert "mirror unavailable" in step.error_message
        assert sleeps == [2.0, 2.0]
        assert ctx.graph.get_document("charter") is None

    @pytest.mark.asyncio
    async def test_given_transient_failure_when_retried_then_step_completes(
        self, make_context, upstream
    ) -> None:
        mirror = FlakyMirror()
        mirror.failures["governance/policies/charter.md"] = 1
        ctx = make_context(mirror=mirror)
        upstream.files[CHARTER_PATH] = CHARTER

        report = await ctx.pipeline.run(SyncRequest([CHARTER_PATH], [], "c1"))

        assert report.status == "completed"
        assert ctx.tracker.get_step(report.run_id, sync_step_name(CHARTER_PATH)).attempts == 2

    @pytest.mark.asyncio
    async def test_given_partial_run_when_rerun_then_only_failed_step_executes(
        self, make_context, upstream
    ) -> None:
        # Given
        mirror = FlakyMirror()
        mirror.failures["governance/policies/charter.md"] = -1
        ctx = make_context(mirror=mirror)
        upstream.files[AGREEMENT_PATH] = OPERATING_AGREEMENT
        upstream.files[CHARTER_PATH] = CHARTER
        request = SyncRequest([AGREEMENT_PATH, CHARTER_PATH], [], "c1")
        await ctx.pipeline.run(request)
        raw_calls = upstream.calls["raw"]

        # When
        mirror.failures.clear()
        report = await ctx.pipeline.run(request)

        # Then
        assert report.status == "completed"
        assert upstream.calls["raw"] == raw_calls
        assert mirror.puts["governance/agreements/operating-agreement.md"] == 1
        assert report.metrics["steps_reused"] == 2  # fetch-files + agreement
        assert ctx.tracker.get_step(report.run_id, sync_step_name(CHARTER_PATH)).attempts == 4
        assert len(ctx.graph.list_relationships()) == 1

    @pytest.mark.asyncio
    async def test_given_completed_run_when_repeated_then_nothing_is_redone(self, ctx, upstream) -> None:
        upstream.files[CHARTER_PATH] = CHARTER
        request = SyncRequest([CHARTER_PATH], ["policies/old.md"], "c1")
        first = await ctx.pipeline.run(request)

        second = await ctx.pipeline.run(request)

        assert second.run_id == first.run_id
        assert second.metrics["steps_reused"] == 3
        names = [s.step_name for s in ctx.tracker.steps(first.run_id)]
        assert sorted(names) == sorted(
            [FETCH_STEP, sync_step_name(CHARTER_PATH), delete_step_name("policies/old.md")]
        )

    @pytest.mark.asyncio
    async def test_given_queued_run_when_resumed_then_it_completes(self, ctx, upstream) -> None:
        # Given: a run recorded by the dispatcher but never executed
        upstream.files[CHARTER_PATH] = CHARTER
        run_id = ctx.pipeline.submit(SyncRequest([CHARTER_PATH], [], "c1"))
        assert ctx.tracker.get_run(run_id)["status"] == "queued"

        # When
        reports = await ctx.pipeline.resume_pending()

        # Then
        assert [r.run_id for r in reports] == [run_id]
        assert ctx.tracker.get_run(run_id)["status"] == "completed"
        assert ctx.tracker.pending_runs() == []


def stored_hash(ctx, slug: str) -> str:
    return ctx.graph.get_document(slug)["content_hash"]
