"""
Governance API: webhook intake, cache refresh, and read routes.

Thin FastAPI layer over govsync. Every route delegates to the context's
stores; nothing here holds state of its own.

Usage:
    uvicorn api.server:app --port 8102

Endpoints:
    GET  /health                      Health check
    POST /webhook                     GitHub push events (X-Hub-Signature-256, X-GitHub-Delivery)
    POST /internal/refresh            Forced cache refresh (X-Refresh-Secret)
    GET  /dao.json                    DAOIP-2 DAO descriptor
    GET  /api/v1/agreements[/{id}]    Active agreements / agreement detail
    GET  /api/v1/policies[/{id}]      Active policies / policy detail
    GET  /api/v1/documents/{id}       Any document, any status
    GET  /api/v1/domains              Classification domains
    GET  /api/v1/proposals[/{id}]     Snapshot proposals
    GET  /api/v1/activity             Vote activity log
    GET  /api/v1/members              Token holders
    GET  /api/v1/roles[/{hat_id}]     Hats role tree / one role
    GET  /api/v1/groups               Working groups
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from govsync import __version__
from govsync.cache import (
    ACTIVITY_KEY,
    DAO_KEY,
    GROUPS_KEY,
    MEMBERS_KEY,
    PROPOSALS_KEY,
    ROLES_KEY,
    run_periodic_refresh,
)
from govsync.clock import to_iso
from govsync.context import SyncContext, build_context
from govsync.descriptor import DAOSTAR_CONTEXT, members_payload
from govsync.exceptions import SourceError
from govsync.sources import filter_activity, filter_groups, filter_proposals, find_hat

logger = logging.getLogger(__name__)

# HTTP status per webhook rejection reason; other outcomes are 200/202.
REJECTION_STATUS = {
    "invalid signature": 403,
    "missing delivery id": 400,
    "malformed payload": 400,
}


def get_context(request: Request) -> SyncContext:
    return request.app.state.ctx


async def _cached(ctx: SyncContext, key: str) -> Any:
    value = await ctx.refresher.get(key)
    if value is None:
        raise HTTPException(status_code=502, detail=f"Upstream data unavailable: {key}")
    return value


def create_app(context: Optional[SyncContext] = None, *, refresh_loop: Optional[bool] = None) -> FastAPI:
    """
    Build the application.

    Args:
        context: Pre-built context (tests); built from settings at startup otherwise
        refresh_loop: Run the periodic cache refresh; defaults to REFRESH_INTERVAL_SECONDS > 0
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or build_context()
        app.state.ctx = ctx

        purged = ctx.ledger.purge_expired()
        if purged:
            logger.info("Purged %d expired webhook deliveries", purged)
        ctx.dispatcher.resume_pending()

        run_loop = refresh_loop if refresh_loop is not None else ctx.settings.refresh_interval_seconds > 0
        stop = asyncio.Event()
        refresher_task = None
        if run_loop:
            refresher_task = asyncio.create_task(
                run_periodic_refresh(ctx.refresher, ctx.settings.refresh_interval_seconds, stop)
            )

        yield

        stop.set()
        if refresher_task is not None:
            await refresher_task
        await ctx.dispatcher.drain()
        if context is None:
            await ctx.aclose()

    app = FastAPI(
        title="Governance Sync API",
        description="Governance corpus graph and cached DAO facts",
        version=__version__,
        lifespan=lifespan,
    )

    # -----------------------------------------------------------------------
    # Service
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/webhook")
    async def webhook(
        request: Request,
        x_hub_signature_256: Optional[str] = Header(None),
        x_github_delivery: Optional[str] = Header(None),
        ctx: SyncContext = Depends(get_context),
    ):
        body = await request.body()
        result = ctx.intake.handle_push(body, x_hub_signature_256, x_github_delivery)
        if result.status == "rejected":
            status_code = REJECTION_STATUS.get(result.reason or "", 400)
        elif result.accepted:
            status_code = 202
        else:
            status_code = 200
        return JSONResponse(result.to_dict(), status_code=status_code)

    @app.post("/internal/refresh")
    async def internal_refresh(
        x_refresh_secret: Optional[str] = Header(None),
        ctx: SyncContext = Depends(get_context),
    ):
        secret = ctx.settings.internal_refresh_secret
        if not secret or not x_refresh_secret or not hmac.compare_digest(x_refresh_secret, secret):
            raise HTTPException(status_code=403, detail="Forbidden")
        report = await ctx.refresher.refresh_all(force=True)
        return {"status": "ok", "refreshed_at": to_iso(ctx.refresher.clock()), **report.to_dict()}

    @app.get("/dao.json")
    async def dao_descriptor(ctx: SyncContext = Depends(get_context)):
        return await _cached(ctx, DAO_KEY)

    # -----------------------------------------------------------------------
    # Governance documents
    # -----------------------------------------------------------------------

    @app.get("/api/v1/agreements")
    async def list_agreements(domain: Optional[str] = None, ctx: SyncContext = Depends(get_context)):
        return {"agreements": ctx.graph.query_agreements(domain=domain)}

    @app.get("/api/v1/agreements/{agreement_id}")
    async def get_agreement(agreement_id: str, ctx: SyncContext = Depends(get_context)):
        doc = ctx.graph.get_document(agreement_id, type="agreement")
        if doc is None:
            raise HTTPException(status_code=404, detail="Agreement not found")
        return doc

    @app.get("/api/v1/policies")
    async def list_policies(
        domain: Optional[str] = None,
        agreement_id: Optional[str] = Query(None, alias="agreementId"),
        ctx: SyncContext = Depends(get_context),
    ):
        return {"policies": ctx.graph.query_policies(domain=domain, agreement_id=agreement_id)}

    @app.get("/api/v1/policies/{policy_id}")
    async def get_policy(policy_id: str, ctx: SyncContext = Depends(get_context)):
        doc = ctx.graph.get_document(policy_id, type="policy")
        if doc is None:
            raise HTTPException(status_code=404, detail="Policy not found")
        return doc

    @app.get("/api/v1/documents/{document_id}")
    async def get_document(document_id: str, ctx: SyncContext = Depends(get_context)):
        doc = ctx.graph.get_document(document_id)
        if doc is None:
            raise HTTPException(status_code=404, detail="Document not found")
        return doc

    @app.get("/api/v1/domains")
    async def list_domains(axis: Optional[str] = None, ctx: SyncContext = Depends(get_context)):
        return {"domains": ctx.graph.list_domains(axis=axis)}

    # -----------------------------------------------------------------------
    # Cached DAO facts
    # -----------------------------------------------------------------------

    @app.get("/api/v1/proposals")
    async def list_proposals(
        status: Optional[str] = None,
        type: Optional[str] = None,
        ctx: SyncContext = Depends(get_context),
    ):
        proposals = await _cached(ctx, PROPOSALS_KEY)
        return {
            "@context": DAOSTAR_CONTEXT,
            "@type": "DAO",
            "proposals": filter_proposals(proposals, status=status, proposal_type=type),
        }

    @app.get("/api/v1/proposals/{proposal_id}")
    async def get_proposal(proposal_id: str, ctx: SyncContext = Depends(get_context)):
        try:
            proposal = await ctx.snapshot.fetch_proposal(proposal_id)
        except SourceError as e:
            raise HTTPException(status_code=502, detail=str(e))
        if proposal is None:
            raise HTTPException(status_code=404, detail="Proposal not found")
        return proposal

    @app.get("/api/v1/activity")
    async def list_activity(
        member: Optional[str] = None,
        proposal_id: Optional[str] = Query(None, alias="proposalId"),
        ctx: SyncContext = Depends(get_context),
    ):
        activity = await _cached(ctx, ACTIVITY_KEY)
        return {
            "@context": DAOSTAR_CONTEXT,
            "@type": "DAO",
            "activity": filter_activity(activity, member=member, proposal=proposal_id),
        }

    @app.get("/api/v1/members")
    async def list_members(ctx: SyncContext = Depends(get_context)):
        # Members are only tracked when a token-holder source is configured.
        return await ctx.refresher.get(MEMBERS_KEY) or members_payload([])

    @app.get("/api/v1/roles")
    async def list_roles(ctx: SyncContext = Depends(get_context)):
        return {"roles": await _cached(ctx, ROLES_KEY)}

    @app.get("/api/v1/roles/{hat_id}")
    async def get_role(hat_id: str, ctx: SyncContext = Depends(get_context)):
        hat = find_hat(await _cached(ctx, ROLES_KEY), hat_id)
        if hat is None:
            raise HTTPException(status_code=404, detail="Role not found")
        return hat

    @app.get("/api/v1/groups")
    async def list_groups(id: Optional[str] = None, ctx: SyncContext = Depends(get_context)):
        return {"groups": filter_groups(await _cached(ctx, GROUPS_KEY), group_id=id)}

    return app


app = create_app()
