"""
Governance MCP Server: agreements, policies and DAO facts for agents.

Exposes the governance graph and the cached DAO aggregates as MCP tools so
agents can answer governance questions without scraping the API.

Usage (stdio transport):
 python -m api.mcp_server

Configuration in .mcp.json:
 {
 "governance": {
 "command": "python",
 "args": ["-m", "api.mcp_server"],
 "cwd": ""
 }
 }
"""

from __future__ import annotations

import json
from typing import Optional

from mcp.server.fastmcp import FastMCP

from govsync.cache import DAO_KEY, GROUPS_KEY, PROPOSALS_KEY, ROLES_KEY
from govsync.context import SyncContext, build_context
from govsync.sources import filter_groups, filter_proposals, find_hat

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

_ctx: Optional[SyncContext] = None


def get_context() -> SyncContext:
    global _ctx
    if _ctx is None:
        _ctx = build_context()
    return _ctx


def set_context(ctx: Optional[SyncContext]) -> None:
    global _ctx
    _ctx = ctx


def _dumps(value) -> str:
    return json.dumps(value, indent=2, default=str)


# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------

mcp = FastMCP("governance")


@mcp.tool()
def list_agreements(domain: str | None = None) -> str:
    """List active agreements, most recently effective first.

    Args:
        domain: Filter by domain slug (e.g. "operations", "dao-core")

    Returns:
        JSON array of agreements with id, slug, title, status, effective_from.
    """
    return _dumps(get_context().graph.query_agreements(domain=domain))


@mcp.tool()
def get_agreement(agreement_id: str) -> str:
    """Get one agreement with its domains, relationships and scope.

    Args:
        agreement_id: Document id or slug (e.g. "operating-agreement")

    Returns:
        JSON object, or null if not found.
    """
    return _dumps(get_context().graph.get_document(agreement_id, type="agreement"))


@mcp.tool()
def list_policies(domain: str | None = None, agreement_id: str | None = None) -> str:
    """List active policies ordered by title.

    Args:
        domain: Filter by domain slug
        agreement_id: Only policies authorized by this agreement (id or slug)

    Returns:
        JSON array of policies.
    """
    return _dumps(get_context().graph.query_policies(domain=domain, agreement_id=agreement_id))


@mcp.tool()
def get_policy(policy_id: str) -> str:
    """Get one policy with its domains, relationships and scope.

    Args:
        policy_id: Document id or slug

    Returns:
        JSON object, or null if not found.
    """
    return _dumps(get_context().graph.get_document(policy_id, type="policy"))


@mcp.tool()
def list_domains(axis: str | None = None) -> str:
    """List classification domains.

    Args:
        axis: Filter by domain type ("entity", "trust_zone", "governance_function")
    """
    return _dumps(get_context().graph.list_domains(axis=axis))


@mcp.tool()
async def list_proposals(status: str | None = None, proposal_type: str | None = None) -> str:
    """List recent Snapshot proposals in DAOIP-2 shape.

    Args:
        status: Filter by state ("active", "closed", "pending")
        proposal_type: Filter by voting type (e.g. "single-choice")
    """
    proposals = await get_context().refresher.get(PROPOSALS_KEY)
    if proposals is None:
        return _dumps({"error": "proposals unavailable"})
    return _dumps(filter_proposals(proposals, status=status, proposal_type=proposal_type))


@mcp.tool()
async def get_roles(hat_id: str | None = None) -> str:
    """Get the DAO's role tree, or one role by hat id or pretty id."""
    hats = await get_context().refresher.get(ROLES_KEY)
    if hats is None:
        return _dumps({"error": "roles unavailable"})
    if hat_id:
        return _dumps(find_hat(hats, hat_id))
    return _dumps(hats)


@mcp.tool()
async def list_groups(group_id: str | None = None) -> str:
    """List active working groups, or find one group (any status) by id or name."""
    groups = await get_context().refresher.get(GROUPS_KEY)
    if groups is None:
        return _dumps({"error": "groups unavailable"})
    return _dumps(filter_groups(groups, group_id=group_id))


@mcp.tool()
async def get_dao_descriptor() -> str:
    """Get the DAOIP-2 dao.json descriptor."""
    return _dumps(await get_context().refresher.get(DAO_KEY))


if __name__ == "__main__":
    mcp.run(transport="stdio")
