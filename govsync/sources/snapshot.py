"""
Snapshot data source: proposals and vote activity for one space.

Proposals are converted to the DAOIP-2 proposal shape; votes become the
activity log.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Optional

import httpx

from .graphql import graphql_query

logger = logging.getLogger(__name__)

SNAPSHOT_API = "https://hub.snapshot.org/graphql"

_PROPOSAL_FIELDS = """
      id
      title
      body
      state
      author
      created
      start
      end
      scores_total
      scores
      choices
      votes
      quorum
      discussion
      type
      ipfs
"""

PROPOSALS_QUERY = (
    """
  query GetProposals($space: String!, $first: Int!) {
    proposals(
      first: $first,
      where: { space: $space }
      orderBy: "created"
      orderDirection: desc
    ) {"""
    + _PROPOSAL_FIELDS
    + """    }
  }
"""
)

SINGLE_PROPOSAL_QUERY = (
    """
  query GetProposal($id: String!) {
    proposal(id: $id) {"""
    + _PROPOSAL_FIELDS
    + """    }
  }
"""
)

VOTES_QUERY = """
  query GetVotes($space: String!, $first: Int!) {
    votes(
      first: $first,
      where: { space: $space }
      orderBy: "created"
      orderDirection: desc
    ) {
      id
      voter
      created
      choice
      vp
      reason
      proposal {
        id
        choices
      }
    }
  }
"""


def _iso(timestamp: Any) -> Optional[str]:
    if timestamp is None:
        return None
    moment = datetime.fromtimestamp(int(timestamp), UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def proposal_id(space: str, snapshot_id: str) -> str:
    """DAOIP-2 off-chain proposal id."""
    return f"daoip-2:{space}:proposal:{snapshot_id}"


def to_proposal(raw: dict[str, Any], space: str) -> dict[str, Any]:
    """Snapshot proposal -> DAOIP-2 proposal."""
    scores = raw.get("scores") or []
    choices = raw.get("choices") or []
    proposal = {
        "@type": "proposal",
        "id": proposal_id(space, raw["id"]),
        "title": raw.get("title"),
        "contentURI": f"https://snapshot.org/#/{space}/proposal/{raw['id']}",
        "status": raw.get("state"),
        "author": raw.get("author"),
        "createdAt": _iso(raw.get("created")),
        "startTime": _iso(raw.get("start")),
        "endTime": _iso(raw.get("end")),
        "scores": [
            {"choice": choice, "score": scores[i] if i < len(scores) else 0}
            for i, choice in enumerate(choices)
        ],
        "totalScore": raw.get("scores_total"),
    }
    if raw.get("discussion"):
        proposal["discussionURI"] = raw["discussion"]
    if raw.get("type"):
        proposal["proposalType"] = raw["type"]
    return proposal


def to_activity(vote: dict[str, Any], space: str) -> dict[str, Any]:
    """Snapshot vote -> activity log entry."""
    proposal = vote.get("proposal") or {}
    choice = vote.get("choice")
    choices = proposal.get("choices") or []
    # Single-choice votes are 1-based indexes into the proposal's choices.
    if isinstance(choice, int) and 0 < choice <= len(choices):
        choice = choices[choice - 1]
    return {
        "id": f"daoip-2:{space}:vote:{vote['id']}",
        "type": "vote",
        "member": {"@type": "EthereumAddress", "id": f"eip155:1:{vote.get('voter')}"},
        "proposal": {"id": proposal_id(space, proposal["id"])} if proposal.get("id") else None,
        "choice": choice,
        "votingPower": vote.get("vp"),
        "reason": vote.get("reason") or None,
        "createdAt": _iso(vote.get("created")),
    }


def filter_proposals(
    proposals: list[dict[str, Any]],
    status: str | None = None,
    proposal_type: str | None = None,
) -> list[dict[str, Any]]:
    if status:
        proposals = [p for p in proposals if p.get("status") == status]
    if proposal_type:
        proposals = [p for p in proposals if p.get("proposalType") == proposal_type]
    return proposals


def filter_activity(
    activity: list[dict[str, Any]],
    member: str | None = None,
    proposal: str | None = None,
) -> list[dict[str, Any]]:
    """member matches an address or CAIP-10 id; proposal matches a Snapshot or DAOIP-2 id."""
    if member:
        needle = member.lower()
        activity = [a for a in activity if a["member"]["id"].lower().endswith(needle)]
    if proposal:
        activity = [
            a for a in activity
            if a.get("proposal") and (a["proposal"]["id"] == proposal or a["proposal"]["id"].endswith(f":{proposal}"))
        ]
    return activity


class SnapshotSource:
    """Reads proposals and votes for one Snapshot space."""

    def __init__(
        self,
        space: str,
        api_url: str = SNAPSHOT_API,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
    ):
        self.space = space
        self.api_url = api_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _query(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        return await graphql_query(self._client, self.api_url, query, variables, "Snapshot")

    async def fetch_proposals(self, first: int = 100) -> list[dict[str, Any]]:
        """Most recent proposals, newest first."""
        data = await self._query(PROPOSALS_QUERY, {"space": self.space, "first": first})
        proposals = [to_proposal(p, self.space) for p in data.get("proposals") or []]
        logger.debug("Fetched %d proposals for %s", len(proposals), self.space)
        return proposals

    async def fetch_proposal(self, snapshot_id: str) -> dict[str, Any] | None:
        data = await self._query(SINGLE_PROPOSAL_QUERY, {"id": snapshot_id})
        raw = data.get("proposal")
        return to_proposal(raw, self.space) if raw else None

    async def fetch_activity(self, first: int = 200) -> list[dict[str, Any]]:
        """Most recent votes in the space as activity entries."""
        data = await self._query(VOTES_QUERY, {"space": self.space, "first": first})
        return [to_activity(v, self.space) for v in data.get("votes") or []]
