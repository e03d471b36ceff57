"""
Hats Protocol data source: the DAO's role tree from the Hats subgraph.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .graphql import graphql_query

logger = logging.getLogger(__name__)

HATS_TREE_QUERY = """
  query GetTree($treeId: ID!) {
    tree(id: $treeId) {
      id
      hats {
        id
        prettyId
        details
        imageUri
        eligibility
        toggle
        maxSupply
        currentSupply
        wearers {
          id
        }
        subHats {
          id
          prettyId
          details
          currentSupply
          wearers {
            id
          }
        }
      }
    }
  }
"""


def normalise_hat(raw: dict[str, Any]) -> dict[str, Any]:
    hat = {
        "id": raw["id"],
        "prettyId": raw.get("prettyId"),
        "details": raw.get("details"),
        "imageUri": raw.get("imageUri"),
        "maxSupply": raw.get("maxSupply"),
        "currentSupply": raw.get("currentSupply"),
        "wearers": [{"address": w["id"]} for w in raw.get("wearers") or []],
    }
    if raw.get("subHats"):
        hat["subHats"] = [normalise_hat(sub) for sub in raw["subHats"]]
    return hat


def find_hat(hats: list[dict[str, Any]], hat_id: str) -> dict[str, Any] | None:
    """Depth-first search by id or prettyId."""
    for hat in hats:
        if hat.get("id") == hat_id or hat.get("prettyId") == hat_id:
            return hat
        found = find_hat(hat.get("subHats") or [], hat_id)
        if found is not None:
            return found
    return None


class HatsSource:
    """Reads one Hats tree."""

    def __init__(
        self,
        tree_id: str,
        subgraph_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
    ):
        self.tree_id = tree_id
        self.subgraph_url = subgraph_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch_tree(self) -> list[dict[str, Any]]:
        """Top-level hats of the tree with their sub-hats. Empty when no tree is configured."""
        if not self.tree_id:
            logger.warning("HATS_TREE_ID not configured")
            return []
        data = await graphql_query(
            self._client,
            self.subgraph_url,
            HATS_TREE_QUERY,
            {"treeId": self.tree_id},
            "Hats subgraph",
        )
        tree = data.get("tree") or {}
        return [normalise_hat(h) for h in tree.get("hats") or []]
