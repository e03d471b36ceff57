"""
DAOIP-2 DAO descriptor (dao.json).

The descriptor is a composite cache entry: it embeds the cached member and
proposal aggregates and links to the per-entity API routes. It is deleted
on every forced refresh and rebuilt here on the next read.

Standard: https://github.com/metagov/daostar/blob/main/DAOIPs/daoip-2.md
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .cache import DAO_KEY, MEMBERS_KEY, PROPOSALS_KEY, CacheRefresher, CompositeAggregate
from .settings import Settings

DAOSTAR_CONTEXT = "http://www.daostar.org/schemas"
DESCRIPTOR_PROPOSALS = 20


@dataclass
class DaoIdentity:
    name: str
    description: str = ""
    avatar_uri: str = ""
    base_url: str = ""
    token_address: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> DaoIdentity:
        return cls(
            name=settings.dao_name,
            description=settings.dao_description,
            avatar_uri=settings.dao_avatar_uri,
            base_url=settings.public_base_url.rstrip("/"),
            token_address=settings.dao_token_address,
        )


def members_payload(members: list[dict[str, Any]]) -> dict[str, Any]:
    """DAOIP-2 members document around a list of member records."""
    return {"@context": DAOSTAR_CONTEXT, "@type": "DAO", "members": members}


def contracts_payload(identity: DaoIdentity) -> dict[str, Any]:
    contracts = []
    if identity.token_address:
        contracts.append(
            {
                "@type": "EthereumAddress",
                "id": f"eip155:1:{identity.token_address}",
                "name": "Governance Token",
                "chain": "eip155:1",
            }
        )
    return {"@context": DAOSTAR_CONTEXT, "@type": "DAO", "contracts": contracts}


def build_descriptor(
    identity: DaoIdentity,
    members: list[dict[str, Any]],
    proposals: list[dict[str, Any]],
) -> dict[str, Any]:
    base = identity.base_url
    return {
        "@context": DAOSTAR_CONTEXT,
        "@type": "DAO",
        "name": identity.name,
        "description": identity.description,
        "avatarURI": identity.avatar_uri,
        "governanceURI": f"{base}/api/v1/agreements",
        "activityLogURI": f"{base}/api/v1/activity",
        "members": {
            "@context": DAOSTAR_CONTEXT,
            "@type": "DAO",
            "members": [
                {"@type": "EthereumAddress", "id": m.get("id"), "name": m.get("name") or m.get("ensName")}
                for m in members
            ],
        },
        "proposals": {
            "@context": DAOSTAR_CONTEXT,
            "@type": "DAO",
            "proposals": proposals[:DESCRIPTOR_PROPOSALS],
        },
        "contracts": contracts_payload(identity),
        # Extensions beyond DAOIP-2
        "rolesURI": f"{base}/api/v1/roles",
        "groupsURI": f"{base}/api/v1/groups",
        "agreementsURI": f"{base}/api/v1/agreements",
        "policiesURI": f"{base}/api/v1/policies",
    }


def dao_descriptor_aggregate(identity: DaoIdentity, ttl_seconds: int) -> CompositeAggregate:
    """Composite cache entry for dao.json, built from cached constituents."""

    async def build(refresher: CacheRefresher) -> dict[str, Any]:
        members = await refresher.get(MEMBERS_KEY) or {}
        proposals = await refresher.get(PROPOSALS_KEY) or []
        return build_descriptor(identity, members.get("members", []), proposals)

    return CompositeAggregate(key=DAO_KEY, ttl_seconds=ttl_seconds, build=build)
