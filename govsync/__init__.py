"""
govsync: governance corpus sync and aggregate cache.

Mirrors a markdown governance repository into blob storage, extracts a
relational document graph from frontmatter, and keeps externally-sourced
DAO facts (proposals, roles, groups) warm under per-key TTLs.
"""

__version__ = "0.3.0"
