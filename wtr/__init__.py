"""Worktree Router (wtr).

Runs several isolated development environments (one per git worktree / branch
checkout) side by side on a single host:
 - deterministic, collision-avoiding port allocation per workspace
 - wildcard hostnames per service, routed through one nginx reverse proxy
 - loopback-aware outbound URL rewriting for code running inside containers
 - shared data/cache infrastructure brought up once and reused

Every allocation is recomputed from current host state; nothing about ports is
remembered between invocations.
"""

__version__ = "0.3.0"
