"""
Strata control plane test suite.

This package contains:
- unit/: Unit tests (single components, SQLite in a temp dir)
- integration/: Services wired through the RPC registry, the HTTP
  transport and the Server orchestrator, with fake remote peers
"""
