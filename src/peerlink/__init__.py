"""
PeerLink — peer connectivity and reliable-delivery engine.

Subpackages:
  - net: wire protocol, NAT traversal, relay tunnel, peer node
  - delivery: offline message queue, retry scheduling, status tracking
  - security: peer identity verification
  - crypto: signing/encryption collaborator
  - api: local control API (FastAPI)
"""

from __future__ import annotations

__version__ = "0.4.0"
