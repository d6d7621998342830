"""
Presence — connected users, room membership and real-time fan-out.

Backends for membership:
  - In-memory (single process, development/testing)
  - Redis sets (shared across instances)
"""
