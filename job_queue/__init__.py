"""
Message Queue — Decouples discovering due scheduled messages from delivering them.

- The scheduler PUBLISHES one envelope per claimed scheduled message
- The delivery worker CONSUMES envelopes and persists + publishes them
- Failed envelopes cool down on a retry lane, then dead-letter after MAX_RETRY
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
