# packages/core/metrics.py
from __future__ import annotations

from prometheus_client import Counter

GENERATIONS = Counter("relay_generations_total", "Finished generations by outcome", ["outcome"])
CHUNKS_APPENDED = Counter("relay_chunks_appended_total", "Chunks appended to the chunk log", ["kind"])
FLUSHES = Counter("relay_flushes_total", "Batched writes to the message store")
WRITES_REJECTED = Counter("relay_writes_rejected_total", "Conditional writes rejected (record terminal or not owned)")
RESUME_SESSIONS = Counter("relay_resume_sessions_total", "Resume streams by how they ended", ["result"])
STOP_REQUESTS = Counter("relay_stop_requests_total", "Cancel requests received")
