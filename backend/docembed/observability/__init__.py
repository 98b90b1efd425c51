"""
Observability Package — Stage Timing + Usage Accounting

Provides:
  traced          — decorator that times async pipeline stages
  UsageRecorder   — per-tenant embedding token accounting (fire-and-forget)

Usage::

    from docembed.observability.usage import UsageRecorder
    recorder = UsageRecorder(get_admin_db)
    recorder.record_in_background(
        tenant_id=tenant_id,
        model="text-embedding-3-small",
        total_tokens=1024,
        chunk_count=3,
    )
"""

from docembed.observability.tracing import traced
from docembed.observability.usage import UsageRecorder

__all__ = ["UsageRecorder", "traced"]
