"""
Store gateway app.

Provides:
- Supabase REST/Storage connection settings
- Per-request httpx clients carrying the caller's Authorization header
- Liveness/readiness probes
"""
