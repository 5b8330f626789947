"""
Documents app.

Provides:
- Sequential, best-effort batch uploads to object storage
- Document listing, deletion and signed download links
"""
