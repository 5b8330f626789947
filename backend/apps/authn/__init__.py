"""
Authentication app.

Extracts the caller's bearer token, optionally verifies it, and keeps it
available for forwarding to the store.
"""
