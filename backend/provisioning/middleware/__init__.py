"""
Customer Provisioning — Middleware Package
===========================================

Request chain:
    Request → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    Request ID runs first so the access log line carries the id.

Also here: internal_auth, a route dependency (not a middleware) guarding
operator endpoints with X-Internal-Api-Key.
"""
