"""
Watermark Pipeline Backend — Middleware Package
=================================================

What:  Cross-cutting concerns applied to every HTTP request.

Middleware Chain (outermost first):
    Request → [Rate Limit] → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    Responses travel the chain in reverse, so the request ID header is set
    on every response and the access log sees the final status code.
"""
