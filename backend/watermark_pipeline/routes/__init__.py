"""
Watermark Pipeline Backend — API Routes Package
=================================================

What:  HTTP route handlers. Thin: parse the request, call WatermarkPipeline,
       shape the response. Errors propagate to the global handlers in main.py.

Route Inventory:
    - watermark.py:  /api/watermark/*   (upload, embed, extract, tasks,
                                         provenance, policies)
    - files.py:      GET /api/files/{path}   (stored documents)
    - health.py:     GET /health
"""
