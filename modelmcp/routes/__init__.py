"""
HTTP routes

- health: liveness probes
- mcp: streamable HTTP transport (POST/GET/DELETE /mcp)
"""
