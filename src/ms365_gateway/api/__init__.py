"""HTTP surface of the gateway: REST routes, JSON-RPC transport, middleware."""
