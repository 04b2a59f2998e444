"""HTTP API: middleware, request helpers, routes and server."""
