"""Inbound webhook surface: signature gate, fan-out handler, HTTP server."""
