"""Socket, WebSocket and HTTP primitives."""
