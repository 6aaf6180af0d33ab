"""HTTP and WebSocket API for the coordination server."""
