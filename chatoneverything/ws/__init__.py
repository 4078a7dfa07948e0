"""Chat WebSocket endpoint and protocol helpers."""
