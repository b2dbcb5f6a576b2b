"""HTTP and websocket surface of the hosted store."""
