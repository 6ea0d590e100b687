"""HTTP and WebSocket transport of the SpecFleet services."""
