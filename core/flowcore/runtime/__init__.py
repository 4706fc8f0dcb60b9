"""Runtime services around the engine: event bus, execution manager, maintenance, SSE server."""
