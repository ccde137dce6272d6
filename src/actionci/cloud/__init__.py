"""actionci control plane: FastAPI app, persistence and the Redis event queue."""
