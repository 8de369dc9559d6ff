"""HTTP API — FastAPI routers and global error handlers."""
