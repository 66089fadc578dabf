"""HTTP surface: FastAPI app and middleware."""
