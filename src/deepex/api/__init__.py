"""HTTP API for DeepEx (FastAPI, Server-Sent Events)."""
