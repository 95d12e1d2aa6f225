"""FastAPI UI surface."""
