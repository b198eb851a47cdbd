"""HTTP job API: FastAPI app, in-memory job store and response models."""
