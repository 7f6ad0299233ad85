"""Ingestion pipeline: adapter runs, batch commits, checkpoints and embeddings."""
