"""Indexing pipeline: change detection, chunking and the index manager."""
