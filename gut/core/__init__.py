"""Template engine: delta records, rewriting, resolution and apply sessions."""
