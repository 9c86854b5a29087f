"""On-disk jar cache layout and validation."""
