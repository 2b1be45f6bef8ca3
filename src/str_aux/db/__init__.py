"""Storage sink for closed sampling points and per-cycle stats snapshots."""
