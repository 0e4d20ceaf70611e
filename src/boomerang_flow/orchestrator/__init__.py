"""Task hierarchy, delegation, and worker supervision."""
