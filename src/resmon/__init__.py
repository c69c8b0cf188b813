"""Per-application process monitoring with privileged lifecycle control."""
