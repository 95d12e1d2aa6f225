"""Background run execution."""
