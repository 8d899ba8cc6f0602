"""Cross-cutting platform services shared by the API modules."""
