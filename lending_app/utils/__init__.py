"""Input validation helpers shared by the catalog and auth layers."""
