"""REST trigger gateway."""
