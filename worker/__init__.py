"""Recovery worker."""
