"""Records and the acceptance model."""
