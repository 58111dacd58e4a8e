"""Credit-metered course and presentation generation."""
