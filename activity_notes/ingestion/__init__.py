"""Detection of new activities."""
