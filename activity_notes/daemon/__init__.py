"""Background scheduling of pipeline cycles."""
