"""Activity Notes - AI analysis of new workouts, written to daily notes."""
