"""Task assignment, reassignment, take-up and routing."""
