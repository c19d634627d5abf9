"""Domain models and errors, free of storage and scheduling concerns."""
