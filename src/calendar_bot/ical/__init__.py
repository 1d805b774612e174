"""Calendar feed retrieval, parsing and recurrence expansion."""
