"""Database base and session."""
