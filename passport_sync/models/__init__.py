"""Patient passport ORM models."""
