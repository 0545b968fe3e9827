"""Database access for the source and passport stores."""
