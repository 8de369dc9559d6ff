"""Infrastructure Layer — model transport, database driver, logging setup."""
