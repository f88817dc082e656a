"""Front-end relay that owns the backend process."""
