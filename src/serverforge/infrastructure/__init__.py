"""Infrastructure helpers: logging bootstrap and path guards."""
