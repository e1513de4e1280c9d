"""Card sync server: record store, sync API and services."""
