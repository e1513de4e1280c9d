"""Device-side card synchronization: local store, sync API client and sync engine."""
