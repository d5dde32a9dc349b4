"""Persistent job runtime: queue, dispatch, retry policies, worker and scheduler."""
