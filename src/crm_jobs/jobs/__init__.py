"""Durable job queue: store, dispatcher, runner and trigger."""
