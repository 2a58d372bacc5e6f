"""Durable operation queue: models and the async queue manager."""
