"""Unified adapter gateway: one execution pipeline in front of many third-party APIs."""
