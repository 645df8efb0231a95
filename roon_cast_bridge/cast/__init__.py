"""Receiver discovery, payload sanitizing and the cast session."""
