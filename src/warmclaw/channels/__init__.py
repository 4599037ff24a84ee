"""Messaging channel interface and built-in channels."""
